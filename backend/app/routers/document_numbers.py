from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from datetime import date
from typing import Optional
import json
from ..db import get_conn, set_company_context
from ..deps import get_branch_id, get_company_id, get_current_user, parse_uuid_optional, require_permission
from ..logs import json_log
from ..numbering import (
    DOCUMENT_TYPES,
    DocumentNumberFormat,
    NumberContext,
    default_format,
    format_document_number,
    format_from_row,
    merge_format,
    preview_document_number,
    validate_format,
)
from ..sequences import get_sequence_state, issue_document_number, load_branch, load_format, scope_for
from ..validation import BranchCode, FormatCode, YearFormatCode

router = APIRouter(prefix="/document-numbers", tags=["document-numbers"])


class FormatIn(BaseModel):
    prefix: Optional[str] = None
    separator: Optional[str] = None
    sequence_reset_frequency: Optional[FormatCode] = None
    sequence_length: Optional[int] = None
    include_branch: Optional[bool] = None
    branch_format: Optional[FormatCode] = None
    include_year: Optional[bool] = None
    year_format: Optional[YearFormatCode] = None
    include_month: Optional[bool] = None
    include_day: Optional[bool] = None


class PreviewIn(BaseModel):
    format: FormatIn
    branch_code: Optional[BranchCode] = None
    document_type: Optional[str] = None
    on: Optional[date] = None


class IssueIn(BaseModel):
    branch_id: Optional[str] = None
    on: Optional[date] = None


def _parse_document_type(raw: Optional[str]) -> str:
    v = (raw or "").strip().upper().replace("-", "_")
    if v not in DOCUMENT_TYPES:
        raise HTTPException(status_code=400, detail=f"unknown document type: {raw}")
    return v


def _format_out(document_type: str, fmt: DocumentNumberFormat, is_default: bool, row: Optional[dict] = None) -> dict:
    out = {"document_type": document_type, **fmt.to_dict(), "is_default": is_default}
    out["created_at"] = (row or {}).get("created_at")
    out["updated_at"] = (row or {}).get("updated_at")
    return out


@router.get("", dependencies=[Depends(require_permission("document_numbers:read"))])
def list_formats(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT document_type, prefix, separator, sequence_length, sequence_reset_frequency,
                       include_branch, branch_format, include_year, year_format,
                       include_month, include_day, created_at, updated_at
                FROM document_number_formats
                WHERE company_id = %s
                ORDER BY document_type
                """,
                (company_id,),
            )
            rows = {r["document_type"]: r for r in cur.fetchall()}
    formats = []
    for doc_type in DOCUMENT_TYPES:
        row = rows.get(doc_type)
        if row:
            formats.append(_format_out(doc_type, format_from_row(row), False, row))
        else:
            formats.append(_format_out(doc_type, default_format(doc_type), True))
    return {"formats": formats}


# Declared before `/{document_type}` so "preview" is never read as a document type.
@router.post("/preview", dependencies=[Depends(require_permission("document_numbers:read"))])
def preview_format(data: PreviewIn):
    base = default_format(_parse_document_type(data.document_type)) if data.document_type else DocumentNumberFormat()
    fmt = validate_format(merge_format(base, data.format.model_dump(exclude_none=True)))
    return {"preview": preview_document_number(fmt, branch_code=data.branch_code, on=data.on)}


@router.get("/{document_type}", dependencies=[Depends(require_permission("document_numbers:read"))])
def get_format(document_type: str, company_id: str = Depends(get_company_id)):
    doc_type = _parse_document_type(document_type)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            fmt, is_default = load_format(cur, company_id, doc_type)
    return {"format": _format_out(doc_type, fmt, is_default)}


@router.api_route(
    "/{document_type}",
    methods=["PUT", "POST"],
    dependencies=[Depends(require_permission("document_numbers:write"))],
)
def upsert_format(
    document_type: str,
    data: FormatIn,
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    doc_type = _parse_document_type(document_type)
    changes = data.model_dump(exclude_none=True)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            current, _ = load_format(cur, company_id, doc_type)
            # Rejected before anything is written; issued numbers are never rewritten.
            fmt = validate_format(merge_format(current, changes))
            cur.execute(
                """
                INSERT INTO document_number_formats
                  (id, company_id, document_type, prefix, separator, sequence_length, sequence_reset_frequency,
                   include_branch, branch_format, include_year, year_format, include_month, include_day)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (company_id, document_type) DO UPDATE
                SET prefix = EXCLUDED.prefix,
                    separator = EXCLUDED.separator,
                    sequence_length = EXCLUDED.sequence_length,
                    sequence_reset_frequency = EXCLUDED.sequence_reset_frequency,
                    include_branch = EXCLUDED.include_branch,
                    branch_format = EXCLUDED.branch_format,
                    include_year = EXCLUDED.include_year,
                    year_format = EXCLUDED.year_format,
                    include_month = EXCLUDED.include_month,
                    include_day = EXCLUDED.include_day,
                    updated_at = now()
                RETURNING id, created_at, updated_at
                """,
                (
                    company_id,
                    doc_type,
                    fmt.prefix,
                    fmt.separator,
                    fmt.sequence_length,
                    fmt.sequence_reset_frequency,
                    fmt.include_branch,
                    fmt.branch_format,
                    fmt.include_year,
                    fmt.year_format,
                    fmt.include_month,
                    fmt.include_day,
                ),
            )
            row = cur.fetchone()
            cur.execute(
                """
                INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                VALUES (gen_random_uuid(), %s, %s, 'config.document_number_format.update', 'document_number_format', %s, %s::jsonb)
                """,
                (company_id, user["user_id"], row["id"], json.dumps({"document_type": doc_type, **changes})),
            )
    json_log("info", "document_numbers.format.updated", company_id=company_id, document_type=doc_type)
    return {"format": _format_out(doc_type, fmt, False, row)}


@router.get("/{document_type}/sequence", dependencies=[Depends(require_permission("document_numbers:read"))])
def get_sequence_info(
    document_type: str,
    on: Optional[date] = None,
    company_id: str = Depends(get_company_id),
    branch_id: Optional[str] = Depends(get_branch_id),
):
    doc_type = _parse_document_type(document_type)
    on = on or date.today()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            fmt, is_default = load_format(cur, company_id, doc_type)
            if fmt.include_branch and not branch_id:
                raise HTTPException(status_code=400, detail="branch id is required")
            branch = load_branch(cur, company_id, branch_id) if fmt.include_branch else {}
            if fmt.include_branch and not branch:
                raise HTTPException(status_code=404, detail="branch not found")
            scope = scope_for(
                company_id,
                doc_type,
                fmt.sequence_reset_frequency,
                on,
                branch_id if fmt.include_branch else None,
            )
            state = get_sequence_state(cur, scope)
    state["sequence_reset_frequency"] = fmt.sequence_reset_frequency
    state["is_default_format"] = is_default
    state["next_number"] = format_document_number(
        fmt,
        NumberContext(
            on=on,
            sequence=state["next_value"],
            branch_code=branch.get("code"),
            branch_id=branch.get("id"),
        ),
    )
    return state


@router.post("/{document_type}/issue", dependencies=[Depends(require_permission("document_numbers:issue"))])
def issue_number(
    document_type: str,
    data: IssueIn,
    company_id: str = Depends(get_company_id),
    session_branch_id: Optional[str] = Depends(get_branch_id),
):
    doc_type = _parse_document_type(document_type)
    branch_id = parse_uuid_optional(data.branch_id, "branch_id") or session_branch_id
    with get_conn() as conn:
        set_company_context(conn, company_id)
        issued = issue_document_number(conn, company_id, doc_type, branch_id=branch_id, on=data.on)
    json_log(
        "info",
        "document_numbers.issued",
        company_id=company_id,
        document_type=doc_type,
        number=issued["number"],
        period_key=issued["period_key"],
    )
    return issued
