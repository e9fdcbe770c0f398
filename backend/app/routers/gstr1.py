from fastapi import APIRouter, Depends, HTTPException, Response
from datetime import date
from typing import Optional
from decimal import Decimal
import csv
import io
from ..config import settings
from ..db import get_conn, set_company_context, set_repeatable_read
from ..deps import get_company_id, parse_uuid_optional, require_permission
from ..gst import build_gstr1_report, month_range, normalize_state_code, STATE_CODES
from ..gstr1_export import (
    B2B_COLUMNS,
    B2C_LARGE_COLUMNS,
    B2C_SMALL_COLUMNS,
    DOCUMENT_SUMMARY_COLUMNS,
    HSN_COLUMNS,
    export_gstr1_workbook,
)

router = APIRouter(prefix="/reports/gstr1", tags=["reports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# GST replaced the earlier indirect taxes in July 2017.
MIN_YEAR = 2017
MAX_YEAR = 9999

SECTION_COLUMNS = {
    "b2b": B2B_COLUMNS,
    "b2c_large": B2C_LARGE_COLUMNS,
    "b2c_small": B2C_SMALL_COLUMNS,
    "hsn_summary": HSN_COLUMNS,
    "document_summary": DOCUMENT_SUMMARY_COLUMNS,
}


def _resolve_period(month: Optional[int], year: Optional[int]) -> tuple[int, int, date, date]:
    if month is None or year is None:
        raise HTTPException(status_code=400, detail="month and year are required")
    if month < 1 or month > 12:
        raise HTTPException(status_code=400, detail="month must be between 1 and 12")
    if year < MIN_YEAR or year > MAX_YEAR:
        raise HTTPException(status_code=400, detail=f"year must be between {MIN_YEAR} and {MAX_YEAR}")
    start, end = month_range(month, year)
    return month, year, start, end


def _load_period(cur, company_id: str, start: date, end: date, branch_id: Optional[str]) -> tuple[list[dict], str, str]:
    """Returns (invoices with lines, seller state code, company name)."""
    cur.execute(
        """
        SELECT c.name AS company_name, c.state_code AS company_state_code, b.state_code AS branch_state_code
        FROM companies c
        LEFT JOIN branches b ON b.company_id = c.id AND b.id = %s
        WHERE c.id = %s
        """,
        (branch_id, company_id),
    )
    seller = cur.fetchone()
    if not seller:
        raise HTTPException(status_code=404, detail="company not found")
    seller_state = normalize_state_code(seller.get("branch_state_code") or seller.get("company_state_code"))
    if seller_state not in STATE_CODES:
        raise HTTPException(status_code=400, detail="seller GST state code is not configured")

    cur.execute(
        """
        SELECT i.id, i.invoice_number, i.sequence_value, i.document_type, i.invoice_date::date AS invoice_date,
               i.total_amount, i.status, i.reverse_charge, i.place_of_supply, i.branch_id,
               cu.gstin AS customer_gstin, cu.state_code AS customer_state_code
        FROM invoices i
        LEFT JOIN customers cu ON cu.id = i.customer_id
        WHERE i.company_id = %s
          AND i.invoice_date::date BETWEEN %s AND %s
          AND (%s::uuid IS NULL OR i.branch_id = %s::uuid)
        ORDER BY i.invoice_date, i.sequence_value, i.invoice_number
        """,
        (company_id, start, end, branch_id, branch_id),
    )
    invoices = {str(r["id"]): {**r, "lines": []} for r in cur.fetchall()}

    cur.execute(
        """
        SELECT l.invoice_id, l.hsn_code, l.description, l.unit, l.quantity, l.amount, l.taxable_value,
               l.gst_rate, l.cgst_amount, l.sgst_amount, l.igst_amount, l.cess_amount
        FROM invoice_items l
        JOIN invoices i ON i.id = l.invoice_id
        WHERE i.company_id = %s
          AND i.invoice_date::date BETWEEN %s AND %s
          AND (%s::uuid IS NULL OR i.branch_id = %s::uuid)
        ORDER BY l.invoice_id, l.line_no, l.id
        """,
        (company_id, start, end, branch_id, branch_id),
    )
    for line in cur.fetchall():
        inv = invoices.get(str(line["invoice_id"]))
        if inv is not None:
            inv["lines"].append(line)
    return list(invoices.values()), seller_state, seller.get("company_name") or ""


def _report(company_id: str, month: Optional[int], year: Optional[int], branch_id: Optional[str]) -> tuple[dict, str]:
    month, year, start, end = _resolve_period(month, year)
    branch = parse_uuid_optional(branch_id, "branch_id")
    with get_conn() as conn:
        # One snapshot for the whole period; must precede any other statement.
        set_repeatable_read(conn)
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            invoices, seller_state, company_name = _load_period(cur, company_id, start, end, branch)
    report = build_gstr1_report(
        invoices,
        seller_state,
        month,
        year,
        b2c_large_threshold=settings.b2c_large_threshold,
    )
    report["branch_id"] = branch
    return report, company_name


def _section_csv(section: str, rows: list[dict]) -> Response:
    columns = SECTION_COLUMNS[section]
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([key for _, key, _, _ in columns])
    for r in rows:
        writer.writerow([_csv_value(r.get(key)) for _, key, _, _ in columns])
    return Response(content=output.getvalue(), media_type="text/csv")


def _csv_value(v):
    if isinstance(v, date):
        return v.isoformat()
    if isinstance(v, Decimal):
        return format(v, "f")
    if isinstance(v, bool):
        return "Y" if v else "N"
    return v


def _section(section: str, company_id: str, month, year, branch_id, format: Optional[str]):
    report, _ = _report(company_id, month, year, branch_id)
    rows = report[section]
    if format == "csv":
        return _section_csv(section, rows)
    return {"period": report["period"], section: rows}


@router.get("", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_report(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    report, _ = _report(company_id, month, year, branch_id)
    return report


@router.get("/b2b", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_b2b(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    return _section("b2b", company_id, month, year, branch_id, format)


@router.get("/b2c-large", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_b2c_large(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    return _section("b2c_large", company_id, month, year, branch_id, format)


@router.get("/b2c-small", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_b2c_small(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    return _section("b2c_small", company_id, month, year, branch_id, format)


@router.get("/hsn-summary", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_hsn_summary(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    return _section("hsn_summary", company_id, month, year, branch_id, format)


@router.get("/document-summary", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_document_summary(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    format: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    return _section("document_summary", company_id, month, year, branch_id, format)


@router.get("/export", dependencies=[Depends(require_permission("reports:read"))])
def gstr1_export(
    month: Optional[int] = None,
    year: Optional[int] = None,
    branch_id: Optional[str] = None,
    company_id: str = Depends(get_company_id),
):
    report, company_name = _report(company_id, month, year, branch_id)
    content = export_gstr1_workbook(report, company_name)
    filename = f"GSTR1_{report['period'].replace('-', '_')}.xlsx"
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
