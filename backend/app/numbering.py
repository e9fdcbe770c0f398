from __future__ import annotations

import re
from dataclasses import asdict, dataclass, replace
from datetime import date
from typing import Optional

from .errors import InvalidFormatConfig


DOCUMENT_TYPES = ("JOB_SHEET", "SERVICE_TICKET", "INVOICE", "ESTIMATE", "CREDIT_NOTE")
RESET_FREQUENCIES = ("NEVER", "DAILY", "MONTHLY", "YEARLY")
BRANCH_FORMATS = ("CODE", "ID")
YEAR_FORMATS = ("FULL", "SHORT")

DEFAULT_PREFIXES = {
    "JOB_SHEET": "JS",
    "SERVICE_TICKET": "TKT",
    "INVOICE": "INV",
    "ESTIMATE": "EST",
    "CREDIT_NOTE": "CN",
}

MAX_SEQUENCE_LENGTH = 12
MAX_PREFIX_LENGTH = 16
MAX_SEPARATOR_LENGTH = 3
PREVIEW_BRANCH_CODE = "DS1"

_ALNUM = re.compile(r"[A-Za-z0-9]")


@dataclass(frozen=True)
class DocumentNumberFormat:
    prefix: str = ""
    separator: str = "-"
    sequence_length: int = 3
    sequence_reset_frequency: str = "YEARLY"
    include_branch: bool = True
    branch_format: str = "CODE"
    include_year: bool = True
    year_format: str = "FULL"
    include_month: bool = False
    include_day: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class NumberContext:
    on: date
    sequence: int
    branch_code: Optional[str] = None
    branch_id: Optional[str] = None


FORMAT_FIELDS = tuple(DocumentNumberFormat.__dataclass_fields__.keys())


def default_format(document_type: str) -> DocumentNumberFormat:
    return DocumentNumberFormat(prefix=DEFAULT_PREFIXES.get(document_type, document_type[:3]))


def format_from_row(row: dict) -> DocumentNumberFormat:
    return DocumentNumberFormat(**{k: row[k] for k in FORMAT_FIELDS if k in row and row[k] is not None})


def merge_format(base: DocumentNumberFormat, changes: dict) -> DocumentNumberFormat:
    """Apply a partial update; keys set to None keep the current value."""
    clean = {k: v for k, v in (changes or {}).items() if k in FORMAT_FIELDS and v is not None}
    return replace(base, **clean)


def validate_format(fmt: DocumentNumberFormat) -> DocumentNumberFormat:
    if not isinstance(fmt.sequence_length, int) or fmt.sequence_length <= 0:
        raise InvalidFormatConfig("sequence_length must be > 0")
    if fmt.sequence_length > MAX_SEQUENCE_LENGTH:
        raise InvalidFormatConfig(f"sequence_length must be <= {MAX_SEQUENCE_LENGTH}")
    if fmt.sequence_reset_frequency not in RESET_FREQUENCIES:
        raise InvalidFormatConfig(f"unsupported sequence_reset_frequency: {fmt.sequence_reset_frequency}")
    if fmt.branch_format not in BRANCH_FORMATS:
        raise InvalidFormatConfig(f"unsupported branch_format: {fmt.branch_format}")
    if fmt.year_format not in YEAR_FORMATS:
        raise InvalidFormatConfig(f"unsupported year_format: {fmt.year_format}")
    if len(fmt.prefix or "") > MAX_PREFIX_LENGTH:
        raise InvalidFormatConfig(f"prefix must be at most {MAX_PREFIX_LENGTH} characters")
    sep = fmt.separator or ""
    if len(sep) > MAX_SEPARATOR_LENGTH:
        raise InvalidFormatConfig(f"separator must be at most {MAX_SEPARATOR_LENGTH} characters")
    # Letters or digits in the separator would make issued numbers ambiguous to split.
    if _ALNUM.search(sep):
        raise InvalidFormatConfig("separator cannot contain letters or digits")
    return fmt


def reset_period_key(frequency: str, on: date) -> str:
    if frequency == "NEVER":
        return "ALL"
    if frequency == "DAILY":
        return on.strftime("%Y-%m-%d")
    if frequency == "MONTHLY":
        return on.strftime("%Y-%m")
    if frequency == "YEARLY":
        return on.strftime("%Y")
    raise InvalidFormatConfig(f"unsupported sequence_reset_frequency: {frequency}")


def _branch_token(fmt: DocumentNumberFormat, ctx: NumberContext) -> str:
    if fmt.branch_format == "ID":
        # Short, stable branch token: the tail of its id.
        raw = str(ctx.branch_id or "").strip()[-4:]
    else:
        raw = (ctx.branch_code or "").strip().upper()
    if not raw:
        raise InvalidFormatConfig(f"branch {fmt.branch_format.lower()} is required by this document number format")
    return raw


def format_document_number(fmt: DocumentNumberFormat, ctx: NumberContext) -> str:
    validate_format(fmt)
    if ctx.sequence < 1:
        raise ValueError("sequence must be >= 1")

    parts: list[str] = []
    if fmt.prefix:
        parts.append(fmt.prefix)
    if fmt.include_year:
        year = f"{ctx.on.year:04d}"
        parts.append(year if fmt.year_format == "FULL" else year[-2:])
    if fmt.include_month:
        parts.append(f"{ctx.on.month:02d}")
    if fmt.include_day:
        parts.append(f"{ctx.on.day:02d}")
    if fmt.include_branch:
        parts.append(_branch_token(fmt, ctx))
    parts.append(str(ctx.sequence).zfill(fmt.sequence_length))
    return (fmt.separator or "").join(parts)


def preview_document_number(
    fmt: DocumentNumberFormat,
    branch_code: Optional[str] = None,
    on: Optional[date] = None,
    sequence: int = 1,
) -> str:
    # Never touches counters: the sequence is a sample value.
    code = (branch_code or "").strip() or PREVIEW_BRANCH_CODE
    ctx = NumberContext(on=on or date.today(), sequence=sequence, branch_code=code, branch_id=code)
    return format_document_number(fmt, ctx)
