from datetime import date

import pytest

from backend.app.errors import InvalidFormatConfig
from backend.app.numbering import (
    DocumentNumberFormat,
    NumberContext,
    default_format,
    format_document_number,
    format_from_row,
    merge_format,
    preview_document_number,
    reset_period_key,
    validate_format,
)


def _ctx(seq=1, on=date(2024, 3, 7), code="DS1", branch_id=None):
    return NumberContext(on=on, sequence=seq, branch_code=code, branch_id=branch_id)


def test_default_invoice_format_renders_prefix_year_branch_sequence():
    assert format_document_number(default_format("INVOICE"), _ctx(seq=7)) == "INV-2024-DS1-007"


def test_default_prefixes_per_document_type():
    assert default_format("JOB_SHEET").prefix == "JS"
    assert default_format("SERVICE_TICKET").prefix == "TKT"
    assert default_format("ESTIMATE").prefix == "EST"
    assert default_format("CREDIT_NOTE").prefix == "CN"


def test_token_order_with_month_and_day():
    fmt = DocumentNumberFormat(
        prefix="JS",
        separator="/",
        sequence_length=4,
        include_month=True,
        include_day=True,
        year_format="SHORT",
    )
    assert format_document_number(fmt, _ctx(seq=42)) == "JS/24/03/07/DS1/0042"


def test_empty_prefix_is_omitted():
    fmt = DocumentNumberFormat(prefix="", include_year=False, include_branch=False, sequence_length=5)
    assert format_document_number(fmt, _ctx(seq=3)) == "00003"


def test_empty_separator_concatenates_tokens():
    fmt = DocumentNumberFormat(prefix="CN", separator="", include_branch=False)
    assert format_document_number(fmt, _ctx(seq=12)) == "CN2024012"


def test_sequence_wider_than_length_is_not_truncated():
    fmt = DocumentNumberFormat(prefix="INV", include_branch=False, include_year=False, sequence_length=3)
    assert format_document_number(fmt, _ctx(seq=1234)) == "INV-1234"


def test_branch_id_format_uses_id_suffix():
    fmt = DocumentNumberFormat(prefix="TKT", branch_format="ID", include_year=False)
    out = format_document_number(fmt, _ctx(seq=1, code="DS1", branch_id="bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbb12ab"))
    assert out == "TKT-12ab-001"


def test_branch_id_format_requires_branch_id():
    fmt = DocumentNumberFormat(prefix="TKT", branch_format="ID")
    with pytest.raises(InvalidFormatConfig):
        format_document_number(fmt, _ctx(code="DS1", branch_id=None))


def test_missing_branch_raises_invalid_format_config():
    with pytest.raises(InvalidFormatConfig):
        format_document_number(default_format("INVOICE"), _ctx(code=None))


def test_formatting_is_pure():
    fmt = default_format("ESTIMATE")
    ctx = _ctx(seq=9)
    assert format_document_number(fmt, ctx) == format_document_number(fmt, ctx)


def test_sequence_must_be_positive():
    with pytest.raises(ValueError):
        format_document_number(default_format("INVOICE"), _ctx(seq=0))


@pytest.mark.parametrize(
    "changes",
    [
        {"sequence_length": 0},
        {"sequence_length": 13},
        {"separator": "----"},
        {"separator": "A"},
        {"separator": "-1"},
        {"prefix": "X" * 17},
        {"sequence_reset_frequency": "WEEKLY"},
        {"branch_format": "NAME"},
        {"year_format": "DECADE"},
    ],
)
def test_validate_format_rejects_bad_config(changes):
    with pytest.raises(InvalidFormatConfig):
        validate_format(merge_format(DocumentNumberFormat(), changes))


def test_merge_format_ignores_none_and_unknown_keys():
    base = default_format("INVOICE")
    merged = merge_format(base, {"prefix": None, "sequence_length": 5, "bogus": 1})
    assert merged.prefix == "INV"
    assert merged.sequence_length == 5


def test_format_from_row_fills_missing_columns_with_defaults():
    fmt = format_from_row({"prefix": "SRV", "sequence_length": 6, "include_day": None})
    assert fmt.prefix == "SRV"
    assert fmt.sequence_length == 6
    assert fmt.include_day is False
    assert fmt.sequence_reset_frequency == "YEARLY"


def test_reset_period_keys():
    on = date(2024, 3, 7)
    assert reset_period_key("NEVER", on) == "ALL"
    assert reset_period_key("DAILY", on) == "2024-03-07"
    assert reset_period_key("MONTHLY", on) == "2024-03"
    assert reset_period_key("YEARLY", on) == "2024"


def test_reset_period_key_rejects_unknown_frequency():
    with pytest.raises(InvalidFormatConfig):
        reset_period_key("HOURLY", date(2024, 1, 1))


def test_preview_uses_sample_branch_and_first_sequence():
    fmt = default_format("SERVICE_TICKET")
    assert preview_document_number(fmt, on=date(2025, 1, 2)) == "TKT-2025-DS1-001"
    assert preview_document_number(fmt, branch_code="HYD2", on=date(2025, 1, 2)) == "TKT-2025-HYD2-001"
