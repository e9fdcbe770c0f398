import csv
import io
from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi import HTTPException, Response
from openpyxl import load_workbook

from backend.app.routers import gstr1 as gstr1_router


COMPANY_ID = "aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa"
BRANCH_ID = "bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb"


class _DummyCursor:
    def __init__(self, results):
        self._results = list(results)
        self._current = None
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, tuple(params or ())))
        self._current = self._results.pop(0) if self._results else None

    def fetchone(self):
        return self._current

    def fetchall(self):
        return self._current or []


class _DummyConn:
    def __init__(self, cursor: _DummyCursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _period_rows(seller_state="27"):
    seller = {"company_name": "Fixit Repairs", "company_state_code": seller_state, "branch_state_code": None}
    invoices = [
        {
            "id": "i1",
            "invoice_number": "INV-2024-DS1-001",
            "sequence_value": 1,
            "document_type": "INVOICE",
            "invoice_date": date(2024, 3, 4),
            "total_amount": Decimal("1180.00"),
            "status": "posted",
            "reverse_charge": False,
            "place_of_supply": None,
            "branch_id": BRANCH_ID,
            "customer_gstin": "27AAPFU0939F1ZV",
            "customer_state_code": "27",
        },
        {
            "id": "i2",
            "invoice_number": "INV-2024-DS1-002",
            "sequence_value": 2,
            "document_type": "INVOICE",
            "invoice_date": date(2024, 3, 5),
            "total_amount": Decimal("590.00"),
            "status": "posted",
            "reverse_charge": False,
            "place_of_supply": None,
            "branch_id": BRANCH_ID,
            "customer_gstin": None,
            "customer_state_code": "29",
        },
    ]
    lines = [
        {
            "invoice_id": "i1",
            "hsn_code": "8517",
            "description": "Screen replacement",
            "unit": "NOS",
            "quantity": Decimal("1"),
            "amount": Decimal("1000.00"),
            "taxable_value": Decimal("1000.00"),
            "gst_rate": Decimal("18"),
            "cgst_amount": Decimal("90.00"),
            "sgst_amount": Decimal("90.00"),
            "igst_amount": Decimal("0"),
            "cess_amount": None,
        },
        {
            "invoice_id": "i2",
            "hsn_code": "998729",
            "description": "Repair service",
            "unit": None,
            "quantity": Decimal("1"),
            "amount": Decimal("500.00"),
            "taxable_value": None,
            "gst_rate": Decimal("18"),
            "cgst_amount": None,
            "sgst_amount": None,
            "igst_amount": Decimal("90.00"),
            "cess_amount": None,
        },
    ]
    return [seller, invoices, lines]


def _patch_db(monkeypatch, results):
    cur = _DummyCursor(results)
    conn = _DummyConn(cur)
    calls = []
    monkeypatch.setattr(gstr1_router, "get_conn", lambda: conn)
    monkeypatch.setattr(gstr1_router, "set_company_context", lambda *_args, **_kwargs: calls.append("company"))
    monkeypatch.setattr(gstr1_router, "set_repeatable_read", lambda *_args, **_kwargs: calls.append("snapshot"))
    return cur, calls


def test_gstr1_report_json_contract(monkeypatch):
    cur, calls = _patch_db(monkeypatch, _period_rows())

    out = gstr1_router.gstr1_report(month=3, year=2024, branch_id=None, company_id=COMPANY_ID)

    assert calls == ["snapshot", "company"]
    assert out["period"] == "03-2024"
    assert out["financial_year"] == "2023-24"
    assert [r["invoice_number"] for r in out["b2b"]] == ["INV-2024-DS1-001"]
    assert out["b2b"][0]["cgst_amount"] == Decimal("90.00")
    (b2cs,) = out["b2c_small"]
    assert b2cs["place_of_supply"] == "29"
    assert b2cs["igst_amount"] == Decimal("90.00")
    assert out["document_summary"][0]["net_issued"] == 2
    assert out["summary"]["total_tax"] == Decimal("270.00")

    _, params = cur.executed[1]
    assert params == (COMPANY_ID, date(2024, 3, 1), date(2024, 3, 31), None, None)


def test_gstr1_branch_filter_is_normalized(monkeypatch):
    cur, _ = _patch_db(monkeypatch, _period_rows())

    out = gstr1_router.gstr1_report(month=3, year=2024, branch_id=BRANCH_ID.upper(), company_id=COMPANY_ID)

    assert out["branch_id"] == BRANCH_ID
    assert cur.executed[0][1] == (BRANCH_ID, COMPANY_ID)


@pytest.mark.parametrize("month,year", [(None, 2024), (0, 2024), (13, 2024), (3, 2016)])
def test_gstr1_rejects_bad_period(monkeypatch, month, year):
    _patch_db(monkeypatch, [])
    with pytest.raises(HTTPException) as exc:
        gstr1_router.gstr1_report(month=month, year=year, branch_id=None, company_id=COMPANY_ID)
    assert exc.value.status_code == 400


@pytest.mark.parametrize("year", [2016, 10000])
def test_gstr1_year_bounds_message(monkeypatch, year):
    _patch_db(monkeypatch, [])
    with pytest.raises(HTTPException) as exc:
        gstr1_router.gstr1_report(month=3, year=year, branch_id=None, company_id=COMPANY_ID)
    assert exc.value.detail == "year must be between 2017 and 9999"


def test_gstr1_requires_seller_state(monkeypatch):
    _patch_db(monkeypatch, _period_rows(seller_state=None))
    with pytest.raises(HTTPException) as exc:
        gstr1_router.gstr1_report(month=3, year=2024, branch_id=None, company_id=COMPANY_ID)
    assert exc.value.status_code == 400


def test_gstr1_section_json(monkeypatch):
    _patch_db(monkeypatch, _period_rows())
    out = gstr1_router.gstr1_hsn_summary(month=3, year=2024, branch_id=None, format=None, company_id=COMPANY_ID)
    assert out["period"] == "03-2024"
    assert [r["hsn_code"] for r in out["hsn_summary"]] == ["8517", "998729"]


def test_gstr1_section_csv(monkeypatch):
    _patch_db(monkeypatch, _period_rows())

    resp = gstr1_router.gstr1_b2b(month=3, year=2024, branch_id=None, format="csv", company_id=COMPANY_ID)

    assert isinstance(resp, Response)
    assert resp.media_type == "text/csv"
    rows = list(csv.DictReader(io.StringIO(resp.body.decode("utf-8"))))
    assert len(rows) == 1
    assert rows[0]["gstin"] == "27AAPFU0939F1ZV"
    assert rows[0]["invoice_date"] == "2024-03-04"
    assert rows[0]["taxable_value"] == "1000.00"
    assert rows[0]["reverse_charge"] == "N"


def test_gstr1_document_summary_csv(monkeypatch):
    _patch_db(monkeypatch, _period_rows())

    resp = gstr1_router.gstr1_document_summary(month=3, year=2024, branch_id=None, format="csv", company_id=COMPANY_ID)

    rows = list(csv.DictReader(io.StringIO(resp.body.decode("utf-8"))))
    assert rows[0]["from_number"] == "INV-2024-DS1-001"
    assert rows[0]["to_number"] == "INV-2024-DS1-002"
    assert rows[0]["net_issued"] == "2"


def test_gstr1_export_returns_workbook(monkeypatch):
    _patch_db(monkeypatch, _period_rows())

    resp = gstr1_router.gstr1_export(month=3, year=2024, branch_id=None, company_id=COMPANY_ID)

    assert resp.media_type == gstr1_router.XLSX_MEDIA_TYPE
    assert resp.headers["content-disposition"] == 'attachment; filename="GSTR1_03_2024.xlsx"'
    wb = load_workbook(io.BytesIO(resp.body))
    assert wb.sheetnames == ["B2B", "B2C Large", "B2C Small", "HSN Summary", "Document Summary", "Summary"]
    assert wb["Summary"]["A2"].value == "Fixit Repairs"
