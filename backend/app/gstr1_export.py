from __future__ import annotations

import io
from datetime import date
from decimal import Decimal

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from .gst import place_of_supply_label


AMOUNT_FORMAT = "#,##0.00"
QTY_FORMAT = "#,##0"

_HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
_HEADER_FONT = Font(color="FFFFFF", bold=True, size=10)
_THIN = Side(style="thin")
_HEADER_BORDER = Border(top=_THIN, left=_THIN, bottom=_THIN, right=_THIN)

# (header, key, width, number format)
B2B_COLUMNS = [
    ("GSTIN/UIN of Recipient", "gstin", 20, None),
    ("Invoice Number", "invoice_number", 18, None),
    ("Invoice date", "invoice_date", 12, None),
    ("Invoice Value", "invoice_value", 15, AMOUNT_FORMAT),
    ("Place Of Supply", "place_of_supply", 25, None),
    ("Reverse Charge", "reverse_charge", 12, None),
    ("Invoice Type", "invoice_type", 12, None),
    ("Rate", "rate", 8, None),
    ("Taxable Value", "taxable_value", 15, AMOUNT_FORMAT),
    ("Integrated Tax Amount", "igst_amount", 18, AMOUNT_FORMAT),
    ("Central Tax Amount", "cgst_amount", 18, AMOUNT_FORMAT),
    ("State/UT Tax Amount", "sgst_amount", 18, AMOUNT_FORMAT),
    ("Cess Amount", "cess_amount", 12, AMOUNT_FORMAT),
]

B2C_LARGE_COLUMNS = [
    ("Invoice Number", "invoice_number", 18, None),
    ("Invoice date", "invoice_date", 12, None),
    ("Invoice Value", "invoice_value", 15, AMOUNT_FORMAT),
    ("Place Of Supply", "place_of_supply", 25, None),
    ("Rate", "rate", 8, None),
    ("Taxable Value", "taxable_value", 15, AMOUNT_FORMAT),
    ("Integrated Tax Amount", "igst_amount", 18, AMOUNT_FORMAT),
    ("Cess Amount", "cess_amount", 12, AMOUNT_FORMAT),
]

B2C_SMALL_COLUMNS = [
    ("Type", "type", 10, None),
    ("Place Of Supply", "place_of_supply", 25, None),
    ("Rate", "rate", 8, None),
    ("Taxable Value", "taxable_value", 15, AMOUNT_FORMAT),
    ("Central Tax Amount", "cgst_amount", 18, AMOUNT_FORMAT),
    ("State/UT Tax Amount", "sgst_amount", 18, AMOUNT_FORMAT),
    ("Integrated Tax Amount", "igst_amount", 18, AMOUNT_FORMAT),
    ("Cess Amount", "cess_amount", 12, AMOUNT_FORMAT),
]

HSN_COLUMNS = [
    ("HSN", "hsn_code", 12, None),
    ("Description", "description", 40, None),
    ("UQC", "uqc", 8, None),
    ("Total Quantity", "total_quantity", 15, QTY_FORMAT),
    ("Total Value", "total_value", 15, AMOUNT_FORMAT),
    ("Taxable Value", "taxable_value", 15, AMOUNT_FORMAT),
    ("Integrated Tax Amount", "igst_amount", 18, AMOUNT_FORMAT),
    ("Central Tax Amount", "cgst_amount", 18, AMOUNT_FORMAT),
    ("State/UT Tax Amount", "sgst_amount", 18, AMOUNT_FORMAT),
    ("Cess Amount", "cess_amount", 12, AMOUNT_FORMAT),
]

DOCUMENT_SUMMARY_COLUMNS = [
    ("Document Type", "document_type", 35, None),
    ("Sr. No. From", "from_number", 20, None),
    ("Sr. No. To", "to_number", 20, None),
    ("Total Number", "total_count", 12, None),
    ("Cancelled", "cancelled_count", 12, None),
    ("Net Issued", "net_issued", 12, None),
]


def style_header_row(sheet, row_num: int = 1):
    for cell in sheet[row_num]:
        if cell.value is None:
            continue
        cell.fill = _HEADER_FILL
        cell.font = _HEADER_FONT
        cell.alignment = Alignment(horizontal="center", vertical="center")
        cell.border = _HEADER_BORDER


def _cell_value(key: str, value):
    if key == "place_of_supply" and value:
        return place_of_supply_label(value)
    if key == "reverse_charge":
        return "Y" if value else "N"
    if isinstance(value, date):
        return value.strftime("%d-%m-%Y")
    if isinstance(value, Decimal):
        return float(value)
    return value


def _write_table(wb: Workbook, title: str, columns, rows: list[dict]):
    sheet = wb.create_sheet(title)
    sheet.append([c[0] for c in columns])
    style_header_row(sheet)
    for r in rows:
        sheet.append([_cell_value(key, r.get(key)) for _, key, _, _ in columns])
    for idx, (_, _, width, num_fmt) in enumerate(columns, start=1):
        letter = sheet.cell(row=1, column=idx).column_letter
        sheet.column_dimensions[letter].width = width
        if num_fmt:
            for row in sheet.iter_rows(min_row=2, min_col=idx, max_col=idx):
                row[0].number_format = num_fmt
    sheet.freeze_panes = "A2"
    return sheet


def _write_summary(wb: Workbook, report: dict, company_name: str):
    sheet = wb.create_sheet("Summary")
    sheet.merge_cells("A1:C1")
    sheet["A1"] = f"GSTR1 Summary - {report['period']}"
    sheet["A1"].font = Font(bold=True, size=14)
    sheet["A1"].alignment = Alignment(horizontal="center")
    sheet.merge_cells("A2:C2")
    sheet["A2"] = company_name
    sheet["A2"].font = Font(bold=True, size=12)
    sheet["A2"].alignment = Alignment(horizontal="center")

    summary = report["summary"]
    sheet.append([])
    sheet.append(["Metric", "Value"])
    style_header_row(sheet, sheet.max_row)
    for label, key in (
        ("Total Taxable Value", "total_taxable_value"),
        ("Total IGST", "total_igst"),
        ("Total CGST", "total_cgst"),
        ("Total SGST", "total_sgst"),
        ("Total Cess", "total_cess"),
        ("Total Tax", "total_tax"),
    ):
        sheet.append([label, float(summary[key])])
        sheet.cell(row=sheet.max_row, column=2).number_format = AMOUNT_FORMAT
    sheet.append(["Total Invoices", summary["total_invoices"]])
    sheet.column_dimensions["A"].width = 25
    sheet.column_dimensions["B"].width = 20


def export_gstr1_workbook(report: dict, company_name: str) -> bytes:
    wb = Workbook()
    # Drop the default sheet so the workbook opens on B2B.
    wb.remove(wb.active)
    _write_table(wb, "B2B", B2B_COLUMNS, report["b2b"])
    _write_table(wb, "B2C Large", B2C_LARGE_COLUMNS, report["b2c_large"])
    _write_table(wb, "B2C Small", B2C_SMALL_COLUMNS, report["b2c_small"])
    _write_table(wb, "HSN Summary", HSN_COLUMNS, report["hsn_summary"])
    _write_table(wb, "Document Summary", DOCUMENT_SUMMARY_COLUMNS, report["document_summary"])
    _write_summary(wb, report, company_name)
    wb.properties.creator = company_name or "repairhub"

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()

