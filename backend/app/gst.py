from __future__ import annotations

import calendar
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Union

from .errors import InvalidGSTRecord, PeriodDataInconsistency, UnknownUQCCode
from .logs import json_log


B2C_LARGE_THRESHOLD = Decimal("250000")
PAISE = Decimal("0.01")
ZERO = Decimal("0")

GST_RATES = [0, 5, 12, 18, 28]

GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")

STATE_CODES = {
    "01": "Jammu & Kashmir",
    "02": "Himachal Pradesh",
    "03": "Punjab",
    "04": "Chandigarh",
    "05": "Uttarakhand",
    "06": "Haryana",
    "07": "Delhi",
    "08": "Rajasthan",
    "09": "Uttar Pradesh",
    "10": "Bihar",
    "11": "Sikkim",
    "12": "Arunachal Pradesh",
    "13": "Nagaland",
    "14": "Manipur",
    "15": "Mizoram",
    "16": "Tripura",
    "17": "Meghalaya",
    "18": "Assam",
    "19": "West Bengal",
    "20": "Jharkhand",
    "21": "Odisha",
    "22": "Chhattisgarh",
    "23": "Madhya Pradesh",
    "24": "Gujarat",
    "26": "Dadra & Nagar Haveli and Daman & Diu",
    "27": "Maharashtra",
    "29": "Karnataka",
    "30": "Goa",
    "31": "Lakshadweep",
    "32": "Kerala",
    "33": "Tamil Nadu",
    "34": "Puducherry",
    "35": "Andaman & Nicobar Islands",
    "36": "Telangana",
    "37": "Andhra Pradesh",
    "38": "Ladakh",
}

# Unit Quantity Codes accepted by the GST portal for the HSN summary.
UQC_CODES = {
    "BAG": "BAGS",
    "BAL": "BALE",
    "BDL": "BUNDLES",
    "BKL": "BUCKLES",
    "BOU": "BILLION OF UNITS",
    "BOX": "BOX",
    "BTL": "BOTTLES",
    "BUN": "BUNCHES",
    "CAN": "CANS",
    "CBM": "CUBIC METERS",
    "CCM": "CUBIC CENTIMETERS",
    "CMS": "CENTIMETERS",
    "CTN": "CARTONS",
    "DOZ": "DOZENS",
    "DRM": "DRUMS",
    "GGK": "GREAT GROSS",
    "GMS": "GRAMMES",
    "GRS": "GROSS",
    "GYD": "GROSS YARDS",
    "KGS": "KILOGRAMS",
    "KLR": "KILOLITRE",
    "KME": "KILOMETRE",
    "LTR": "LITRES",
    "MLT": "MILILITRE",
    "MTR": "METERS",
    "MTS": "METRIC TON",
    "NOS": "NUMBERS",
    "OTH": "OTHERS",
    "PAC": "PACKS",
    "PCS": "PIECES",
    "PRS": "PAIRS",
    "QTL": "QUINTAL",
    "ROL": "ROLLS",
    "SET": "SETS",
    "SQF": "SQUARE FEET",
    "SQM": "SQUARE METERS",
    "SQY": "SQUARE YARDS",
    "TBS": "TABLETS",
    "TGM": "TEN GROSS",
    "THD": "THOUSANDS",
    "TON": "TONNES",
    "TUB": "TUBES",
    "UGS": "US GALLONS",
    "UNT": "UNITS",
    "YDS": "YARDS",
}

# Spellings the inventory screens store for item units.
UQC_ALIASES = {
    "PC": "PCS",
    "PIECE": "PCS",
    "PIECES": "PCS",
    "NO": "NOS",
    "NUMBER": "NOS",
    "NUMBERS": "NOS",
    "EA": "NOS",
    "EACH": "NOS",
    "UNIT": "UNT",
    "UNITS": "UNT",
    "KG": "KGS",
    "KILOGRAM": "KGS",
    "KILOGRAMS": "KGS",
    "G": "GMS",
    "GM": "GMS",
    "GRAM": "GMS",
    "L": "LTR",
    "LITRE": "LTR",
    "M": "MTR",
    "METER": "MTR",
    "PAIR": "PRS",
    "BOXES": "BOX",
}

DEFAULT_UQC = "NOS"
FALLBACK_UQC = "OTH"

DOCUMENT_SUMMARY_LABELS = {
    "INVOICE": "Invoices for outward supply",
    "CREDIT_NOTE": "Credit Note",
}

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]

_TRAILING_DIGITS = re.compile(r"(\d+)\s*$")


def to_decimal(v: Any) -> Decimal:
    if v is None or v == "":
        return ZERO
    try:
        return Decimal(str(v))
    except InvalidOperation:
        raise InvalidGSTRecord(f"invalid amount: {v!r}")


def q2(v: Decimal) -> Decimal:
    return v.quantize(PAISE, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class IntraState:
    cgst: Decimal
    sgst: Decimal


@dataclass(frozen=True)
class InterState:
    igst: Decimal


TaxSplit = Union[IntraState, InterState]


def split_tax(taxable_value: Decimal, rate: Decimal, intra_state: bool) -> TaxSplit:
    """
    Intra-state supplies carry CGST + SGST (half the rate each); inter-state
    supplies carry IGST at the full rate. Never both.
    """
    if intra_state:
        half = q2(taxable_value * rate / Decimal("2") / Decimal("100"))
        return IntraState(cgst=half, sgst=half)
    return InterState(igst=q2(taxable_value * rate / Decimal("100")))


def split_amounts(split: TaxSplit) -> tuple[Decimal, Decimal, Decimal]:
    """(igst, cgst, sgst)"""
    if isinstance(split, IntraState):
        return ZERO.quantize(PAISE), split.cgst, split.sgst
    return split.igst, ZERO.quantize(PAISE), ZERO.quantize(PAISE)


def normalize_gstin(gstin: Optional[str]) -> str:
    return (gstin or "").strip().upper()


def is_valid_gstin(gstin: Optional[str]) -> bool:
    return bool(GSTIN_RE.match(normalize_gstin(gstin)))


def normalize_state_code(code: Any) -> str:
    c = str(code or "").strip()
    if c.isdigit() and len(c) == 1:
        c = c.zfill(2)
    return c


def place_of_supply_label(state_code: str) -> str:
    return f"{state_code}-{STATE_CODES.get(state_code, state_code)}"


def normalize_uqc(unit: Optional[str]) -> str:
    u = (unit or "").strip().upper()
    if not u:
        return DEFAULT_UQC
    if u in UQC_CODES:
        return u
    if u in UQC_ALIASES:
        return UQC_ALIASES[u]
    raise UnknownUQCCode(unit or "")


def month_range(month: int, year: int) -> tuple[date, date]:
    if month < 1 or month > 12:
        raise ValueError("month must be between 1 and 12")
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, 1), date(year, month, last_day)


def financial_year(month: int, year: int) -> str:
    # Indian financial year runs April to March.
    start = year if month >= 4 else year - 1
    return f"{start}-{str(start + 1)[-2:]}"


def filing_period(month: int, year: int) -> str:
    return f"{MONTH_NAMES[month - 1]} {year}"


def is_cancelled(invoice: dict) -> bool:
    return str(invoice.get("status") or "").strip().lower() in {"cancelled", "canceled", "void"}


def resolve_place_of_supply(invoice: dict, seller_state_code: str) -> str:
    code = normalize_state_code(
        invoice.get("place_of_supply") or invoice.get("customer_state_code") or seller_state_code
    )
    if code not in STATE_CODES:
        raise InvalidGSTRecord(f"unknown place of supply state code: {code!r}")
    return code


def classify_invoice(
    invoice_value: Decimal,
    gstin: Optional[str],
    place_of_supply: str,
    seller_state_code: str,
    threshold: Decimal = B2C_LARGE_THRESHOLD,
) -> str:
    """B2B for registered buyers; B2CL for large inter-state consumer invoices; else B2CS."""
    if normalize_gstin(gstin):
        return "B2B"
    if invoice_value > threshold and place_of_supply != seller_state_code:
        return "B2CL"
    return "B2CS"


@dataclass(frozen=True)
class GSTInvoiceLineFact:
    invoice_id: str
    invoice_number: str
    invoice_date: date
    invoice_value: Decimal
    gstin: Optional[str]
    place_of_supply_state_code: str
    reverse_charge: bool
    rate: Decimal
    quantity: Decimal
    taxable_value: Decimal
    igst_amount: Decimal
    cgst_amount: Decimal
    sgst_amount: Decimal
    cess_amount: Decimal
    total_value: Decimal
    hsn_code: str
    description: str
    uqc: str
    invoice_type: str = "R"


def _check_stored_split(line: dict, rate: Decimal, taxable: Decimal, intra_state: bool, invoice_number: str):
    # NULL stored amounts count as zero.
    local_tax = to_decimal(line.get("cgst_amount")) + to_decimal(line.get("sgst_amount"))
    igst = to_decimal(line.get("igst_amount"))
    if local_tax != 0 and igst != 0:
        raise PeriodDataInconsistency(f"invoice {invoice_number}: line carries both CGST/SGST and IGST")
    if local_tax == 0 and igst == 0:
        if rate > 0 and taxable > 0:
            raise PeriodDataInconsistency(f"invoice {invoice_number}: taxed line carries neither CGST/SGST nor IGST")
        return
    if intra_state and igst != 0:
        raise PeriodDataInconsistency(f"invoice {invoice_number}: intra-state line carries IGST")
    if not intra_state and local_tax != 0:
        raise PeriodDataInconsistency(f"invoice {invoice_number}: inter-state line carries CGST/SGST")


def _line_uqc(line: dict, invoice_number: str) -> str:
    try:
        return normalize_uqc(line.get("unit"))
    except UnknownUQCCode as exc:
        json_log(
            "warning",
            "gstr1.uqc.unknown",
            invoice_number=invoice_number,
            unit=exc.unit,
            fallback=FALLBACK_UQC,
        )
        return FALLBACK_UQC


def line_facts(invoice: dict, seller_state_code: str) -> list[GSTInvoiceLineFact]:
    invoice_number = str(invoice.get("invoice_number") or "")
    gstin = normalize_gstin(invoice.get("customer_gstin")) or None
    if gstin and not is_valid_gstin(gstin):
        raise InvalidGSTRecord(f"malformed GSTIN: {gstin!r}")
    pos = resolve_place_of_supply(invoice, seller_state_code)
    intra_state = pos == seller_state_code
    invoice_value = q2(to_decimal(invoice.get("total_amount")))

    facts = []
    for line in invoice.get("lines") or []:
        rate = q2(to_decimal(line.get("gst_rate")))
        raw_taxable = line.get("taxable_value")
        taxable = q2(to_decimal(raw_taxable if raw_taxable is not None else line.get("amount")))
        _check_stored_split(line, rate, taxable, intra_state, invoice_number)
        igst, cgst, sgst = split_amounts(split_tax(taxable, rate, intra_state))
        cess = q2(to_decimal(line.get("cess_amount")))
        facts.append(
            GSTInvoiceLineFact(
                invoice_id=str(invoice.get("id") or ""),
                invoice_number=invoice_number,
                invoice_date=invoice["invoice_date"],
                invoice_value=invoice_value,
                gstin=gstin,
                place_of_supply_state_code=pos,
                reverse_charge=bool(invoice.get("reverse_charge")),
                rate=rate,
                quantity=to_decimal(line.get("quantity")),
                taxable_value=taxable,
                igst_amount=igst,
                cgst_amount=cgst,
                sgst_amount=sgst,
                cess_amount=cess,
                total_value=taxable + igst + cgst + sgst + cess,
                hsn_code=(str(line.get("hsn_code") or "").strip() or "N/A"),
                description=str(line.get("description") or ""),
                uqc=_line_uqc(line, invoice_number),
            )
        )
    return facts


def _tax_bucket() -> dict:
    return {
        "taxable_value": ZERO,
        "igst_amount": ZERO,
        "cgst_amount": ZERO,
        "sgst_amount": ZERO,
        "cess_amount": ZERO,
    }


def _add_fact(bucket: dict, f: GSTInvoiceLineFact):
    bucket["taxable_value"] += f.taxable_value
    bucket["igst_amount"] += f.igst_amount
    bucket["cgst_amount"] += f.cgst_amount
    bucket["sgst_amount"] += f.sgst_amount
    bucket["cess_amount"] += f.cess_amount


def _by_rate(facts: list[GSTInvoiceLineFact]) -> list[tuple[Decimal, dict]]:
    groups: dict[Decimal, dict] = {}
    for f in facts:
        _add_fact(groups.setdefault(f.rate, _tax_bucket()), f)
    return sorted(groups.items(), key=lambda kv: kv[0])


def b2b_rows(facts: list[GSTInvoiceLineFact]) -> list[dict]:
    """One row per (invoice, rate), the GSTR-1 B2B layout."""
    if not facts:
        return []
    head = facts[0]
    return [
        {
            "gstin": head.gstin,
            "invoice_number": head.invoice_number,
            "invoice_date": head.invoice_date,
            "invoice_value": head.invoice_value,
            "place_of_supply": head.place_of_supply_state_code,
            "reverse_charge": head.reverse_charge,
            "invoice_type": head.invoice_type,
            "rate": rate,
            **amounts,
        }
        for rate, amounts in _by_rate(facts)
    ]


def b2c_large_rows(facts: list[GSTInvoiceLineFact]) -> list[dict]:
    if not facts:
        return []
    head = facts[0]
    return [
        {
            "invoice_number": head.invoice_number,
            "invoice_date": head.invoice_date,
            "invoice_value": head.invoice_value,
            "place_of_supply": head.place_of_supply_state_code,
            "rate": rate,
            "taxable_value": amounts["taxable_value"],
            "igst_amount": amounts["igst_amount"],
            "cess_amount": amounts["cess_amount"],
        }
        for rate, amounts in _by_rate(facts)
    ]


def b2c_small_rows(facts: Iterable[GSTInvoiceLineFact]) -> list[dict]:
    groups: dict[tuple[str, Decimal], dict] = {}
    for f in facts:
        key = (f.place_of_supply_state_code, f.rate)
        _add_fact(groups.setdefault(key, _tax_bucket()), f)
    return [
        {"type": "OE", "place_of_supply": pos, "rate": rate, **amounts}
        for (pos, rate), amounts in sorted(groups.items(), key=lambda kv: kv[0])
    ]


def hsn_summary_rows(facts: Iterable[GSTInvoiceLineFact]) -> list[dict]:
    groups: dict[str, dict] = {}
    for f in facts:
        g = groups.get(f.hsn_code)
        if g is None:
            # First line in report order names the group.
            g = groups[f.hsn_code] = {
                "hsn_code": f.hsn_code,
                "description": f.description,
                "uqc": f.uqc,
                "total_quantity": ZERO,
                "total_value": ZERO,
                **_tax_bucket(),
            }
        g["total_quantity"] += f.quantity
        g["total_value"] += f.total_value
        _add_fact(g, f)
    return sorted(groups.values(), key=lambda r: (-r["taxable_value"], r["hsn_code"]))


def _sequence_value(invoice: dict) -> int:
    raw = invoice.get("sequence_value")
    if raw is not None:
        return int(raw)
    # Older rows predate stored sequence values: recover the trailing counter.
    m = _TRAILING_DIGITS.search(str(invoice.get("invoice_number") or ""))
    return int(m.group(1)) if m else 0


def document_summary_rows(invoices: Iterable[dict]) -> list[dict]:
    """
    Ranges come from the underlying (date, sequence) order, not from the
    formatted numbers, so a mid-period change of padding width still
    reports the right first and last document.
    """
    groups: dict[str, list[dict]] = defaultdict(list)
    for inv in invoices:
        doc_type = str(inv.get("document_type") or "INVOICE").upper()
        groups[doc_type].append(inv)

    rows = []
    for doc_type in sorted(groups, key=lambda t: (t not in DOCUMENT_SUMMARY_LABELS, t)):
        docs = sorted(groups[doc_type], key=lambda i: (i["invoice_date"], _sequence_value(i), str(i.get("invoice_number") or "")))
        total = len(docs)
        cancelled = sum(1 for d in docs if is_cancelled(d))
        first, last = docs[0], docs[-1]
        rows.append(
            {
                "document_type": DOCUMENT_SUMMARY_LABELS.get(doc_type, doc_type.replace("_", " ").title()),
                "from_number": str(first.get("invoice_number") or ""),
                "to_number": str(last.get("invoice_number") or ""),
                "from_sequence": _sequence_value(first),
                "to_sequence": _sequence_value(last),
                "total_count": total,
                "cancelled_count": cancelled,
                "net_issued": total - cancelled,
            }
        )
    return rows


def _invoice_sort_key(inv: dict):
    return (inv["invoice_date"], _sequence_value(inv), str(inv.get("invoice_number") or ""), str(inv.get("id") or ""))


def _section_totals(rows: list[dict]) -> dict:
    acc = _tax_bucket()
    for r in rows:
        for k in acc:
            acc[k] += r.get(k) or ZERO
    return acc


def build_gstr1_report(
    invoices: Iterable[dict],
    seller_state_code: str,
    month: int,
    year: int,
    *,
    b2c_large_threshold: Optional[Decimal] = None,
) -> dict:
    """
    Pure aggregation over one month of invoices (each with its `lines`).

    - Cancelled documents only count in the document summary.
    - An invoice with a per-record problem (bad GSTIN, unknown state) is
      logged and listed under `excluded`.
    - PeriodDataInconsistency propagates and aborts the report.
    - Output depends only on the input rows, never on their order.
    """
    month_range(month, year)
    seller = normalize_state_code(seller_state_code)
    if seller not in STATE_CODES:
        raise ValueError(f"seller state code is not a valid GST state code: {seller_state_code!r}")
    threshold = B2C_LARGE_THRESHOLD if b2c_large_threshold is None else Decimal(str(b2c_large_threshold))

    ordered = sorted(invoices, key=_invoice_sort_key)

    b2b: list[dict] = []
    b2c_large: list[dict] = []
    b2cs_facts: list[GSTInvoiceLineFact] = []
    hsn_facts: list[GSTInvoiceLineFact] = []
    excluded: list[dict] = []

    for inv in ordered:
        if str(inv.get("document_type") or "INVOICE").upper() != "INVOICE" or is_cancelled(inv):
            continue
        try:
            facts = line_facts(inv, seller)
        except InvalidGSTRecord as exc:
            json_log(
                "warning",
                "gstr1.invoice.excluded",
                invoice_id=inv.get("id"),
                invoice_number=inv.get("invoice_number"),
                error=exc.message,
            )
            excluded.append({"invoice_number": inv.get("invoice_number"), "reason": exc.message})
            continue
        if not facts:
            continue
        head = facts[0]
        kind = classify_invoice(head.invoice_value, head.gstin, head.place_of_supply_state_code, seller, threshold)
        if kind == "B2B":
            b2b.extend(b2b_rows(facts))
        elif kind == "B2CL":
            b2c_large.extend(b2c_large_rows(facts))
        else:
            b2cs_facts.extend(facts)
        hsn_facts.extend(facts)

    b2c_small = b2c_small_rows(b2cs_facts)
    hsn_summary = hsn_summary_rows(hsn_facts)
    document_summary = document_summary_rows(ordered)

    totals = [_section_totals(rows) for rows in (b2b, b2c_large, b2c_small)]
    summary = {
        "total_taxable_value": sum((t["taxable_value"] for t in totals), ZERO),
        "total_igst": sum((t["igst_amount"] for t in totals), ZERO),
        "total_cgst": sum((t["cgst_amount"] for t in totals), ZERO),
        "total_sgst": sum((t["sgst_amount"] for t in totals), ZERO),
        "total_cess": sum((t["cess_amount"] for t in totals), ZERO),
    }
    summary["total_tax"] = summary["total_igst"] + summary["total_cgst"] + summary["total_sgst"] + summary["total_cess"]
    invoice_docs = [r for r in document_summary if r["document_type"] == DOCUMENT_SUMMARY_LABELS["INVOICE"]]
    summary.update(
        {
            "total_invoices": invoice_docs[0]["net_issued"] if invoice_docs else 0,
            "b2b_count": len({r["invoice_number"] for r in b2b}),
            "b2c_large_count": len({r["invoice_number"] for r in b2c_large}),
            "b2c_small_count": len(b2c_small),
            "excluded_count": len(excluded),
        }
    )

    return {
        "period": f"{month:02d}-{year}",
        "financial_year": financial_year(month, year),
        "filing_period": filing_period(month, year),
        "seller_state_code": seller,
        "b2b": b2b,
        "b2c_large": b2c_large,
        "b2c_small": b2c_small,
        "hsn_summary": hsn_summary,
        "document_summary": document_summary,
        "summary": summary,
        "excluded": excluded,
    }
