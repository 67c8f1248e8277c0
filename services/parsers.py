"""Line-item extraction from uploaded CSV, Excel and PDF financial reports."""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import openpyxl
import pdfplumber

from errors import ValidationError

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = ("account_name", "account", "description", "item", "category", "name")
AMOUNT_COLUMNS = ("amount", "value", "balance", "total", "sum")
PDF_ACCOUNT_NAME_LENGTH = 50

REVENUE_WORDS = ("revenue", "sales", "income", "earnings", "profit")
ASSET_WORDS = ("asset", "cash", "inventory", "equipment", "property", "investment")
LIABILITY_WORDS = ("liability", "debt", "payable", "loan", "mortgage")
EQUITY_WORDS = ("equity", "capital", "retained", "stock", "ownership")
EXPENSE_WORDS = ("expense", "cost", "expenditure", "outlay")
CASH_IN_WORDS = ("inflow", "receipt", "income", "collection", "proceeds")
CASH_OUT_WORDS = ("outflow", "payment", "expense", "disbursement", "outlay")

# Ordered keyword rules per report type; first match wins, then the fallback.
TABULAR_RULES: Dict[str, Tuple[List[Tuple[Tuple[str, ...], str]], str]] = {
    "PROFIT_LOSS": ([(REVENUE_WORDS, "REVENUE")], "EXPENSE"),
    "BALANCE_SHEET": (
        [(ASSET_WORDS, "ASSET"), (LIABILITY_WORDS, "LIABILITY"), (EQUITY_WORDS, "EQUITY")],
        "EXPENSE",
    ),
    "CASH_FLOW": ([(CASH_IN_WORDS, "CASH_FLOW_IN")], "CASH_FLOW_OUT"),
    "TRIAL_BALANCE": (
        [
            (REVENUE_WORDS, "REVENUE"),
            (ASSET_WORDS, "ASSET"),
            (LIABILITY_WORDS, "LIABILITY"),
            (EQUITY_WORDS, "EQUITY"),
        ],
        "EXPENSE",
    ),
}

# PDF text lines carry no column structure, so only lines mentioning a
# known term are kept.
PDF_RULES: Dict[str, List[Tuple[Tuple[str, ...], str]]] = {
    "PROFIT_LOSS": [
        (("revenue", "sales", "income", "earnings"), "REVENUE"),
        (EXPENSE_WORDS, "EXPENSE"),
    ],
    "BALANCE_SHEET": [
        (ASSET_WORDS, "ASSET"),
        (LIABILITY_WORDS, "LIABILITY"),
        (EQUITY_WORDS, "EQUITY"),
    ],
    "CASH_FLOW": [(CASH_IN_WORDS, "CASH_FLOW_IN"), (CASH_OUT_WORDS, "CASH_FLOW_OUT")],
    "TRIAL_BALANCE": [
        (REVENUE_WORDS, "REVENUE"),
        (ASSET_WORDS, "ASSET"),
        (LIABILITY_WORDS, "LIABILITY"),
        (EQUITY_WORDS, "EQUITY"),
        (EXPENSE_WORDS, "EXPENSE"),
    ],
}

_PDF_AMOUNT_RE = re.compile(r"\$?(\d[\d,]*\.?\d*)")


class ReportParseError(ValidationError):
    """Raised when an uploaded report cannot be turned into line items."""


@dataclass
class ParsedRecord:
    account_name: str
    amount: float
    data_type: str
    account_category: Optional[str] = None
    period: Optional[str] = None
    notes: Optional[str] = None


def classify_account(account_name: str, report_type: str) -> str:
    """Map an account name to a data type using the report type's keyword rules."""
    rules, fallback = TABULAR_RULES.get(report_type, ([], "EXPENSE"))
    lowered = account_name.lower()
    for words, data_type in rules:
        if any(word in lowered for word in words):
            return data_type
    return fallback


def parse_amount(raw) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    cleaned = str(raw).replace("$", "").replace(",", "").strip()
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def _first_text(row: dict, columns: Iterable[str]) -> str:
    for column in columns:
        value = row.get(column)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _optional(row: dict, *columns: str) -> Optional[str]:
    for column in columns:
        value = row.get(column)
        if value not in (None, ""):
            return str(value)
    return None


def parse_row(row: dict, report_type: str) -> Optional[ParsedRecord]:
    """Turn one header-keyed row into a record; ``None`` for nameless or zero rows."""
    account_name = _first_text(row, ACCOUNT_COLUMNS)
    amount = None
    for column in AMOUNT_COLUMNS:
        amount = parse_amount(row.get(column))
        if amount is not None:
            break
    if not account_name or not amount:
        return None
    return ParsedRecord(
        account_name=account_name,
        amount=amount,
        data_type=classify_account(account_name, report_type),
        account_category=_optional(row, "category", "account_category"),
        period=_optional(row, "period", "date"),
        notes=_optional(row, "notes", "comments"),
    )


def _rows_to_records(header, rows, report_type: str) -> List[ParsedRecord]:
    headers = [str(h).strip().lower() if h is not None else "" for h in header]
    records = []
    for values in rows:
        if not values or all(v in (None, "") for v in values):
            continue
        row = {h: v for h, v in zip(headers, values) if h}
        record = parse_row(row, report_type)
        if record:
            records.append(record)
    return records


def parse_csv(content: bytes, report_type: str) -> List[ParsedRecord]:
    text = content.decode("utf-8-sig", errors="replace").strip()
    rows = list(csv.reader(io.StringIO(text)))
    if len(rows) < 2:
        raise ReportParseError("CSV file must have at least a header and one data row")
    header = rows[0]
    body = [r for r in rows[1:] if len(r) == len(header)]
    return _rows_to_records(header, [[v.strip() for v in r] for r in body], report_type)


def parse_xlsx(content: bytes, report_type: str) -> List[ParsedRecord]:
    try:
        wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ReportParseError("Failed to parse Excel file", details=str(e))
    try:
        rows = list(wb.worksheets[0].iter_rows(values_only=True))
    finally:
        wb.close()
    if len(rows) < 2:
        raise ReportParseError("Excel file must have at least a header and one data row")
    return _rows_to_records(rows[0], rows[1:], report_type)


def parse_pdf(content: bytes, report_type: str) -> List[ParsedRecord]:
    rules = PDF_RULES.get(report_type, PDF_RULES["PROFIT_LOSS"])
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            text = "\n".join(page.extract_text() or "" for page in pdf.pages)
    except Exception as e:
        raise ReportParseError("Failed to parse PDF", details=str(e))

    records = []
    for line in (l.strip() for l in text.splitlines()):
        if not line:
            continue
        lowered = line.lower()
        for words, data_type in rules:
            if not any(word in lowered for word in words):
                continue
            match = _PDF_AMOUNT_RE.search(line)
            if match:
                records.append(ParsedRecord(
                    account_name=line[:PDF_ACCOUNT_NAME_LENGTH].strip(),
                    amount=float(match.group(1).replace(",", "")),
                    data_type=data_type,
                ))
            break
    return records


PARSERS = {
    "csv": parse_csv,
    "xlsx": parse_xlsx,
    "pdf": parse_pdf,
}


def parse_report(content: bytes, file_type: str, report_type: str) -> List[ParsedRecord]:
    """Parse *content* according to *file_type*.

    Raises:
        ReportParseError: Unsupported type or unreadable content.
    """
    parser = PARSERS.get(file_type.lower())
    if parser is None:
        raise ReportParseError(
            f"Unsupported file type: {file_type}. Only CSV, PDF and XLSX files are supported."
        )
    records = parser(content, report_type)
    logger.info("Parsed %d line items from %s report", len(records), report_type)
    return records
