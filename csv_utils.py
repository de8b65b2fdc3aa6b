import csv
import json
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from io import StringIO
from typing import Any, Optional

BANK_EXPORT_REQUIRED_HEADERS = frozenset({"date", "amount", "type of transaction"})

_CURRENCY_RE = re.compile(r"(R\$|US\$|€|\$|£|EUR|USD|BRL|GBP)", re.IGNORECASE)
_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y")


class ImportShape(str, Enum):
    tabular = "tabular"
    structured = "structured"


def detect_shape(filename: Optional[str], content_type: Optional[str]) -> ImportShape:
    name = (filename or "").lower()
    kind = (content_type or "").lower()
    if kind == "application/json" or name.endswith(".json"):
        return ImportShape.structured
    if (
        kind in {"text/csv", "application/vnd.ms-excel"}
        or name.endswith(".csv")
    ):
        return ImportShape.tabular
    raise ValueError("Invalid file type. Only CSV and JSON files are supported")


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        raise ValueError("Date is required")
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError as exc:
        raise ValueError("Invalid date format") from exc


def _normalize_separators(clean: str) -> str:
    """Resolve thousands and decimal separators to a plain ``1234.56`` string."""
    if "," in clean and "." in clean:
        # the separator that comes last is the decimal one
        if clean.rfind(",") > clean.rfind("."):
            return clean.replace(".", "").replace(",", ".")
        return clean.replace(",", "")
    if "," in clean:
        whole, _, fraction = clean.rpartition(",")
        if clean.count(",") == 1 and 1 <= len(fraction) <= 2:
            return f"{whole}.{fraction}"
        return clean.replace(",", "")
    if clean.count(".") > 1:
        return clean.replace(".", "")
    return clean


def parse_amount(value: Any, *, allow_negative: bool = False) -> Decimal:
    """Parse money from numbers or bank-style strings (``R$ 1.234,56``, ``(12.00)``)."""
    if isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        clean = _CURRENCY_RE.sub("", str(value))
        clean = clean.replace("\u00a0", "").replace(" ", "").strip()
        negative = False
        if clean.startswith("(") and clean.endswith(")"):
            negative = True
            clean = clean[1:-1]
        if clean.endswith("-"):
            negative = True
            clean = clean[:-1]
        if clean.startswith("-"):
            negative = not negative
            clean = clean[1:]
        elif clean.startswith("+"):
            clean = clean[1:]
        clean = _normalize_separators(clean)
        if not clean:
            raise ValueError("Invalid amount")
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
        if negative:
            amount = -amount
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if amount < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return amount


def _is_blank(row: list[str]) -> bool:
    return all(not cell or not cell.strip() for cell in row)


def _cell(row: list[str], headers: dict[str, int], name: str) -> Optional[str]:
    idx = headers.get(name)
    if idx is None or idx >= len(row):
        return None
    return row[idx]


def map_bank_row(row: list[str], headers: dict[str, int]) -> dict[str, object]:
    """Translate one row of the bank export layout to the import row contract."""
    description = (_cell(row, headers, "sub-description") or "").strip()
    if not description:
        description = (_cell(row, headers, "description") or "").strip()
    date_raw = (_cell(row, headers, "date") or "").strip()
    amount_raw = (_cell(row, headers, "amount") or "").strip()
    direction = (_cell(row, headers, "type of transaction") or "").strip().lower()

    mapped: dict[str, object] = {"description": description, "date": date_raw}
    try:
        signed = parse_amount(amount_raw, allow_negative=True)
    except ValueError:
        mapped["amount"] = amount_raw
        signed = None
    else:
        mapped["amount"] = abs(signed)

    if direction == "credit":
        mapped["kind"] = "income"
    elif direction == "debit":
        mapped["kind"] = "needs"
    elif signed is not None and signed > 0:
        mapped["kind"] = "income"
    else:
        mapped["kind"] = "needs"

    mapped["raw_data"] = {
        "filter": _cell(row, headers, "filter"),
        "date": date_raw,
        "description": _cell(row, headers, "description"),
        "sub_description": _cell(row, headers, "sub-description"),
        "type_of_transaction": direction,
        "amount": amount_raw,
        "balance": _cell(row, headers, "balance"),
    }
    return mapped


def parse_tabular(content: str) -> list[dict[str, object]]:
    try:
        rows = list(csv.reader(StringIO(content)))
    except csv.Error as exc:
        raise ValueError(f"Failed to parse file: {exc}") from exc
    if not rows:
        return []
    header_names = [str(name).strip().lower() for name in rows[0]]
    headers = {name: idx for idx, name in enumerate(header_names)}
    data_rows = [row for row in rows[1:] if not _is_blank(row)]

    if BANK_EXPORT_REQUIRED_HEADERS.issubset(headers):
        return [map_bank_row(row, headers) for row in data_rows]

    parsed: list[dict[str, object]] = []
    for row in data_rows:
        parsed.append(
            {
                name: (row[idx] if idx < len(row) else "")
                for idx, name in enumerate(header_names)
            }
        )
    return parsed


def parse_structured(content: str) -> list[object]:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Failed to parse file: {exc.msg}") from exc
    if not isinstance(data, list):
        raise ValueError("JSON file must contain an array of objects")
    return data


def parse_import_file(content: bytes, shape: ImportShape) -> list[object]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValueError("File must be UTF-8 encoded") from exc
    if not text.strip():
        raise ValueError("File is empty")
    if ImportShape(shape) == ImportShape.structured:
        return parse_structured(text)
    return parse_tabular(text)
