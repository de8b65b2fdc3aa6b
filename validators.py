import re
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Union

from csv_utils import parse_amount, parse_date
from models import TransactionType
from normalizers import to_minor_units
from schemas import ImportRow

MAX_AMOUNT = Decimal("1000000000000")
MAX_FUTURE_YEARS = 10
MAX_DESCRIPTION_LENGTH = 200

DESCRIPTION_KEYS = ("description",)
AMOUNT_KEYS = ("amount",)
KIND_KEYS = ("kind", "type")
DATE_KEYS = ("date",)
CATEGORY_KEYS = ("category_id", "categoryid", "category")

CategoryRef = Union[int, str]
CategoryResolver = Callable[[CategoryRef, TransactionType], int]

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_SPACE_RE = re.compile(r"\s+")


def sanitize_description(value: Any) -> str:
    text = _CONTROL_RE.sub(" ", str(value))
    text = text.replace("<", "").replace(">", "")
    text = _SPACE_RE.sub(" ", text).strip()
    return text[:MAX_DESCRIPTION_LENGTH].strip()


def validate_description(value: Any) -> str:
    description = sanitize_description(value)
    if not description:
        raise ValueError("Description cannot be empty")
    return description


def validate_kind(value: Any) -> TransactionType:
    if isinstance(value, TransactionType):
        return value
    text = str(value).strip().lower()
    try:
        return TransactionType(text)
    except ValueError as exc:
        valid = ", ".join(kind.value for kind in TransactionType)
        raise ValueError(
            f"Invalid transaction type: {value}. Valid types are: {valid}"
        ) from exc


def validate_amount(value: Any) -> int:
    amount = parse_amount(value)
    if amount > MAX_AMOUNT:
        raise ValueError("Amount exceeds the maximum allowed")
    return to_minor_units(amount)


def validate_date(value: Any, *, today: date) -> date:
    parsed = parse_date(value)
    try:
        limit = today.replace(year=today.year + MAX_FUTURE_YEARS)
    except ValueError:
        # Feb 29 on a non-leap target year
        limit = today.replace(year=today.year + MAX_FUTURE_YEARS, day=28)
    if parsed > limit:
        raise ValueError(
            f"Date cannot be more than {MAX_FUTURE_YEARS} years in the future"
        )
    return parsed


def parse_category_ref(value: Any) -> Optional[CategoryRef]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("Invalid category ID")
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        parsed = int(text)
        if parsed <= 0:
            raise ValueError("Invalid category ID")
        return parsed
    return text


def _first(row: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def validate_import_row(
    row: Any,
    *,
    resolve_category: CategoryResolver,
    today: date,
) -> ImportRow:
    """Check one parsed row against the import contract.

    Raises ``ValueError`` with a human readable reason; the caller records it
    against the row number and moves on.
    """
    if not isinstance(row, Mapping):
        raise ValueError("Invalid row format")
    fields = {str(key).strip().lower(): value for key, value in row.items()}

    description = _first(fields, DESCRIPTION_KEYS)
    amount = _first(fields, AMOUNT_KEYS)
    kind = _first(fields, KIND_KEYS)
    txn_date = _first(fields, DATE_KEYS)
    if description is None or amount is None or kind is None or txn_date is None:
        raise ValueError("Missing required fields: description, amount, kind, date")

    clean_description = validate_description(description)
    txn_type = validate_kind(kind)
    amount_minor = validate_amount(amount)
    parsed_date = validate_date(txn_date, today=today)

    category_id: Optional[int] = None
    category_ref = parse_category_ref(_first(fields, CATEGORY_KEYS))
    if category_ref is not None:
        category_id = resolve_category(category_ref, txn_type)

    raw_data = fields.pop("raw_data", None)
    if raw_data is None:
        raw_data = dict(row)

    return ImportRow(
        description=clean_description,
        amount_minor=amount_minor,
        date=parsed_date,
        type=txn_type,
        category_id=category_id,
        raw_data=raw_data,
    )
