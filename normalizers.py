from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from config import get_settings

AmountLike = Union[Decimal, int, float, str]


def decimal_places(places: Optional[int] = None) -> int:
    return get_settings().amount_decimal_places if places is None else places


def to_minor_units(amount: AmountLike, *, places: Optional[int] = None) -> int:
    """Quantize ``amount`` to the ledger precision and return integer minor units."""
    places = decimal_places(places)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not value.is_finite():
        raise ValueError("Invalid amount")
    scaled = (value * (Decimal(10) ** places)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(scaled)


def from_minor_units(minor: int, *, places: Optional[int] = None) -> Decimal:
    places = decimal_places(places)
    return Decimal(minor).scaleb(-places)


def format_minor_units(minor: int, *, places: Optional[int] = None) -> str:
    places = decimal_places(places)
    return f"{from_minor_units(minor, places=places):.{places}f}"


def normalize_day(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def month_start(value: Union[date, datetime]) -> date:
    return normalize_day(value).replace(day=1)


def dedup_key(day: Union[date, datetime], amount_minor: int) -> tuple[str, str]:
    return (normalize_day(day).isoformat(), format_minor_units(amount_minor))
