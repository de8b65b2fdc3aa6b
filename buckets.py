from dataclasses import dataclass
from typing import Optional

from models import TransactionType


@dataclass(frozen=True)
class BucketConfig:
    field: Optional[str]
    is_income: bool

    @property
    def affects_summary(self) -> bool:
        return self.field is not None


BUCKETS: dict[TransactionType, BucketConfig] = {
    TransactionType.income: BucketConfig(field="income_minor", is_income=True),
    TransactionType.needs: BucketConfig(field="needs_minor", is_income=False),
    TransactionType.wants: BucketConfig(field="wants_minor", is_income=False),
    TransactionType.reserves: BucketConfig(field="reserves_minor", is_income=False),
    TransactionType.investments: BucketConfig(
        field="investments_minor", is_income=False
    ),
    # rollover carries a balance between periods and never counts toward totals
    TransactionType.rollover: BucketConfig(field=None, is_income=False),
}

_missing = set(TransactionType) - set(BUCKETS)
if _missing:
    raise RuntimeError(
        "Bucket mapping incomplete for: "
        + ", ".join(sorted(kind.value for kind in _missing))
    )

SUMMARY_FIELDS: tuple[str, ...] = tuple(
    config.field for config in BUCKETS.values() if config.affects_summary
)


def bucket_for(kind: TransactionType) -> BucketConfig:
    return BUCKETS[TransactionType(kind)]


def closing_balance(opening_minor: int, totals: dict[str, int]) -> int:
    """Closing balance from the opening balance and the five bucket totals."""
    balance = opening_minor
    for config in BUCKETS.values():
        if not config.affects_summary:
            continue
        value = totals.get(config.field, 0)
        balance = balance + value if config.is_income else balance - value
    return balance
