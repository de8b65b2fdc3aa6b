from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from buckets import SUMMARY_FIELDS, bucket_for, closing_balance
from config import get_settings
from csv_utils import ImportShape, parse_import_file
from database import unit_of_work
from models import (
    Category,
    MonthlySummary,
    PendingTransaction,
    Transaction,
    TransactionType,
    utcnow,
)
from normalizers import dedup_key, month_start, normalize_day
from periods import Period, local_today, month_period, previous_month_start, year_period
from schemas import (
    CategoryIn,
    ImportRow,
    PendingTransactionUpdateIn,
    TransactionIn,
    TransactionUpdateIn,
)
from validators import (
    CategoryRef,
    validate_amount,
    validate_date,
    validate_description,
    validate_import_row,
    validate_kind,
)

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Transaction has expired. Please re-import."


class NotFoundError(ValueError):
    pass


class CategoryTypeMismatch(ValueError):
    pass


class ImportCapacityExceeded(ValueError):
    pass


class ImportCategoryAmbiguous(ValueError):
    pass


class PendingTransactionExpired(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


def is_category_compatible(
    category_type: TransactionType, transaction_type: TransactionType
) -> bool:
    return TransactionType(category_type) == TransactionType(transaction_type)


def purge_expired_pending(
    session: Session, now: Optional[datetime] = None, user_id: Optional[int] = None
) -> int:
    """Delete staged rows whose time-to-live has passed. Returns the row count."""
    now = now or utcnow()
    stmt = delete(PendingTransaction).where(PendingTransaction.expires_at <= now)
    if user_id is not None:
        stmt = stmt.where(PendingTransaction.user_id == user_id)
    with unit_of_work(session):
        result = session.execute(stmt)
    return int(result.rowcount or 0)


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if type is not None:
            stmt = stmt.where(Category.type == type)
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            user_id=self.user_id, name=data.name.strip(), type=data.type
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError("Category not found")
        return category

    def resolve_compatible(
        self, category_id: int, transaction_type: TransactionType
    ) -> Category:
        category = self.get(category_id)
        if not is_category_compatible(category.type, transaction_type):
            raise CategoryTypeMismatch(
                f"Category '{category.name}' is not valid for type "
                f"'{TransactionType(transaction_type).value}'"
            )
        return category

    def matcher(self) -> "CategoryMatcher":
        return CategoryMatcher(self.list_all())


class CategoryMatcher:
    """Resolves import category references against a preloaded category list."""

    def __init__(self, categories: Sequence[Category]) -> None:
        self.categories = list(categories)
        self.by_id = {category.id: category for category in self.categories}

    def resolve(self, ref: CategoryRef, transaction_type: TransactionType) -> int:
        if isinstance(ref, int):
            category = self.by_id.get(ref)
            if category is None:
                raise NotFoundError("Category not found or access denied")
            if not is_category_compatible(category.type, transaction_type):
                raise CategoryTypeMismatch(
                    "Category type does not match transaction type"
                )
            return category.id
        return self._match_name(ref, transaction_type).id

    def _match_name(self, name: str, transaction_type: TransactionType) -> Category:
        input_lower = name.strip().lower()
        candidates = [
            category
            for category in self.categories
            if is_category_compatible(category.type, transaction_type)
        ]
        for category in candidates:
            if category.name.strip().lower() == input_lower:
                return category

        best_distance: Optional[int] = None
        best: list[Category] = []
        for category in candidates:
            dist = int(Levenshtein.distance(input_lower, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted({c.name for c in best}))
                raise ImportCategoryAmbiguous(
                    f"Category '{name}' is ambiguous; matches: {options}"
                )
            return best[0]
        raise NotFoundError(
            f"Category '{name}' not found for type "
            f"'{TransactionType(transaction_type).value}'"
        )


@dataclass
class AnnualSummary:
    year: int
    totals: dict[str, int]
    closing_balance_minor: int
    months: list[MonthlySummary] = field(default_factory=list)


class SummaryService:
    """Maintains the per-user monthly summary rows.

    ``recompute`` rebuilds one month from the ledger with a single grouped
    query. ``apply_delta`` folds one amount change into the stored bucket and
    recomputes the closing balance from the opening balance and the five
    buckets, so rounding or ordering never drifts the balance.

    Neither method commits; callers run them inside ``unit_of_work`` together
    with the ledger mutation they account for.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _find(self, start: date, *, lock: bool = False) -> Optional[MonthlySummary]:
        stmt = select(MonthlySummary).where(
            MonthlySummary.user_id == self.user_id,
            MonthlySummary.month_start == start,
        )
        if lock:
            stmt = stmt.with_for_update()
        return self.session.scalar(stmt)

    def previous_closing(self, month: date) -> int:
        previous = self._find(previous_month_start(normalize_day(month)))
        return previous.closing_balance_minor if previous else 0

    def recompute(self, month: date) -> MonthlySummary:
        period = month_period(normalize_day(month))
        opening = self.previous_closing(period.start)

        rows = self.session.execute(
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_minor), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type)
        ).all()

        totals = {name: 0 for name in SUMMARY_FIELDS}
        for txn_type, total in rows:
            config = bucket_for(txn_type)
            if config.affects_summary:
                totals[config.field] += int(total or 0)

        summary = self._find(period.start, lock=True)
        if summary is None:
            summary = MonthlySummary(user_id=self.user_id, month_start=period.start)
            self.session.add(summary)
        for name, value in totals.items():
            setattr(summary, name, value)
        summary.closing_balance_minor = closing_balance(opening, totals)
        self.session.flush()
        logger.info(
            f"summary_recompute: user_id={self.user_id} month={period.slug} "
            f"closing={summary.closing_balance_minor}"
        )
        return summary

    def ensure(self, month: date) -> MonthlySummary:
        summary = self._find(month_start(month), lock=True)
        if summary is None:
            summary = self.recompute(month)
        return summary

    def apply_delta(
        self,
        month: date,
        kind: TransactionType,
        old_amount: Optional[int] = None,
        new_amount: Optional[int] = None,
    ) -> MonthlySummary:
        """Fold ``new_amount - old_amount`` into the month's bucket for ``kind``.

        When the month has no summary yet it is recomputed from the ledger
        instead, which already reflects the caller's flushed mutation.
        """
        start = month_start(month)
        summary = self._find(start, lock=True)
        if summary is None:
            return self.recompute(start)

        config = bucket_for(kind)
        if not config.affects_summary:
            return summary

        delta = (new_amount or 0) - (old_amount or 0)
        if delta == 0:
            return summary

        setattr(summary, config.field, getattr(summary, config.field) + delta)
        totals = {name: getattr(summary, name) for name in SUMMARY_FIELDS}
        summary.closing_balance_minor = closing_balance(
            self.previous_closing(start), totals
        )
        self.session.flush()
        return summary

    def get(self, month: date) -> MonthlySummary:
        summary = self._find(month_start(month))
        if summary is not None:
            return summary
        with unit_of_work(self.session):
            summary = self.recompute(month)
        return summary

    def rebuild_all(self) -> int:
        """Recompute every month of the user oldest first so balances carry over."""
        with unit_of_work(self.session):
            dates = self.session.scalars(
                select(Transaction.date)
                .where(Transaction.user_id == self.user_id)
                .distinct()
            ).all()
            months = {month_start(d) for d in dates}
            months.update(
                self.session.scalars(
                    select(MonthlySummary.month_start).where(
                        MonthlySummary.user_id == self.user_id
                    )
                ).all()
            )
            for start in sorted(months):
                self.recompute(start)
        logger.info(f"summary_rebuild: user_id={self.user_id} months={len(months)}")
        return len(months)

    def annual(self, year: int) -> AnnualSummary:
        period = year_period(year)
        months = list(
            self.session.scalars(
                select(MonthlySummary)
                .where(
                    MonthlySummary.user_id == self.user_id,
                    MonthlySummary.month_start.between(period.start, period.end),
                )
                .order_by(MonthlySummary.month_start.asc())
            ).all()
        )
        totals = {name: 0 for name in SUMMARY_FIELDS}
        for summary in months:
            for name in SUMMARY_FIELDS:
                totals[name] += getattr(summary, name)
        closing = months[-1].closing_balance_minor if months else 0
        return AnnualSummary(
            year=year, totals=totals, closing_balance_minor=closing, months=months
        )


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _check_category(
        self, category_id: Optional[int], transaction_type: TransactionType
    ) -> None:
        if category_id is not None:
            CategoryService(self.session, self.user_id).resolve_compatible(
                category_id, transaction_type
            )

    def create(self, data: TransactionIn) -> Transaction:
        description = validate_description(data.description)
        with unit_of_work(self.session):
            self._check_category(data.category_id, data.type)
            summaries = SummaryService(self.session, self.user_id)
            summaries.ensure(data.date)
            txn = Transaction(
                user_id=self.user_id,
                description=description,
                amount_minor=data.amount_minor,
                date=data.date,
                type=data.type,
                category_id=data.category_id,
            )
            self.session.add(txn)
            self.session.flush()
            summaries.apply_delta(data.date, data.type, new_amount=data.amount_minor)
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_minor={txn.amount_minor}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list_for_month(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No fields provided to update")
        for name in ("description", "amount_minor", "date", "type"):
            if name in changes and changes[name] is None:
                raise ValueError(f"{name} cannot be empty")

        with unit_of_work(self.session):
            txn = self.get(transaction_id)
            old_date, old_type, old_amount = txn.date, txn.type, txn.amount_minor
            new_type = changes.get("type", old_type)
            new_date = changes.get("date", old_date)
            category_id = changes.get("category_id", txn.category_id)
            self._check_category(category_id, new_type)

            summaries = SummaryService(self.session, self.user_id)
            summaries.ensure(old_date)
            summaries.ensure(new_date)

            if "description" in changes:
                txn.description = validate_description(changes["description"])
            if "amount_minor" in changes:
                txn.amount_minor = changes["amount_minor"]
            txn.date = new_date
            txn.type = new_type
            txn.category_id = category_id
            self.session.flush()

            if month_start(old_date) == month_start(new_date) and old_type == new_type:
                summaries.apply_delta(
                    new_date, new_type, old_amount=old_amount, new_amount=txn.amount_minor
                )
            else:
                summaries.apply_delta(old_date, old_type, old_amount=old_amount)
                summaries.apply_delta(new_date, new_type, new_amount=txn.amount_minor)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        with unit_of_work(self.session):
            txn = self.get(transaction_id)
            txn_date, txn_type, amount = txn.date, txn.type, txn.amount_minor
            summaries = SummaryService(self.session, self.user_id)
            summaries.ensure(txn_date)
            self.session.delete(txn)
            self.session.flush()
            summaries.apply_delta(txn_date, txn_type, old_amount=amount)
        logger.info(f"transaction_deleted: user_id={self.user_id} id={transaction_id}")


class DuplicateDetector:
    """Batch lookup of (day, amount) pairs already present in the ledger."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def find_existing(
        self, candidates: Sequence[tuple[date, int]]
    ) -> set[tuple[str, str]]:
        if not candidates:
            return set()
        days = [normalize_day(day) for day, _ in candidates]
        rows = self.session.execute(
            select(Transaction.date, Transaction.amount_minor).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(min(days), max(days)),
            )
        ).all()
        existing = {dedup_key(row.date, row.amount_minor) for row in rows}
        return {
            key
            for key in (dedup_key(day, amount) for day, amount in candidates)
            if key in existing
        }


@dataclass
class ImportReport:
    total: int
    valid: int
    errors: list[str] = field(default_factory=list)
    error_count: int = 0
    created_ids: list[int] = field(default_factory=list)
    duplicates: int = 0

    @property
    def created(self) -> int:
        return len(self.created_ids)


class ImportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def import_file(
        self,
        content: bytes,
        shape: ImportShape,
        *,
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> ImportReport:
        max_bytes = get_settings().import_max_file_bytes
        if len(content) > max_bytes:
            raise ImportCapacityExceeded(
                f"File size ({len(content)} bytes) exceeds maximum of {max_bytes} bytes"
            )
        rows = parse_import_file(content, shape)
        return self.stage_rows(rows, now=now, today=today)

    def stage_rows(
        self,
        rows: Sequence[object],
        *,
        now: Optional[datetime] = None,
        today: Optional[date] = None,
    ) -> ImportReport:
        settings = get_settings()
        if not rows:
            raise ValueError("No data rows found in file")
        if len(rows) > settings.import_max_rows:
            raise ImportCapacityExceeded(
                f"File contains too many rows ({len(rows)}). "
                f"Maximum allowed: {settings.import_max_rows}"
            )
        now = now or utcnow()
        today = today or local_today()

        matcher = CategoryService(self.session, self.user_id).matcher()
        valid: list[ImportRow] = []
        errors: list[str] = []
        for idx, raw in enumerate(rows, start=1):
            try:
                valid.append(
                    validate_import_row(
                        raw, resolve_category=matcher.resolve, today=today
                    )
                )
            except ValueError as exc:
                errors.append(f"Row {idx}: {exc}")

        report = ImportReport(
            total=len(rows),
            valid=len(valid),
            errors=errors[: settings.import_max_errors],
            error_count=len(errors),
        )
        if valid:
            existing = DuplicateDetector(self.session, self.user_id).find_existing(
                [(row.date, row.amount_minor) for row in valid]
            )
            expires_at = now + timedelta(hours=settings.pending_ttl_hours)
            with unit_of_work(self.session):
                staged: list[PendingTransaction] = []
                for row in valid:
                    pending = PendingTransaction(
                        user_id=self.user_id,
                        description=row.description,
                        amount_minor=row.amount_minor,
                        date=row.date,
                        type=row.type,
                        category_id=row.category_id,
                        expires_at=expires_at,
                        is_duplicate=dedup_key(row.date, row.amount_minor) in existing,
                        raw_data=(
                            json.dumps(row.raw_data, default=str)
                            if row.raw_data is not None
                            else None
                        ),
                    )
                    self.session.add(pending)
                    staged.append(pending)
                self.session.flush()
                report.created_ids = [pending.id for pending in staged]
                report.duplicates = sum(1 for pending in staged if pending.is_duplicate)

        logger.info(
            f"import_staged: user_id={self.user_id} total={report.total} "
            f"valid={report.valid} created={report.created} "
            f"duplicates={report.duplicates} errors={report.error_count}"
        )
        return report


@dataclass
class CommitResult:
    id: int
    success: bool
    transaction_id: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class CommitReport:
    results: list[CommitResult] = field(default_factory=list)

    @property
    def requested(self) -> int:
        return len(self.results)

    @property
    def committed(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return self.requested - self.committed

    @property
    def any_committed(self) -> bool:
        return self.committed > 0


class PendingTransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    @staticmethod
    def is_expired(pending: PendingTransaction, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= pending.expires_at

    def list_pending(
        self, now: Optional[datetime] = None
    ) -> list[tuple[PendingTransaction, bool]]:
        """Staged rows newest date first, each paired with its expired flag."""
        now = now or utcnow()
        stmt = (
            select(PendingTransaction)
            .options(joinedload(PendingTransaction.category))
            .where(PendingTransaction.user_id == self.user_id)
            .order_by(PendingTransaction.date.desc(), PendingTransaction.id.desc())
        )
        return [
            (pending, self.is_expired(pending, now))
            for pending in self.session.scalars(stmt).all()
        ]

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        count = purge_expired_pending(self.session, now=now, user_id=self.user_id)
        logger.info(f"pending_purged: user_id={self.user_id} count={count}")
        return count

    def get(self, pending_id: int) -> PendingTransaction:
        pending = self.session.scalar(
            select(PendingTransaction).where(
                PendingTransaction.user_id == self.user_id,
                PendingTransaction.id == pending_id,
            )
        )
        if not pending:
            raise NotFoundError("Pending transaction not found")
        return pending

    def update(
        self,
        pending_id: int,
        data: PendingTransactionUpdateIn,
        *,
        today: Optional[date] = None,
    ) -> PendingTransaction:
        changes = data.model_dump(exclude_unset=True)
        if not changes:
            raise ValueError("No fields provided to update")
        today = today or local_today()

        with unit_of_work(self.session):
            pending = self.get(pending_id)
            if "description" in changes:
                pending.description = validate_description(changes["description"] or "")
            if "kind" in changes:
                if changes["kind"] is None:
                    raise ValueError("kind cannot be empty")
                pending.type = validate_kind(changes["kind"])
            if "amount" in changes:
                if changes["amount"] is None:
                    raise ValueError("Invalid amount")
                pending.amount_minor = validate_amount(changes["amount"])
            if "date" in changes:
                if changes["date"] is None:
                    raise ValueError("Date is required")
                pending.date = validate_date(changes["date"], today=today)

            category_id = changes.get("category_id", pending.category_id)
            if category_id is not None:
                CategoryService(self.session, self.user_id).resolve_compatible(
                    category_id, pending.type
                )
            pending.category_id = category_id
        self.session.refresh(pending)
        logger.info(
            f"pending_updated: user_id={self.user_id} id={pending_id} "
            f"fields={','.join(sorted(changes))}"
        )
        return pending

    def reject(self, pending_id: int) -> None:
        with unit_of_work(self.session):
            pending = self.get(pending_id)
            self.session.delete(pending)
        logger.info(f"pending_rejected: user_id={self.user_id} id={pending_id}")

    def commit(
        self, ids: Sequence[int], *, now: Optional[datetime] = None
    ) -> CommitReport:
        """Promote staged rows one by one; each row succeeds or fails on its own."""
        now = now or utcnow()
        report = CommitReport()
        for pending_id in dict.fromkeys(ids):
            report.results.append(self._commit_one(pending_id, now))
        logger.info(
            f"pending_commit: user_id={self.user_id} requested={report.requested} "
            f"committed={report.committed} failed={report.failed}"
        )
        return report

    def _commit_one(self, pending_id: int, now: datetime) -> CommitResult:
        try:
            with unit_of_work(self.session):
                transaction_id = self._promote(pending_id, now)
        except NotFoundError as exc:
            return CommitResult(
                id=pending_id, success=False, error=str(exc), reason="not_found"
            )
        except PendingTransactionExpired as exc:
            return CommitResult(
                id=pending_id, success=False, error=str(exc), reason="expired"
            )
        except Exception as exc:
            logger.exception(
                f"pending_commit_failed: user_id={self.user_id} id={pending_id}"
            )
            return CommitResult(
                id=pending_id,
                success=False,
                error=str(exc) or type(exc).__name__,
                reason="error",
            )
        return CommitResult(id=pending_id, success=True, transaction_id=transaction_id)

    def _promote(self, pending_id: int, now: datetime) -> int:
        pending = self.get(pending_id)
        if self.is_expired(pending, now):
            raise PendingTransactionExpired(EXPIRED_MESSAGE)

        category_id = pending.category_id
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if (
                category is None
                or category.user_id != self.user_id
                or not is_category_compatible(category.type, pending.type)
            ):
                category_id = None

        summaries = SummaryService(self.session, self.user_id)
        summaries.ensure(pending.date)
        txn = Transaction(
            user_id=self.user_id,
            description=pending.description,
            amount_minor=pending.amount_minor,
            date=pending.date,
            type=pending.type,
            category_id=category_id,
        )
        self.session.add(txn)
        self.session.flush()
        summaries.apply_delta(pending.date, pending.type, new_amount=pending.amount_minor)
        self.session.delete(pending)
        self.session.flush()
        return txn.id
