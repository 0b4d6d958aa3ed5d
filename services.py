from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from csv_utils import export_transactions, parse_statement
from models import Bucket, BucketStatus, Transaction
from periods import Period, local_now, period_window, time_elapsed
from schemas import (
    BucketIn,
    BucketUpdate,
    DashboardBucketOut,
    StatementRow,
    TransactionIn,
)

logger = logging.getLogger(__name__)

STATUS_THRESHOLD = 10.0


class NotFoundError(ValueError):
    pass


class DuplicateError(ValueError):
    pass


def _commit(session: Session) -> None:
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise DuplicateError("A record with this unique field already exists") from exc


def determine_status(
    percentage_full: float,
    percentage_of_time_elapsed: float,
    threshold: float = STATUS_THRESHOLD,
) -> BucketStatus:
    if percentage_full < percentage_of_time_elapsed - threshold:
        return BucketStatus.good
    if percentage_full > percentage_of_time_elapsed + threshold:
        return BucketStatus.critical
    return BucketStatus.warning


def summarize_bucket(
    bucket: Bucket, transactions: Iterable[Transaction], now: datetime
) -> DashboardBucketOut:
    """Spend pace of one bucket for the period that contains ``now``."""
    window = period_window(bucket.period, now)
    in_period = [txn for txn in transactions if window.contains(txn.date)]
    total_spent = sum(txn.amount for txn in in_period)
    percentage_full = total_spent / bucket.size * 100
    elapsed = time_elapsed(window, now)
    return DashboardBucketOut(
        id=bucket.id,
        name=bucket.name,
        size=bucket.size,
        period=bucket.period,
        total_spent=total_spent,
        percentage_full=percentage_full,
        percentage_of_time_elapsed=elapsed.percentage,
        status=determine_status(percentage_full, elapsed.percentage),
        transaction_count=len(in_period),
    )


@dataclass
class TransactionFilters:
    period: Optional[Period] = None
    bucket_id: Optional[str] = None
    unassigned: bool = False
    query: Optional[str] = None


class BucketService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Bucket]:
        stmt = select(Bucket).order_by(Bucket.created_at.desc())
        return self.session.scalars(stmt).all()

    def get(self, bucket_id: str) -> Bucket:
        bucket = self.session.get(Bucket, bucket_id)
        if not bucket:
            raise NotFoundError("Bucket not found")
        return bucket

    def create(self, data: BucketIn) -> Bucket:
        bucket = Bucket(name=data.name, size=data.size, period=data.period)
        self.session.add(bucket)
        _commit(self.session)
        self.session.refresh(bucket)
        return bucket

    def update(self, bucket_id: str, data: BucketUpdate) -> Bucket:
        bucket = self.get(bucket_id)
        for name in ("name", "size", "period"):
            if name in data.model_fields_set:
                setattr(bucket, name, getattr(data, name))
        _commit(self.session)
        self.session.refresh(bucket)
        return bucket

    def delete(self, bucket_id: str) -> None:
        bucket = self.get(bucket_id)
        released = self.session.execute(
            update(Transaction)
            .where(Transaction.bucket_id == bucket.id)
            .values(bucket_id=None)
        ).rowcount
        self.session.delete(bucket)
        _commit(self.session)
        logger.info(f"bucket_deleted: id={bucket_id} transactions_unassigned={released}")


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _require_bucket(self, bucket_id: str) -> Bucket:
        bucket = self.session.get(Bucket, bucket_id)
        if not bucket:
            raise NotFoundError("Bucket not found")
        return bucket

    def list_all(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.bucket))
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
        )
        if filters.period and filters.period.slug != "all":
            stmt = stmt.where(
                Transaction.date.between(filters.period.start, filters.period.end)
            )
        if filters.unassigned:
            stmt = stmt.where(Transaction.bucket_id.is_(None))
        elif filters.bucket_id:
            stmt = stmt.where(Transaction.bucket_id == filters.bucket_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        return self.session.scalars(stmt).all()

    def get(self, transaction_id: str) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.bucket))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        if data.bucket_id is not None:
            self._require_bucket(data.bucket_id)
        txn = Transaction(
            date=data.date,
            description=data.description,
            amount=abs(data.amount),
            bucket_id=data.bucket_id,
        )
        self.session.add(txn)
        _commit(self.session)
        self.session.refresh(txn)
        return txn

    def assign_bucket(self, transaction_id: str, bucket_id: Optional[str]) -> Transaction:
        """Set the transaction's bucket; ``None`` unassigns it."""
        txn = self.get(transaction_id)
        if bucket_id is not None:
            self._require_bucket(bucket_id)
        txn.bucket_id = bucket_id
        _commit(self.session)
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: str) -> None:
        txn = self.get(transaction_id)
        self.session.delete(txn)
        _commit(self.session)
        logger.info(f"transaction_deleted: id={transaction_id}")

    def export(self, filters: Optional[TransactionFilters] = None) -> str:
        return export_transactions(self.list_all(filters))


class DashboardService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def bucket_statuses(self, now: Optional[datetime] = None) -> list[DashboardBucketOut]:
        now = now or local_now()
        stmt = (
            select(Bucket)
            .options(selectinload(Bucket.transactions))
            .order_by(Bucket.created_at.desc())
        )
        buckets = self.session.scalars(stmt).all()
        return [summarize_bucket(b, b.transactions, now) for b in buckets]


@dataclass
class StatementUploadResult:
    success: bool
    count: int
    transactions: list[Transaction] = field(default_factory=list)
    errors: Optional[list[str]] = None


class StatementService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def preview(self, content: str) -> tuple[list[StatementRow], list[str]]:
        return parse_statement(content)

    def upload(self, content: str) -> StatementUploadResult:
        """Import a statement as unassigned transactions, all or nothing.

        Any unparseable row rejects the whole batch before a single insert.
        """
        rows, errors = self.preview(content)
        if errors:
            logger.warning(
                f"statement_rejected: parsed_rows={len(rows)} errors={len(errors)}"
            )
            return StatementUploadResult(success=False, count=0, errors=errors)

        created: list[Transaction] = []
        for row in rows:
            txn = Transaction(
                date=row.date,
                description=row.description,
                amount=row.amount,
                bucket_id=None,
            )
            self.session.add(txn)
            created.append(txn)
        _commit(self.session)
        for txn in created:
            self.session.refresh(txn)
        logger.info(f"statement_imported: transactions={len(created)}")
        return StatementUploadResult(success=True, count=len(created), transactions=created)
