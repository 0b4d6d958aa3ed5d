import uuid
from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class BucketPeriod(str, Enum):
    monthly = "monthly"
    yearly = "yearly"


class BucketStatus(str, Enum):
    good = "good"
    warning = "warning"
    critical = "critical"


def new_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Bucket(Base, TimestampMixin):
    __tablename__ = "buckets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[float] = mapped_column(Float, nullable=False)
    period: Mapped[BucketPeriod] = mapped_column(
        SAEnum(BucketPeriod), nullable=False
    )

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bucket"
    )

    __table_args__ = (
        CheckConstraint("size > 0", name="ck_buckets_size_positive"),
        Index("ix_buckets_created_at", "created_at"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    bucket_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("buckets.id", ondelete="SET NULL")
    )

    bucket: Mapped[Optional["Bucket"]] = relationship(
        "Bucket", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_bucket_date", "bucket_id", "date"),
        CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
