import datetime as dt
from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from models import BucketPeriod, BucketStatus


class BucketIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100)
    size: float = Field(..., gt=0, allow_inf_nan=False)
    period: BucketPeriod


class BucketUpdate(BaseModel):
    """Partial bucket update.

    Only fields present in the request body end up in ``model_fields_set``;
    those are the ones applied. Sending ``null`` for a field is rejected
    rather than being read as "leave unchanged".
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    size: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    period: Optional[BucketPeriod] = None

    @field_validator("name", "size", "period", mode="before")
    @classmethod
    def _reject_explicit_null(cls, value):
        if value is None:
            raise ValueError("Field may be omitted but not set to null")
        return value


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    date: dt.date
    description: str = Field(default="", max_length=500)
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    bucket_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("bucket_id", "bucketId")
    )


class TransactionAssign(BaseModel):
    # Required but nullable: null unassigns.
    bucket_id: Optional[str] = Field(
        ..., validation_alias=AliasChoices("bucket_id", "bucketId")
    )


class BucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    size: float
    period: BucketPeriod
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    date: dt.date
    description: str
    amount: float
    bucket_id: Optional[str]
    bucket: Optional[BucketOut] = None
    created_at: datetime


class DashboardBucketOut(BaseModel):
    id: str
    name: str
    size: float
    period: BucketPeriod
    total_spent: float
    percentage_full: float
    percentage_of_time_elapsed: float
    status: BucketStatus
    transaction_count: int


class StatementRow(BaseModel):
    date: dt.date
    description: str
    amount: float


class StatementUploadOut(BaseModel):
    success: bool
    count: int
    transactions: list[TransactionOut] = Field(default_factory=list)
    errors: Optional[list[str]] = None
