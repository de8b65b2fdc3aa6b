import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import TransactionType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_minor: int = Field(..., ge=0)
    date: date
    type: TransactionType
    category_id: Optional[int] = None


class TransactionUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    amount_minor: Optional[int] = Field(default=None, ge=0)
    date: Optional[dt.date] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None


class PendingTransactionUpdateIn(BaseModel):
    """Partial edit of a staged row; values go through the import row checks."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    amount: Optional[Decimal] = None
    kind: Optional[str] = None
    date: Optional[Union[dt.date, str]] = None
    category_id: Optional[int] = None


class CommitIn(BaseModel):
    ids: list[int] = Field(default_factory=list)


class ImportRow(BaseModel):
    description: str
    amount_minor: int = Field(..., ge=0)
    date: date
    type: TransactionType
    category_id: Optional[int] = None
    raw_data: Optional[Any] = None
