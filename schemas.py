import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AlertType,
    Frequency,
    PatternKind,
    PatternStatus,
    TransactionType,
)


class TransactionIn(BaseModel):
    date: dt.date
    occurred_at: Optional[dt.datetime] = None
    amount_cents: int
    currency_code: str = Field(default="EUR", min_length=3, max_length=3)
    merchant: Optional[str] = Field(default=None, max_length=200)
    raw_description: str = Field(default="", max_length=500)
    category: Optional[str] = Field(default=None, max_length=100)


class BulkTransactionsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transactions: list[TransactionIn] = Field(..., min_length=1, max_length=5000)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    date: dt.date
    occurred_at: dt.datetime
    amount_cents: int
    currency_code: str
    merchant: Optional[str]
    raw_description: str
    category: Optional[str]


class DetectedPatternOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: PatternKind
    name: str
    merchant: Optional[str]
    category: Optional[str]
    direction: TransactionType
    currency_code: str
    amount_cents: int
    frequency: Optional[Frequency]
    is_recurring: bool
    anchor_date: dt.date
    last_observed_date: dt.date
    next_occurrence: dt.date
    occurrence_count: int


class DetectionOut(BaseModel):
    kind: PatternKind
    detected: int
    saved: int
    patterns: list[DetectedPatternOut] = Field(default_factory=list)
    message: Optional[str] = None


class PatternOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: PatternKind
    name: str
    description: Optional[str]
    merchant: Optional[str]
    category: Optional[str]
    direction: TransactionType
    currency_code: str
    amount_cents: int
    frequency: Optional[Frequency]
    is_recurring: bool
    anchor_date: dt.date
    last_observed_date: dt.date
    next_occurrence: dt.date
    occurrence_count: int
    status: PatternStatus
    is_paid: bool
    paid_date: Optional[dt.date]
    notes: Optional[str]
    created_at: dt.datetime


class PatternStatusIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: PatternStatus


class BillPayIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    create_transaction: bool = False


class BillPaymentOut(BaseModel):
    bill: PatternOut
    next_bill: Optional[PatternOut] = None
    transaction: Optional[TransactionOut] = None


class ProjectedOccurrenceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    date: dt.date
    pattern_id: int
    name: str
    amount_cents: int
    direction: TransactionType
    category: Optional[str]
    merchant: Optional[str]


class ProjectionSummaryOut(BaseModel):
    total_income_cents: int
    total_expense_cents: int
    net_cents: int
    count: int


class ProjectionOut(BaseModel):
    occurrences: list[ProjectedOccurrenceOut]
    summary: ProjectionSummaryOut


class AlertCandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: AlertType
    message: str
    pattern_id: Optional[int]
    transaction_id: Optional[int]
    occurrence_date: Optional[dt.date]
    amount_cents: Optional[int]


class AlertGenerationOut(BaseModel):
    generated: int
    saved: int
    alerts: list[AlertCandidateOut] = Field(default_factory=list)


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: AlertType
    message: str
    is_read: bool
    pattern_id: Optional[int]
    transaction_id: Optional[int]
    occurrence_date: Optional[dt.date]
    amount_cents: Optional[int]
    created_at: dt.datetime


class AlertListOut(BaseModel):
    alerts: list[AlertOut]
    unread_count: int


class AlertUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_read: bool = True
