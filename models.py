import datetime as dt
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class PatternKind(str, Enum):
    subscription = "subscription"
    bill = "bill"
    recurring = "recurring"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class PatternStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"


class AlertType(str, Enum):
    renewal = "renewal"
    unusual_spend = "unusual_spend"


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    # Signed: negative is an outflow, positive an inflow.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    raw_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[Optional[str]] = mapped_column(String(100))
    deleted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_transactions_user_occurred", "user_id", "occurred_at"),
        Index("ix_transactions_user_merchant", "user_id", "merchant"),
    )


class RecurringPattern(Base, TimestampMixin):
    """A detected subscription, bill or generic recurring transaction.

    There is intentionally no unique constraint on
    ``(user_id, kind, identity_key)``: uniqueness of the active pattern is
    maintained by the check-then-write upsert in ``PatternReconciler``.
    """

    __tablename__ = "recurring_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kind: Mapped[PatternKind] = mapped_column(SAEnum(PatternKind), nullable=False)
    identity_key: Mapped[str] = mapped_column(String(240), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    merchant: Mapped[Optional[str]] = mapped_column(String(200))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    direction: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False, default=TransactionType.expense
    )
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    # Signed representative amount, magnitude is the mean of the matches.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # NULL only for bills that did not fit any frequency window.
    frequency: Mapped[Optional[Frequency]] = mapped_column(SAEnum(Frequency))
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    anchor_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    last_observed_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    next_occurrence: Mapped[dt.date] = mapped_column(Date, nullable=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[PatternStatus] = mapped_column(
        SAEnum(PatternStatus), nullable=False, default=PatternStatus.active
    )
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("occurrence_count >= 2", name="occurrence_count_min"),
        Index("ix_patterns_user_kind_status", "user_id", "kind", "status"),
        Index("ix_patterns_user_kind_identity", "user_id", "kind", "identity_key"),
        Index("ix_patterns_user_next", "user_id", "next_occurrence"),
    )


class Alert(Base, TimestampMixin):
    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[AlertType] = mapped_column(SAEnum(AlertType), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pattern_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_patterns.id", ondelete="SET NULL")
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)

    pattern: Mapped[Optional["RecurringPattern"]] = relationship("RecurringPattern")
    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (
        Index("ix_alerts_user_created", "user_id", "created_at"),
        Index(
            "ix_alerts_renewal_lookup",
            "user_id",
            "type",
            "pattern_id",
            "occurrence_date",
        ),
        Index("ix_alerts_spend_lookup", "user_id", "type", "transaction_id"),
    )
