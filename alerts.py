from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from detection import TransactionRecord, build_records, mean_magnitude
from models import (
    Alert,
    AlertType,
    PatternKind,
    PatternStatus,
    RecurringPattern,
    Transaction,
)
from recurrence import local_today

logger = logging.getLogger(__name__)

RENEWAL_KINDS = (PatternKind.subscription, PatternKind.bill)


def format_amount(cents: int, currency_code: str = "EUR") -> str:
    value = f"{abs(cents) / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{value} {currency_code}"


def _when(days: int) -> str:
    if days <= 0:
        return "today"
    if days == 1:
        return "tomorrow"
    return f"in {days} days"


def renewal_message(pattern: RecurringPattern, today: date) -> str:
    days = (pattern.next_occurrence - today).days
    amount = format_amount(pattern.amount_cents, pattern.currency_code)
    due = pattern.next_occurrence.isoformat()
    if pattern.kind == PatternKind.bill:
        return f"{pattern.name} bill is due {_when(days)} on {due} ({amount})"
    return f"{pattern.name} subscription renews {_when(days)} on {due} for {amount}"


@dataclass(frozen=True)
class AlertCandidate:
    type: AlertType
    message: str
    pattern_id: Optional[int] = None
    transaction_id: Optional[int] = None
    occurrence_date: Optional[date] = None
    amount_cents: Optional[int] = None


@dataclass
class AlertRunResult:
    generated: int = 0
    saved: int = 0
    alerts: list[AlertCandidate] = field(default_factory=list)


class AlertEngine:
    """Finds alert-worthy conditions for one owner and stores new ones.

    The existence check and the insert are separate statements, so two
    runs racing for the same owner can both insert. A later run sees both
    rows and inserts nothing further.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or get_settings()

    def renewal_candidates(
        self, today: date, lookahead_days: Optional[int] = None
    ) -> list[AlertCandidate]:
        if lookahead_days is None:
            lookahead_days = self.settings.renewal_lookahead_days
        horizon = today + timedelta(days=lookahead_days)
        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.kind.in_(RENEWAL_KINDS),
                RecurringPattern.status == PatternStatus.active,
                RecurringPattern.is_paid.is_(False),
                RecurringPattern.next_occurrence >= today,
                RecurringPattern.next_occurrence <= horizon,
            )
            .order_by(RecurringPattern.next_occurrence, RecurringPattern.id)
        )
        return [
            AlertCandidate(
                type=AlertType.renewal,
                message=renewal_message(pattern, today),
                pattern_id=pattern.id,
                occurrence_date=pattern.next_occurrence,
                amount_cents=pattern.amount_cents,
            )
            for pattern in self.session.scalars(stmt)
        ]

    def _expense_records(self, since: date) -> list[TransactionRecord]:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
            Transaction.amount_cents < 0,
            Transaction.occurred_at >= datetime.combine(since, time.min),
        )
        return build_records(self.session.scalars(stmt))

    def unusual_spend_candidates(self, today: date) -> list[AlertCandidate]:
        settings = self.settings
        recent_start = today - timedelta(days=settings.unusual_spend_recent_days)
        window = timedelta(days=settings.unusual_spend_baseline_days)
        records = self._expense_records(recent_start - window)
        multiplier = Decimal(str(settings.unusual_spend_multiplier))

        by_merchant: dict[str, list[TransactionRecord]] = {}
        by_category: dict[str, list[TransactionRecord]] = {}
        for record in records:
            by_merchant.setdefault(record.label.casefold(), []).append(record)
            if record.category:
                by_category.setdefault(record.category.casefold(), []).append(record)

        def trailing(
            pool: list[TransactionRecord], record: TransactionRecord
        ) -> list[TransactionRecord]:
            start = record.occurred_at - window
            return [
                other
                for other in pool
                if start <= other.occurred_at < record.occurred_at
                and other.id != record.id
            ]

        candidates: list[AlertCandidate] = []
        for record in records:
            if record.id is None or not recent_start <= record.booked_on <= today:
                continue
            scope = record.label or "Unknown"
            history = trailing(by_merchant[record.label.casefold()], record)
            if len(history) < settings.unusual_spend_min_samples and record.category:
                scope = record.category
                history = trailing(by_category[record.category.casefold()], record)
            if len(history) < settings.unusual_spend_min_samples:
                continue
            baseline = mean_magnitude(history)
            if Decimal(abs(record.amount_cents)) <= baseline * multiplier:
                continue
            baseline_cents = int(baseline.to_integral_value())
            candidates.append(
                AlertCandidate(
                    type=AlertType.unusual_spend,
                    message=(
                        f"Unusual spending on {scope}: "
                        f"{format_amount(record.amount_cents, record.currency_code)} "
                        f"on {record.booked_on.isoformat()} vs. typical "
                        f"{format_amount(baseline_cents, record.currency_code)}"
                    ),
                    transaction_id=record.id,
                    occurrence_date=record.booked_on,
                    amount_cents=record.amount_cents,
                )
            )
        return candidates

    def _already_alerted(self, candidate: AlertCandidate) -> bool:
        stmt = select(Alert.id).where(
            Alert.user_id == self.user_id, Alert.type == candidate.type
        )
        if candidate.type == AlertType.renewal:
            stmt = stmt.where(
                Alert.pattern_id == candidate.pattern_id,
                Alert.occurrence_date == candidate.occurrence_date,
            )
        else:
            stmt = stmt.where(Alert.transaction_id == candidate.transaction_id)
        return self.session.execute(stmt.limit(1)).scalar_one_or_none() is not None

    def run(self, today: Optional[date] = None) -> AlertRunResult:
        today = today or local_today()
        candidates = self.renewal_candidates(today) + self.unusual_spend_candidates(today)
        result = AlertRunResult(generated=len(candidates), alerts=candidates)
        for candidate in candidates:
            if self._already_alerted(candidate):
                continue
            self.session.add(
                Alert(
                    user_id=self.user_id,
                    type=candidate.type,
                    message=candidate.message,
                    is_read=False,
                    pattern_id=candidate.pattern_id,
                    transaction_id=candidate.transaction_id,
                    occurrence_date=candidate.occurrence_date,
                    amount_cents=candidate.amount_cents,
                )
            )
            self.session.flush()
            result.saved += 1
        logger.info(
            f"alerts_run: user_id={self.user_id} generated={result.generated} "
            f"saved={result.saved}"
        )
        return result
