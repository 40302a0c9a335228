from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from alerts import AlertEngine, AlertRunResult
from config import get_settings
from detection import DetectedPattern, PatternDetector, TransactionRecord, build_records
from models import (
    Alert,
    PatternKind,
    PatternStatus,
    RecurringPattern,
    Transaction,
    TransactionType,
)
from recurrence import (
    ProjectedOccurrence,
    advance,
    local_today,
    project_occurrences,
    summarize_projection,
)
from schemas import TransactionIn

logger = logging.getLogger(__name__)

NO_INPUT_MESSAGES: dict[PatternKind, str] = {
    PatternKind.subscription: (
        "No expense transactions found. Import some transactions first."
    ),
    PatternKind.bill: "No bill payments found. Import some transactions first.",
    PatternKind.recurring: "No transactions found. Import some transactions first.",
}

RECURRING_AMOUNT_TOLERANCE = 0.10
BILL_DUE_DATE_TOLERANCE = timedelta(days=7)


def get_current_user_id() -> int:
    return 1


class PatternNotFound(ValueError):
    pass


class BillAlreadyPaid(ValueError):
    pass


class AlertNotFound(ValueError):
    pass


class TransactionService:
    """Thin write/read access to the ledger used by the detection engine."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _build(self, data: TransactionIn) -> Transaction:
        occurred_at = data.occurred_at or datetime.combine(data.date, time(12, 0))
        return Transaction(
            user_id=self.user_id,
            date=data.date,
            occurred_at=occurred_at,
            amount_cents=data.amount_cents,
            currency_code=data.currency_code.upper(),
            merchant=(data.merchant or "").strip() or None,
            raw_description=data.raw_description.strip(),
            category=(data.category or "").strip() or None,
        )

    def create(self, data: TransactionIn) -> Transaction:
        txn = self._build(data)
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def create_many(self, rows: list[TransactionIn]) -> list[Transaction]:
        txns = [self._build(row) for row in rows]
        self.session.add_all(txns)
        self.session.commit()
        logger.info(f"transactions_import: user_id={self.user_id} count={len(txns)}")
        return txns

    def list(self, limit: int = 50, offset: int = 0) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return self.session.scalars(stmt).all()

    def snapshot(self) -> list[TransactionRecord]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
            )
            .order_by(Transaction.occurred_at, Transaction.id)
        )
        return build_records(self.session.scalars(stmt))


def _assign(row: RecurringPattern, values: dict[str, object]) -> bool:
    changed = False
    for name, value in values.items():
        if getattr(row, name) != value:
            setattr(row, name, value)
            changed = True
    return changed


def _observation_values(detected: DetectedPattern) -> dict[str, object]:
    return {
        "amount_cents": detected.amount_cents,
        "currency_code": detected.currency_code,
        "last_observed_date": detected.last_observed_date,
        "next_occurrence": detected.next_occurrence,
        "occurrence_count": detected.occurrence_count,
    }


class PatternReconciler:
    """Idempotent upsert of detected patterns into the pattern store.

    Each write is a read followed by an insert or update with no lock in
    between. Two concurrent runs for one owner may both insert; the next
    run resolves the duplicate instead of this class trying to prevent it.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def reconcile(self, detected: DetectedPattern) -> Optional[RecurringPattern]:
        """Return the row written for ``detected``, or ``None`` if nothing changed."""
        if detected.kind == PatternKind.subscription:
            return self._upsert_subscription(detected)
        if detected.kind == PatternKind.bill:
            return self._insert_bill(detected)
        return self._upsert_recurring(detected)

    def _new_row(self, detected: DetectedPattern, **extra: object) -> RecurringPattern:
        row = RecurringPattern(
            user_id=self.user_id,
            kind=detected.kind,
            identity_key=detected.identity_key,
            name=detected.name,
            description=detected.description,
            merchant=detected.merchant,
            category=detected.category,
            direction=detected.direction,
            currency_code=detected.currency_code,
            amount_cents=detected.amount_cents,
            frequency=detected.frequency,
            is_recurring=detected.is_recurring,
            anchor_date=detected.anchor_date,
            last_observed_date=detected.last_observed_date,
            next_occurrence=detected.next_occurrence,
            occurrence_count=detected.occurrence_count,
            status=PatternStatus.active,
            **extra,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def _keep_oldest_active(
        self, rows: list[RecurringPattern], detected: DetectedPattern
    ) -> tuple[RecurringPattern, bool]:
        """Cancel all but the oldest active row of a duplicate set."""
        active = [row for row in rows if row.status == PatternStatus.active]
        keeper = active[0] if active else rows[0]
        for duplicate in active[1:]:
            logger.warning(
                f"pattern_duplicate: user_id={self.user_id} kind={detected.kind.value} "
                f"key={detected.identity_key!r} keep={keeper.id} cancel={duplicate.id}"
            )
            duplicate.status = PatternStatus.cancelled
        return keeper, len(active) > 1

    def _upsert_subscription(self, detected: DetectedPattern) -> Optional[RecurringPattern]:
        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.kind == PatternKind.subscription,
                RecurringPattern.identity_key == detected.identity_key,
            )
            .order_by(RecurringPattern.id)
        )
        rows = self.session.scalars(stmt).all()
        if not rows:
            return self._new_row(detected)

        keeper, changed = self._keep_oldest_active(rows, detected)
        values = _observation_values(detected)
        values.update(
            name=detected.name,
            merchant=detected.merchant,
            category=detected.category,
            frequency=detected.frequency,
            is_recurring=detected.is_recurring,
            anchor_date=detected.anchor_date,
        )
        changed = _assign(keeper, values) or changed
        return keeper if changed else None

    def _upsert_recurring(self, detected: DetectedPattern) -> Optional[RecurringPattern]:
        magnitude = detected.magnitude_cents
        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.kind == PatternKind.recurring,
                RecurringPattern.name == detected.name,
                RecurringPattern.frequency == detected.frequency,
                func.abs(RecurringPattern.amount_cents)
                >= magnitude * (1 - RECURRING_AMOUNT_TOLERANCE),
                func.abs(RecurringPattern.amount_cents)
                <= magnitude * (1 + RECURRING_AMOUNT_TOLERANCE),
            )
            .order_by(RecurringPattern.id)
        )
        rows = self.session.scalars(stmt).all()
        if not rows:
            return self._new_row(detected)

        keeper, changed = self._keep_oldest_active(rows, detected)
        if detected.last_observed_date > keeper.last_observed_date:
            changed = _assign(keeper, _observation_values(detected)) or changed
        return keeper if changed else None

    def _insert_bill(self, detected: DetectedPattern) -> Optional[RecurringPattern]:
        due = detected.next_occurrence
        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.kind == PatternKind.bill,
                RecurringPattern.name == detected.name,
                RecurringPattern.is_paid.is_(False),
                RecurringPattern.next_occurrence >= due - BILL_DUE_DATE_TOLERANCE,
                RecurringPattern.next_occurrence <= due + BILL_DUE_DATE_TOLERANCE,
            )
            .order_by(RecurringPattern.id)
        )
        rows = self.session.scalars(stmt).all()
        if rows:
            keeper, changed = self._keep_oldest_active(rows, detected)
            return keeper if changed else None
        return self._new_row(
            detected,
            is_paid=False,
            notes=f"Auto-detected from {detected.occurrence_count} transaction(s)",
        )


@dataclass
class DetectionResult:
    kind: PatternKind
    detected_count: int = 0
    saved_count: int = 0
    patterns: list[DetectedPattern] = field(default_factory=list)
    message: Optional[str] = None


class DetectionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def detect(self, kind: PatternKind) -> DetectionResult:
        records = TransactionService(self.session, self.user_id).snapshot()
        detector = PatternDetector(kind)
        if not detector.eligible(records):
            return DetectionResult(kind=kind, message=NO_INPUT_MESSAGES[kind])

        run = detector.detect(records)
        reconciler = PatternReconciler(self.session, self.user_id)
        saved = 0
        for detected in run.patterns:
            if reconciler.reconcile(detected) is not None:
                saved += 1
        self.session.commit()
        logger.info(
            f"detect_saved: user_id={self.user_id} kind={kind.value} "
            f"detected={len(run.patterns)} saved={saved}"
        )
        return DetectionResult(
            kind=kind,
            detected_count=len(run.patterns),
            saved_count=saved,
            patterns=run.patterns,
        )


class PatternService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, pattern_id: int) -> RecurringPattern:
        pattern = self.session.get(RecurringPattern, pattern_id)
        if not pattern or pattern.user_id != self.user_id:
            raise PatternNotFound("Pattern not found")
        return pattern

    def list(
        self,
        kind: Optional[PatternKind] = None,
        status: Optional[PatternStatus] = None,
    ) -> list[RecurringPattern]:
        stmt = select(RecurringPattern).where(RecurringPattern.user_id == self.user_id)
        if kind is not None:
            stmt = stmt.where(RecurringPattern.kind == kind)
        if status is not None:
            stmt = stmt.where(RecurringPattern.status == status)
        stmt = stmt.order_by(RecurringPattern.next_occurrence, RecurringPattern.id)
        return self.session.scalars(stmt).all()

    def set_status(self, pattern_id: int, status: PatternStatus) -> RecurringPattern:
        pattern = self.get(pattern_id)
        pattern.status = status
        self.session.commit()
        self.session.refresh(pattern)
        return pattern

    def upcoming(
        self,
        days: Optional[int] = None,
        limit: int = 5,
        today: Optional[date] = None,
    ) -> list[RecurringPattern]:
        today = today or local_today()
        if days is None:
            days = get_settings().upcoming_window_days
        stmt = (
            select(RecurringPattern)
            .where(
                RecurringPattern.user_id == self.user_id,
                RecurringPattern.kind == PatternKind.subscription,
                RecurringPattern.status == PatternStatus.active,
                RecurringPattern.next_occurrence >= today,
                RecurringPattern.next_occurrence <= today + timedelta(days=days),
            )
            .order_by(RecurringPattern.next_occurrence, RecurringPattern.id)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def project(
        self, days: Optional[int] = None, today: Optional[date] = None
    ) -> tuple[list[ProjectedOccurrence], dict[str, int]]:
        today = today or local_today()
        if days is None:
            days = get_settings().upcoming_window_days
        stmt = select(RecurringPattern).where(
            RecurringPattern.user_id == self.user_id,
            RecurringPattern.kind.in_((PatternKind.recurring, PatternKind.subscription)),
            RecurringPattern.status == PatternStatus.active,
        )
        patterns = self.session.scalars(stmt).all()
        occurrences = project_occurrences(
            patterns, today + timedelta(days=days), start=today
        )
        return occurrences, summarize_projection(occurrences)


@dataclass
class BillPayment:
    bill: RecurringPattern
    next_bill: Optional[RecurringPattern] = None
    transaction: Optional[Transaction] = None


class BillService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def pay(
        self,
        bill_id: int,
        *,
        create_transaction: bool = False,
        today: Optional[date] = None,
    ) -> BillPayment:
        bill = self.session.get(RecurringPattern, bill_id)
        if not bill or bill.user_id != self.user_id or bill.kind != PatternKind.bill:
            raise PatternNotFound("Bill not found")
        if bill.is_paid:
            raise BillAlreadyPaid("Bill is already paid")

        today = today or local_today()
        bill.is_paid = True
        bill.paid_date = today
        payment = BillPayment(bill=bill)

        if create_transaction:
            payment.transaction = Transaction(
                user_id=self.user_id,
                date=today,
                occurred_at=datetime.combine(today, time(12, 0)),
                amount_cents=-abs(bill.amount_cents),
                currency_code=bill.currency_code,
                merchant=bill.name,
                raw_description=f"Bill payment: {bill.name}",
                category=bill.category or "Bills & Utilities",
            )
            self.session.add(payment.transaction)

        if bill.is_recurring and bill.frequency is not None:
            payment.next_bill = RecurringPattern(
                user_id=self.user_id,
                kind=PatternKind.bill,
                identity_key=bill.identity_key,
                name=bill.name,
                description=bill.description,
                merchant=bill.merchant,
                category=bill.category,
                direction=TransactionType.expense,
                currency_code=bill.currency_code,
                amount_cents=bill.amount_cents,
                frequency=bill.frequency,
                is_recurring=True,
                anchor_date=bill.anchor_date,
                last_observed_date=bill.next_occurrence,
                next_occurrence=advance(bill.next_occurrence, bill.frequency),
                occurrence_count=bill.occurrence_count,
                status=bill.status,
                is_paid=False,
                notes=bill.notes,
            )
            self.session.add(payment.next_bill)

        self.session.commit()
        logger.info(
            f"bill_paid: user_id={self.user_id} bill_id={bill.id} "
            f"next_bill_id={payment.next_bill.id if payment.next_bill else None}"
        )
        return payment


class AlertService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def generate(self, today: Optional[date] = None) -> AlertRunResult:
        result = AlertEngine(self.session, self.user_id).run(today)
        self.session.commit()
        return result

    def list(self, limit: Optional[int] = None) -> list[Alert]:
        limit = limit or get_settings().alert_list_limit
        stmt = (
            select(Alert)
            .where(Alert.user_id == self.user_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def unread_count(self) -> int:
        stmt = select(func.count(Alert.id)).where(
            Alert.user_id == self.user_id, Alert.is_read.is_(False)
        )
        return int(self.session.scalar(stmt) or 0)

    def set_read(self, alert_id: int, is_read: bool = True) -> Alert:
        alert = self.session.get(Alert, alert_id)
        if not alert or alert.user_id != self.user_id:
            raise AlertNotFound("Alert not found")
        alert.is_read = is_read
        self.session.commit()
        self.session.refresh(alert)
        return alert
