"""Recurring pattern detection over a snapshot of one owner's transactions.

Pipeline per detection kind:

    records -> group_transactions -> PatternClassifier -> project_pattern

Everything here is pure: no session, no writes. Persisting the result is
the job of ``services.PatternReconciler``.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Callable, Iterable, Optional, Sequence

from models import Frequency, PatternKind, TransactionType
from recurrence import next_due_date

logger = logging.getLogger(__name__)

MIN_OCCURRENCES = 2
DESCRIPTION_PREFIX_LENGTH = 30
SECONDS_PER_DAY = 86_400

AMOUNT_TOLERANCE: dict[PatternKind, Decimal] = {
    PatternKind.subscription: Decimal("0.05"),
    PatternKind.recurring: Decimal("0.10"),
    PatternKind.bill: Decimal("0.15"),
}

# Inclusive (min_days, max_days) windows for the mean interval.
FREQUENCY_WINDOWS: tuple[tuple[Frequency, float, float], ...] = (
    (Frequency.daily, 0.8, 1.5),
    (Frequency.weekly, 6.0, 8.0),
    (Frequency.monthly, 25.0, 35.0),
    (Frequency.yearly, 360.0, 370.0),
)

KIND_FREQUENCIES: dict[PatternKind, frozenset[Frequency]] = {
    PatternKind.subscription: frozenset(
        {Frequency.weekly, Frequency.monthly, Frequency.yearly}
    ),
    PatternKind.bill: frozenset({Frequency.weekly, Frequency.monthly, Frequency.yearly}),
    PatternKind.recurring: frozenset(Frequency),
}

BILL_KEYWORDS: tuple[str, ...] = (
    "bill",
    "electricity",
    "water",
    "gas",
    "internet",
    "phone",
    "rent",
    "insurance",
    "loan",
    "credit card",
    "utility",
    "maintenance",
    "tax",
    "subscription",
)

# First matching keyword wins.
BILL_CATEGORY_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("rent", "Rent"),
    ("insurance", "Insurance"),
    ("loan", "Loan Payment"),
    ("credit", "Credit Card"),
)
DEFAULT_BILL_CATEGORY = "Bills & Utilities"

FALLBACK_NAMES: dict[PatternKind, str] = {
    PatternKind.subscription: "Unknown",
    PatternKind.bill: "Unknown Bill",
    PatternKind.recurring: "Recurring Transaction",
}


def normalize_label(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def _coerce_datetime(value: object) -> Optional[datetime]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime.combine(value, time(12, 0))
    return None


def _coerce_cents(value: object) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return int(amount.to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class TransactionRecord:
    """Validated, immutable view of one ledger transaction."""

    id: Optional[int]
    occurred_at: datetime
    amount_cents: int
    currency_code: str = "EUR"
    merchant: Optional[str] = None
    raw_description: str = ""
    category: Optional[str] = None

    @classmethod
    def from_source(cls, raw: object) -> Optional[TransactionRecord]:
        """Build a record from an ORM row or a mapping.

        Returns ``None`` when the date or amount is missing or malformed so
        the caller can drop the row without aborting the batch.
        """
        if isinstance(raw, Mapping):
            get = raw.get
        else:

            def get(name: str, default: object = None) -> object:
                return getattr(raw, name, default)

        occurred_at = _coerce_datetime(get("occurred_at") or get("date"))
        amount_cents = _coerce_cents(get("amount_cents"))
        if occurred_at is None or amount_cents is None:
            return None
        merchant = normalize_label(get("merchant")) or None
        category = normalize_label(get("category")) or None
        return cls(
            id=get("id"),
            occurred_at=occurred_at,
            amount_cents=amount_cents,
            currency_code=str(get("currency_code") or "EUR").upper(),
            merchant=merchant,
            raw_description=str(get("raw_description") or ""),
            category=category,
        )

    @property
    def booked_on(self) -> date:
        return self.occurred_at.date()

    @property
    def label(self) -> str:
        if self.merchant:
            return self.merchant
        return normalize_label(self.raw_description)[:DESCRIPTION_PREFIX_LENGTH]

    @property
    def search_text(self) -> str:
        return f"{self.merchant or ''} {self.raw_description}".lower()


def build_records(rows: Iterable[object]) -> list[TransactionRecord]:
    records: list[TransactionRecord] = []
    skipped = 0
    for row in rows:
        record = TransactionRecord.from_source(row)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    if skipped:
        logger.debug(f"build_records: skipped_malformed={skipped}")
    records.sort(key=lambda r: (r.occurred_at, r.id or 0))
    return records


def matches_bill_keyword(record: TransactionRecord) -> bool:
    text = record.search_text
    return any(keyword in text for keyword in BILL_KEYWORDS)


def bill_category(label: str) -> str:
    lowered = label.lower()
    for keyword, category in BILL_CATEGORY_KEYWORDS:
        if keyword in lowered:
            return category
    return DEFAULT_BILL_CATEGORY


def amount_bucket(amount_cents: int) -> int:
    """Magnitude in whole currency units, rounded half-up to the nearest ten."""
    units = Decimal(abs(amount_cents)) / 100
    tens = (units / 10).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(tens) * 10


def identity_key(record: TransactionRecord, kind: PatternKind) -> str:
    base = record.label.casefold() or "unknown"
    if kind == PatternKind.recurring:
        return f"{base}|{amount_bucket(record.amount_cents)}"
    return base


KIND_PREDICATES: dict[PatternKind, Callable[[TransactionRecord], bool]] = {
    PatternKind.subscription: lambda r: r.amount_cents < 0,
    PatternKind.bill: lambda r: r.amount_cents < 0 and matches_bill_keyword(r),
    PatternKind.recurring: lambda r: True,
}


def group_transactions(
    records: Iterable[TransactionRecord], kind: PatternKind
) -> dict[str, list[TransactionRecord]]:
    """Partition ``records`` by identity key, keeping groups of two or more."""
    predicate = KIND_PREDICATES[kind]
    groups: dict[str, list[TransactionRecord]] = {}
    for record in records:
        if not predicate(record):
            continue
        groups.setdefault(identity_key(record, kind), []).append(record)
    result: dict[str, list[TransactionRecord]] = {}
    for key in sorted(groups):
        members = groups[key]
        if len(members) < MIN_OCCURRENCES:
            continue
        members.sort(key=lambda r: (r.occurred_at, r.id or 0))
        result[key] = members
    return result


def mean_magnitude(records: Sequence[TransactionRecord]) -> Decimal:
    total = sum(abs(r.amount_cents) for r in records)
    return Decimal(total) / Decimal(len(records))


def amount_is_stable(records: Sequence[TransactionRecord], tolerance: Decimal) -> bool:
    mean = mean_magnitude(records)
    if mean == 0:
        return False
    return all(
        abs(Decimal(abs(r.amount_cents)) - mean) / mean <= tolerance for r in records
    )


def interval_days(records: Sequence[TransactionRecord]) -> list[float]:
    return [
        (later.occurred_at - earlier.occurred_at).total_seconds() / SECONDS_PER_DAY
        for earlier, later in zip(records, records[1:])
    ]


def classify_interval(mean_interval: float) -> Optional[Frequency]:
    for frequency, low, high in FREQUENCY_WINDOWS:
        if low <= mean_interval <= high:
            return frequency
    return None


@dataclass(frozen=True)
class Classification:
    frequency: Optional[Frequency]
    mean_interval_days: float


class PatternClassifier:
    """Accepts or rejects one candidate group for a detection kind."""

    def __init__(self, kind: PatternKind) -> None:
        self.kind = kind
        self.tolerance = AMOUNT_TOLERANCE[kind]
        self.frequencies = KIND_FREQUENCIES[kind]

    def classify(self, members: Sequence[TransactionRecord]) -> Optional[Classification]:
        if len(members) < MIN_OCCURRENCES:
            return None
        if not amount_is_stable(members, self.tolerance):
            return None
        intervals = interval_days(members)
        mean_interval = sum(intervals) / len(intervals)
        frequency = classify_interval(mean_interval)
        if frequency is not None and frequency not in self.frequencies:
            frequency = None
        if frequency is None and self.kind != PatternKind.bill:
            return None
        return Classification(frequency=frequency, mean_interval_days=mean_interval)


@dataclass(frozen=True)
class DetectedPattern:
    kind: PatternKind
    identity_key: str
    name: str
    description: Optional[str]
    merchant: Optional[str]
    category: Optional[str]
    direction: TransactionType
    currency_code: str
    amount_cents: int
    frequency: Optional[Frequency]
    anchor_date: date
    last_observed_date: date
    next_occurrence: date
    occurrence_count: int
    mean_interval_days: float

    @property
    def is_recurring(self) -> bool:
        return self.frequency is not None

    @property
    def magnitude_cents(self) -> int:
        return abs(self.amount_cents)


def project_pattern(
    kind: PatternKind,
    key: str,
    members: Sequence[TransactionRecord],
    classification: Classification,
) -> DetectedPattern:
    first = members[0]
    last = members[-1]
    if kind == PatternKind.recurring and first.amount_cents >= 0:
        direction = TransactionType.income
    else:
        direction = TransactionType.expense
    magnitude = int(mean_magnitude(members).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    signed = magnitude if direction == TransactionType.income else -magnitude

    name = first.label or FALLBACK_NAMES[kind]
    category = next((m.category for m in members if m.category), None)
    if kind == PatternKind.bill:
        category = first.category or bill_category(name)

    return DetectedPattern(
        kind=kind,
        identity_key=key,
        name=name,
        description=normalize_label(first.raw_description) or first.merchant,
        merchant=first.merchant,
        category=category,
        direction=direction,
        currency_code=last.currency_code,
        amount_cents=signed,
        frequency=classification.frequency,
        anchor_date=first.booked_on,
        last_observed_date=last.booked_on,
        next_occurrence=next_due_date(last.booked_on, classification.frequency),
        occurrence_count=len(members),
        mean_interval_days=classification.mean_interval_days,
    )


@dataclass
class DetectionRun:
    kind: PatternKind
    considered: int
    candidates: int
    patterns: list[DetectedPattern]


class PatternDetector:
    def __init__(self, kind: PatternKind) -> None:
        self.kind = kind
        self.classifier = PatternClassifier(kind)

    def eligible(self, records: Iterable[TransactionRecord]) -> list[TransactionRecord]:
        predicate = KIND_PREDICATES[self.kind]
        return [r for r in records if predicate(r)]

    def detect(self, records: Sequence[TransactionRecord]) -> DetectionRun:
        eligible = self.eligible(records)
        groups = group_transactions(eligible, self.kind)
        patterns: list[DetectedPattern] = []
        for key, members in groups.items():
            classification = self.classifier.classify(members)
            if classification is None:
                logger.debug(f"detect_reject: kind={self.kind.value} key={key!r}")
                continue
            patterns.append(project_pattern(self.kind, key, members, classification))
        logger.info(
            f"detect: kind={self.kind.value} considered={len(eligible)} "
            f"candidates={len(groups)} classified={len(patterns)}"
        )
        return DetectionRun(
            kind=self.kind,
            considered=len(eligible),
            candidates=len(groups),
            patterns=patterns,
        )
