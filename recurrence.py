from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency, RecurringPattern, TransactionType

# Due date given to bills whose payments fit no frequency window.
NON_RECURRING_FOLLOW_UP_DAYS = 30


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    """Shift ``base`` by whole calendar months, snapping to the month end.

    Jan 31 + 1 month is Feb 29 in a leap year and Feb 28 otherwise; the
    day of month is never carried into the following month.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def advance(from_date: date, frequency: Frequency) -> date:
    """Return ``from_date`` moved forward by one canonical period."""
    if frequency == Frequency.daily:
        return from_date + timedelta(days=1)
    if frequency == Frequency.weekly:
        return from_date + timedelta(weeks=1)
    if frequency == Frequency.monthly:
        return add_months(from_date, 1)
    if frequency == Frequency.yearly:
        return add_months(from_date, 12)
    raise ValueError(f"Unsupported frequency: {frequency}")


def next_due_date(last_observed: date, frequency: Optional[Frequency]) -> date:
    if frequency is None:
        return last_observed + timedelta(days=NON_RECURRING_FOLLOW_UP_DAYS)
    return advance(last_observed, frequency)


@dataclass(frozen=True)
class ProjectedOccurrence:
    date: date
    pattern_id: int
    name: str
    amount_cents: int
    direction: TransactionType
    category: Optional[str]
    merchant: Optional[str]


def project_occurrences(
    patterns: Iterable[RecurringPattern],
    until: date,
    *,
    start: Optional[date] = None,
) -> list[ProjectedOccurrence]:
    occurrences: list[ProjectedOccurrence] = []
    for pattern in patterns:
        if pattern.frequency is None:
            continue
        current = pattern.next_occurrence
        iterations = 0
        max_iterations = 400  # a year of daily occurrences
        while current <= until and iterations < max_iterations:
            if start is None or current >= start:
                occurrences.append(
                    ProjectedOccurrence(
                        date=current,
                        pattern_id=pattern.id,
                        name=pattern.name,
                        amount_cents=pattern.amount_cents,
                        direction=pattern.direction,
                        category=pattern.category,
                        merchant=pattern.merchant,
                    )
                )
            current = advance(current, pattern.frequency)
            iterations += 1
    occurrences.sort(key=lambda occ: (occ.date, occ.pattern_id))
    return occurrences


def summarize_projection(occurrences: list[ProjectedOccurrence]) -> dict[str, int]:
    total_income = 0
    total_expense = 0
    for occ in occurrences:
        if occ.direction == TransactionType.income:
            total_income += abs(occ.amount_cents)
        else:
            total_expense += abs(occ.amount_cents)
    return {
        "total_income_cents": total_income,
        "total_expense_cents": total_expense,
        "net_cents": total_income - total_expense,
        "count": len(occurrences),
    }
