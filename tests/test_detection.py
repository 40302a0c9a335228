import random
from datetime import date, datetime, timedelta

from detection import (
    PatternClassifier,
    PatternDetector,
    TransactionRecord,
    amount_bucket,
    bill_category,
    build_records,
    classify_interval,
    group_transactions,
    identity_key,
)
from models import Frequency, PatternKind, TransactionType


def _txn(
    txn_id: int,
    day: date,
    amount_cents: int,
    merchant: str | None = None,
    description: str = "",
    category: str | None = None,
) -> TransactionRecord:
    return TransactionRecord(
        id=txn_id,
        occurred_at=datetime.combine(day, datetime.min.time()).replace(hour=12),
        amount_cents=amount_cents,
        merchant=merchant,
        raw_description=description,
        category=category,
    )


def _series(
    merchant: str,
    start: date,
    step_days: int,
    amounts: list[int],
    first_id: int = 1,
) -> list[TransactionRecord]:
    return [
        _txn(first_id + i, start + timedelta(days=step_days * i), amount, merchant)
        for i, amount in enumerate(amounts)
    ]


def test_two_observations_thirty_days_apart_are_monthly():
    records = [
        _txn(1, date(2024, 1, 15), -999, "Netflix"),
        _txn(2, date(2024, 2, 14), -999, "Netflix"),
    ]
    run = PatternDetector(PatternKind.subscription).detect(records)

    assert len(run.patterns) == 1
    pattern = run.patterns[0]
    assert pattern.frequency == Frequency.monthly
    assert pattern.anchor_date == date(2024, 1, 15)
    assert pattern.last_observed_date == date(2024, 2, 14)
    assert pattern.next_occurrence == date(2024, 3, 14)
    assert pattern.amount_cents == -999
    assert pattern.occurrence_count == 2


def test_unstable_amounts_are_rejected():
    records = [
        _txn(1, date(2024, 1, 1), -10000, "Gym"),
        _txn(2, date(2024, 1, 31), -130000, "Gym"),
    ]
    for kind in (PatternKind.subscription, PatternKind.recurring):
        assert PatternDetector(kind).detect(records).patterns == []


def test_amount_tolerance_differs_per_kind():
    records = _series("Power Utility", date(2024, 1, 1), 30, [-10000, -11200])
    # 11200 sits 5.7% above the 10600 mean.
    assert PatternClassifier(PatternKind.subscription).classify(records) is None
    assert PatternClassifier(PatternKind.recurring).classify(records) is not None
    assert PatternClassifier(PatternKind.bill).classify(records) is not None


def test_amount_within_subscription_tolerance_is_accepted():
    records = _series("Spotify", date(2024, 1, 1), 30, [-1000, -1100])
    classification = PatternClassifier(PatternKind.subscription).classify(records)
    assert classification is not None
    assert classification.frequency == Frequency.monthly


def test_frequency_windows():
    assert classify_interval(1.0) == Frequency.daily
    assert classify_interval(0.8) == Frequency.daily
    assert classify_interval(7.0) == Frequency.weekly
    assert classify_interval(30.4) == Frequency.monthly
    assert classify_interval(365.0) == Frequency.yearly
    assert classify_interval(14.0) is None
    assert classify_interval(0.0) is None
    assert classify_interval(100.0) is None


def test_gap_interval_drops_subscription_but_bill_falls_back():
    records = _series("Water Bill", date(2024, 1, 1), 14, [-4000, -4000, -4000])

    assert PatternDetector(PatternKind.subscription).detect(records).patterns == []

    bills = PatternDetector(PatternKind.bill).detect(records).patterns
    assert len(bills) == 1
    assert bills[0].frequency is None
    assert bills[0].is_recurring is False
    assert bills[0].next_occurrence == date(2024, 1, 29) + timedelta(days=30)


def test_identical_dates_are_rejected():
    records = [
        _txn(1, date(2024, 1, 1), -500, "Coffee Bar"),
        _txn(2, date(2024, 1, 1), -500, "Coffee Bar"),
    ]
    assert PatternDetector(PatternKind.recurring).detect(records).patterns == []


def test_daily_recurring_detected_but_not_as_subscription():
    records = _series("Bakery", date(2024, 1, 1), 1, [-350, -350, -350, -350])

    recurring = PatternDetector(PatternKind.recurring).detect(records).patterns
    assert [p.frequency for p in recurring] == [Frequency.daily]
    assert recurring[0].next_occurrence == date(2024, 1, 5)

    assert PatternDetector(PatternKind.subscription).detect(records).patterns == []


def test_yearly_subscription():
    records = [
        _txn(1, date(2023, 3, 1), -4900, "Domain Registrar"),
        _txn(2, date(2024, 2, 29), -4900, "Domain Registrar"),
    ]
    patterns = PatternDetector(PatternKind.subscription).detect(records).patterns
    assert patterns[0].frequency == Frequency.yearly
    assert patterns[0].next_occurrence == date(2025, 2, 28)


def test_subscription_ignores_inflows():
    records = _series("Employer", date(2024, 1, 1), 30, [250000, 250000, 250000])
    detector = PatternDetector(PatternKind.subscription)
    assert detector.eligible(records) == []
    assert detector.detect(records).patterns == []


def test_recurring_income_direction_and_sign():
    records = _series("Employer", date(2024, 1, 1), 30, [250000, 250000, 250000])
    patterns = PatternDetector(PatternKind.recurring).detect(records).patterns
    assert len(patterns) == 1
    assert patterns[0].direction == TransactionType.income
    assert patterns[0].amount_cents == 250000


def test_grouping_drops_single_observations():
    records = [
        _txn(1, date(2024, 1, 1), -999, "Netflix"),
        _txn(2, date(2024, 2, 1), -999, "netflix"),
        _txn(3, date(2024, 1, 5), -1500, "Cinema"),
    ]
    groups = group_transactions(records, PatternKind.subscription)
    assert list(groups) == ["netflix"]
    assert [r.id for r in groups["netflix"]] == [1, 2]


def test_identity_key_falls_back_to_description_prefix():
    record = _txn(
        1,
        date(2024, 1, 1),
        -2599,
        description="CARD PAYMENT   TO STREAMING SERVICE LTD REF 99812",
    )
    assert record.label == "CARD PAYMENT TO STREAMING SERV"
    assert identity_key(record, PatternKind.subscription) == "card payment to streaming serv"


def test_recurring_key_includes_amount_bucket():
    small = _txn(1, date(2024, 1, 1), -1200, "Shop")
    large = _txn(2, date(2024, 1, 1), -9000, "Shop")
    assert identity_key(small, PatternKind.recurring) == "shop|10"
    assert identity_key(large, PatternKind.recurring) == "shop|90"
    groups = group_transactions(
        _series("Shop", date(2024, 1, 1), 7, [-1200, -1300])
        + _series("Shop", date(2024, 1, 2), 7, [-9000, -9000], first_id=10),
        PatternKind.recurring,
    )
    assert sorted(groups) == ["shop|10", "shop|90"]


def test_amount_bucket_rounds_half_up():
    assert amount_bucket(-1234) == 10
    assert amount_bucket(1500) == 20
    assert amount_bucket(-4999) == 50
    assert amount_bucket(0) == 0


def test_bill_keyword_filter_and_category_lookup():
    records = _series("City Rent Office", date(2024, 1, 1), 30, [-90000, -90000])
    records += _series("Bookstore", date(2024, 1, 3), 30, [-2000, -2000], first_id=10)
    bills = PatternDetector(PatternKind.bill).detect(records).patterns
    assert [b.name for b in bills] == ["City Rent Office"]
    assert bills[0].category == "Rent"

    assert bill_category("Car Loan") == "Loan Payment"
    assert bill_category("Home Insurance AG") == "Insurance"
    assert bill_category("Credit Card Payment") == "Credit Card"
    assert bill_category("Electricity") == "Bills & Utilities"


def test_bill_keeps_transaction_category_when_present():
    records = [
        _txn(1, date(2024, 1, 1), -5000, "Phone Co", category="Telecom"),
        _txn(2, date(2024, 1, 31), -5000, "Phone Co", category="Telecom"),
    ]
    bills = PatternDetector(PatternKind.bill).detect(records).patterns
    assert bills[0].category == "Telecom"


def test_bill_keyword_match_uses_description_too():
    records = [
        _txn(1, date(2024, 1, 1), -5000, "ACME", description="Monthly electricity"),
        _txn(2, date(2024, 1, 31), -5000, "ACME", description="Monthly electricity"),
    ]
    bills = PatternDetector(PatternKind.bill).detect(records).patterns
    assert [b.name for b in bills] == ["ACME"]


def test_representative_amount_is_rounded_mean_magnitude():
    records = _series("Utility Co", date(2024, 1, 1), 30, [-1000, -1001])
    patterns = PatternDetector(PatternKind.recurring).detect(records).patterns
    assert patterns[0].amount_cents == -1001


def test_malformed_rows_are_excluded_without_aborting():
    rows = [
        {"id": 1, "date": "2024-01-01", "amount_cents": -999, "merchant": "Netflix"},
        {"id": 2, "date": None, "amount_cents": -999, "merchant": "Netflix"},
        {"id": 3, "date": "not-a-date", "amount_cents": -999, "merchant": "Netflix"},
        {"id": 4, "date": "2024-01-31", "amount_cents": "abc", "merchant": "Netflix"},
        {"id": 5, "date": "2024-01-31", "amount_cents": "-999", "merchant": "Netflix"},
    ]
    records = build_records(rows)
    assert [r.id for r in records] == [1, 5]
    patterns = PatternDetector(PatternKind.subscription).detect(records).patterns
    assert len(patterns) == 1


def test_detection_is_independent_of_input_order():
    records = (
        _series("Netflix", date(2024, 1, 3), 30, [-999] * 4)
        + _series("Gym", date(2024, 1, 5), 7, [-2500] * 6, first_id=20)
        + _series("Cloud", date(2023, 1, 9), 365, [-9900] * 2, first_id=40)
    )
    expected = PatternDetector(PatternKind.subscription).detect(
        build_records(records)
    ).patterns

    shuffled = list(records)
    random.Random(7).shuffle(shuffled)
    again = PatternDetector(PatternKind.subscription).detect(
        build_records(shuffled)
    ).patterns

    assert again == expected
    assert [p.name for p in expected] == ["Cloud", "Gym", "Netflix"]
