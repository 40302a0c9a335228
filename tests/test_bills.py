from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Frequency, PatternKind, RecurringPattern, Transaction, TransactionType
from services import BillAlreadyPaid, BillService, PatternNotFound


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_bill(session, frequency: Frequency | None = Frequency.monthly, **overrides):
    values = dict(
        user_id=1,
        kind=PatternKind.bill,
        identity_key="city power utility",
        name="City Power Utility",
        category="Bills & Utilities",
        direction=TransactionType.expense,
        amount_cents=-6250,
        frequency=frequency,
        is_recurring=frequency is not None,
        anchor_date=date(2024, 1, 10),
        last_observed_date=date(2024, 2, 9),
        next_occurrence=date(2024, 3, 9),
        occurrence_count=2,
        is_paid=False,
    )
    values.update(overrides)
    bill = RecurringPattern(**values)
    session.add(bill)
    session.commit()
    return bill


def test_paying_recurring_bill_spawns_next_unpaid_bill() -> None:
    session = make_session()
    bill = make_bill(session)

    payment = BillService(session).pay(bill.id, today=date(2024, 3, 8))

    assert payment.bill.is_paid is True
    assert payment.bill.paid_date == date(2024, 3, 8)
    assert payment.transaction is None
    assert payment.next_bill is not None
    assert payment.next_bill.id != bill.id
    assert payment.next_bill.is_paid is False
    assert payment.next_bill.last_observed_date == date(2024, 3, 9)
    assert payment.next_bill.next_occurrence == date(2024, 4, 9)
    assert payment.next_bill.amount_cents == -6250
    assert session.scalars(select(Transaction)).all() == []


def test_paying_bill_twice_is_rejected() -> None:
    session = make_session()
    bill = make_bill(session)
    service = BillService(session)
    service.pay(bill.id, today=date(2024, 3, 8))

    with pytest.raises(BillAlreadyPaid):
        service.pay(bill.id, today=date(2024, 3, 8))


def test_paying_bill_can_record_transaction() -> None:
    session = make_session()
    bill = make_bill(session, amount_cents=6250)

    payment = BillService(session).pay(
        bill.id, create_transaction=True, today=date(2024, 3, 8)
    )

    txn = payment.transaction
    assert txn is not None and txn.id is not None
    assert txn.amount_cents == -6250
    assert txn.date == date(2024, 3, 8)
    assert txn.raw_description == "Bill payment: City Power Utility"
    assert txn.category == "Bills & Utilities"


def test_non_recurring_bill_has_no_successor() -> None:
    session = make_session()
    bill = make_bill(session, frequency=None)

    payment = BillService(session).pay(bill.id, today=date(2024, 3, 8))

    assert payment.bill.is_paid is True
    assert payment.next_bill is None
    assert len(session.scalars(select(RecurringPattern)).all()) == 1


def test_paying_unknown_or_non_bill_pattern_fails() -> None:
    session = make_session()
    subscription = make_bill(
        session, kind=PatternKind.subscription, identity_key="netflix", name="Netflix"
    )
    service = BillService(session)

    with pytest.raises(PatternNotFound):
        service.pay(subscription.id)
    with pytest.raises(PatternNotFound):
        service.pay(9999)
