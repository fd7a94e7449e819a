from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, InvalidRequestError, NotFoundError
from models import (
    Account,
    AccountType,
    BillOccurrence,
    BillTemplate,
    BillType,
    Household,
    OccurrenceStatus,
    RecurrenceType,
)
from schemas import AllocationIn, PayOccurrenceIn
from services import AllocationService, PaymentService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _seed(session):
    household = Household(name="Home")
    session.add(household)
    session.flush()
    checking = Account(
        household_id=household.id,
        user_id=1,
        name="Checking",
        type=AccountType.checking,
        balance_cents=100_000,
    )
    template = BillTemplate(
        household_id=household.id,
        created_by_user_id=1,
        name="Rent",
        bill_type=BillType.expense,
        recurrence_type=RecurrenceType.monthly,
        recurrence_due_day=1,
        default_amount_cents=120_000,
    )
    session.add_all([checking, template])
    session.flush()
    occurrence = BillOccurrence(
        template_id=template.id,
        household_id=household.id,
        due_date=date(2026, 4, 1),
        status=OccurrenceStatus.unpaid,
        amount_due_cents=120_000,
        amount_paid_cents=0,
        amount_remaining_cents=120_000,
    )
    session.add(occurrence)
    session.commit()
    return household, checking, occurrence


def _split(*amounts):
    return [
        AllocationIn(period_number=period, allocated_amount_cents=amount)
        for period, amount in enumerate(amounts, start=1)
    ]


def test_replace_allocations_sets_new_split() -> None:
    session = make_session()
    household, _, occurrence = _seed(session)
    service = AllocationService(session, household.id)

    service.replace(occurrence.id, _split(60_000, 60_000))
    allocations = service.replace(occurrence.id, _split(40_000, 40_000, 40_000))

    assert [a.period_number for a in allocations] == [1, 2, 3]
    assert [a.allocated_amount_cents for a in service.list(occurrence.id)] == [
        40_000,
        40_000,
        40_000,
    ]


@pytest.mark.parametrize(
    "allocations",
    [
        [],
        _split(60_000, 50_000),
        [
            AllocationIn(period_number=1, allocated_amount_cents=60_000),
            AllocationIn(period_number=1, allocated_amount_cents=60_000),
        ],
        [AllocationIn(period_number=0, allocated_amount_cents=120_000)],
        _split(130_000, -10_000),
    ],
)
def test_replace_allocations_validates_split(allocations) -> None:
    session = make_session()
    household, _, occurrence = _seed(session)
    with pytest.raises(InvalidRequestError):
        AllocationService(session, household.id).replace(occurrence.id, allocations)


def test_allocations_lock_after_payment() -> None:
    session = make_session()
    household, checking, occurrence = _seed(session)
    service = AllocationService(session, household.id)
    service.replace(occurrence.id, _split(60_000, 60_000))

    PaymentService(session, household.id).pay_occurrence(
        occurrence.id,
        PayOccurrenceIn(account_id=checking.id, amount_cents=60_000),
        today=date(2026, 3, 20),
    )
    paid, unpaid = service.list(occurrence.id)
    assert paid.is_paid is True

    with pytest.raises(ConflictError):
        service.replace(occurrence.id, _split(120_000))
    with pytest.raises(ConflictError):
        service.delete(occurrence.id, paid.id)
    with pytest.raises(ConflictError):
        service.clear(occurrence.id)

    service.delete(occurrence.id, unpaid.id)
    assert [a.id for a in service.list(occurrence.id)] == [paid.id]


def test_delete_unknown_allocation() -> None:
    session = make_session()
    household, _, occurrence = _seed(session)
    with pytest.raises(NotFoundError):
        AllocationService(session, household.id).delete(occurrence.id, 999)


def test_clear_removes_unpaid_allocations() -> None:
    session = make_session()
    household, _, occurrence = _seed(session)
    service = AllocationService(session, household.id)
    service.replace(occurrence.id, _split(100_000, 20_000))

    service.clear(occurrence.id)
    assert service.list(occurrence.id) == []
