from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import (
    BillOccurrence,
    BillOccurrenceAllocation,
    BillTemplate,
    BillType,
    Household,
    OccurrenceStatus,
    RecurrenceType,
)
from recurrence import (
    HORIZON_COUNT,
    OccurrenceEngine,
    derive_status,
    generate_occurrence_dates,
    validate_cadence,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _template(recurrence_type: RecurrenceType, **kwargs) -> BillTemplate:
    values = dict(
        id=1,
        household_id=1,
        created_by_user_id=1,
        name="Test",
        bill_type=BillType.expense,
        recurrence_type=recurrence_type,
        default_amount_cents=10_000,
        is_active=True,
    )
    values.update(kwargs)
    return BillTemplate(**values)


def _stored_template(session, **kwargs) -> BillTemplate:
    household = Household(name="Home")
    session.add(household)
    session.flush()
    values = dict(
        household_id=household.id,
        created_by_user_id=1,
        name="Rent",
        bill_type=BillType.expense,
        recurrence_type=RecurrenceType.monthly,
        recurrence_due_day=15,
        default_amount_cents=120_000,
    )
    values.update(kwargs)
    template = BillTemplate(**values)
    session.add(template)
    session.commit()
    return template


def test_monthly_dates_snap_to_month_end():
    template = _template(RecurrenceType.monthly, recurrence_due_day=31)
    dates = generate_occurrence_dates(template, date(2026, 1, 1), date(2026, 4, 30))
    assert dates == [
        date(2026, 1, 31),
        date(2026, 2, 28),
        date(2026, 3, 31),
        date(2026, 4, 30),
    ]


def test_monthly_dates_leap_february():
    template = _template(RecurrenceType.monthly, recurrence_due_day=30)
    dates = generate_occurrence_dates(template, date(2028, 2, 1), date(2028, 2, 29))
    assert dates == [date(2028, 2, 29)]


def test_quarterly_dates_follow_start_month():
    template = _template(
        RecurrenceType.quarterly, recurrence_due_day=10, recurrence_start_month=2
    )
    dates = generate_occurrence_dates(template, date(2026, 1, 1), date(2026, 12, 31))
    assert dates == [
        date(2026, 2, 10),
        date(2026, 5, 10),
        date(2026, 8, 10),
        date(2026, 11, 10),
    ]


def test_annual_dates_default_to_january_anchor():
    template = _template(RecurrenceType.annual, recurrence_due_day=5)
    dates = generate_occurrence_dates(template, date(2026, 2, 1), date(2028, 12, 31))
    assert dates == [date(2027, 1, 5), date(2028, 1, 5)]


def test_weekly_dates_land_on_weekday():
    # 0 is Monday.
    template = _template(RecurrenceType.weekly, recurrence_due_weekday=0)
    dates = generate_occurrence_dates(template, date(2026, 3, 4), date(2026, 3, 31))
    assert dates == [
        date(2026, 3, 9),
        date(2026, 3, 16),
        date(2026, 3, 23),
        date(2026, 3, 30),
    ]
    assert all(d.weekday() == 0 for d in dates)


def test_biweekly_dates_anchor_on_first_due_date():
    template = _template(
        RecurrenceType.biweekly,
        recurrence_due_weekday=0,
        recurrence_specific_due_date=date(2026, 3, 2),
    )
    dates = generate_occurrence_dates(template, date(2026, 3, 5), date(2026, 4, 30))
    assert dates == [
        date(2026, 3, 16),
        date(2026, 3, 30),
        date(2026, 4, 13),
        date(2026, 4, 27),
    ]


def test_weekly_dates_stop_at_horizon():
    template = _template(RecurrenceType.weekly, recurrence_due_weekday=4)
    dates = generate_occurrence_dates(template, date(2026, 1, 1), date(2026, 12, 31))
    assert len(dates) == HORIZON_COUNT[RecurrenceType.weekly]


def test_one_time_date_only_inside_window():
    template = _template(
        RecurrenceType.one_time, recurrence_specific_due_date=date(2026, 6, 1)
    )
    assert generate_occurrence_dates(
        template, date(2026, 5, 1), date(2026, 6, 30)
    ) == [date(2026, 6, 1)]
    assert generate_occurrence_dates(template, date(2026, 7, 1), date(2026, 7, 31)) == []


def test_empty_window_yields_nothing():
    template = _template(RecurrenceType.monthly, recurrence_due_day=1)
    assert generate_occurrence_dates(template, date(2026, 5, 1), date(2026, 4, 1)) == []


@pytest.mark.parametrize(
    "recurrence_type, kwargs",
    [
        (RecurrenceType.one_time, {}),
        (RecurrenceType.weekly, {}),
        (RecurrenceType.weekly, {"due_weekday": 7}),
        (RecurrenceType.monthly, {}),
        (RecurrenceType.monthly, {"due_day": 32}),
        (RecurrenceType.quarterly, {"due_day": 1, "start_month": 13}),
        (
            RecurrenceType.biweekly,
            {"due_weekday": 1, "specific_due_date": date(2026, 3, 2)},
        ),
    ],
)
def test_validate_cadence_rejects_incomplete_rules(recurrence_type, kwargs):
    params = dict(due_day=None, due_weekday=None, specific_due_date=None, start_month=None)
    params.update(kwargs)
    with pytest.raises(ValueError):
        validate_cadence(recurrence_type, **params)


def test_derive_status():
    today = date(2026, 3, 10)
    future = date(2026, 3, 20)
    past = date(2026, 3, 1)
    assert derive_status(10_000, 0, future, today) == OccurrenceStatus.unpaid
    assert derive_status(10_000, 6_000, future, today) == OccurrenceStatus.partial
    assert derive_status(10_000, 10_000, future, today) == OccurrenceStatus.paid
    assert derive_status(10_000, 10_500, future, today) == OccurrenceStatus.overpaid
    assert derive_status(10_000, 0, past, today) == OccurrenceStatus.overdue
    assert derive_status(10_000, 6_000, past, today) == OccurrenceStatus.overdue
    assert derive_status(10_000, 10_000, past, today) == OccurrenceStatus.paid


def test_ensure_template_occurrences_is_idempotent():
    session = make_session()
    template = _stored_template(session)
    engine = OccurrenceEngine(session)

    assert engine.ensure_template_occurrences(
        template, date(2026, 1, 1), date(2026, 3, 31)
    ) == 3
    session.commit()
    assert engine.ensure_template_occurrences(
        template, date(2026, 2, 1), date(2026, 5, 31)
    ) == 2
    session.commit()
    assert engine.ensure_template_occurrences(
        template, date(2026, 1, 1), date(2026, 5, 31)
    ) == 0

    due_dates = session.scalars(
        select(BillOccurrence.due_date).order_by(BillOccurrence.due_date)
    ).all()
    assert due_dates == [date(2026, m, 15) for m in range(1, 6)]
    occurrence = session.scalars(select(BillOccurrence)).first()
    assert occurrence.status == OccurrenceStatus.unpaid
    assert occurrence.amount_remaining_cents == 120_000


def test_paid_one_time_template_is_deactivated():
    session = make_session()
    template = _stored_template(
        session,
        recurrence_type=RecurrenceType.one_time,
        recurrence_due_day=None,
        recurrence_specific_due_date=date(2026, 4, 1),
    )
    session.add(
        BillOccurrence(
            template_id=template.id,
            household_id=template.household_id,
            due_date=date(2026, 4, 1),
            status=OccurrenceStatus.paid,
            amount_due_cents=120_000,
            amount_paid_cents=120_000,
            amount_remaining_cents=0,
        )
    )
    session.commit()

    engine = OccurrenceEngine(session)
    assert engine.ensure_template_occurrences(
        template, date(2026, 3, 1), date(2026, 5, 1)
    ) == 0
    assert template.is_active is False


def test_budget_period_assignment_creates_allocation():
    session = make_session()
    template = _stored_template(session, budget_period_assignment=2)
    OccurrenceEngine(session).ensure_template_occurrences(
        template, date(2026, 3, 1), date(2026, 3, 31)
    )
    session.commit()

    allocation = session.scalars(select(BillOccurrenceAllocation)).one()
    assert allocation.period_number == 2
    assert allocation.allocated_amount_cents == 120_000
    assert allocation.is_paid is False


def test_preview_does_not_touch_session():
    session = make_session()
    template = _stored_template(session)
    previews = OccurrenceEngine(session).preview_template_occurrences(
        template, date(2026, 3, 1), date(2026, 4, 30)
    )
    assert [p.due_date for p in previews] == [date(2026, 3, 15), date(2026, 4, 15)]
    session.commit()
    assert session.execute(select(func.count(BillOccurrence.id))).scalar_one() == 0


def test_refresh_statuses_moves_between_overdue_and_current():
    session = make_session()
    template = _stored_template(session)
    engine = OccurrenceEngine(session)
    engine.ensure_template_occurrences(template, date(2026, 3, 1), date(2026, 4, 30))
    session.commit()

    changed = engine.refresh_statuses(template.household_id, date(2026, 3, 20))
    assert changed == 1
    march, april = session.scalars(
        select(BillOccurrence).order_by(BillOccurrence.due_date)
    ).all()
    assert march.status == OccurrenceStatus.overdue
    assert march.days_late == 5
    assert april.status == OccurrenceStatus.unpaid

    # Moving the clock back puts the March bill in the future again.
    engine.refresh_statuses(template.household_id, date(2026, 3, 1))
    assert march.status == OccurrenceStatus.unpaid
    assert march.days_late == 0
