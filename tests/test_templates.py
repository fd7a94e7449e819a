from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidRequestError, NotFoundError
from models import (
    Account,
    AccountType,
    AutopayAmountType,
    AutopayRule,
    BillOccurrence,
    BillOccurrenceAllocation,
    BillPaymentEvent,
    BillTemplate,
    BillType,
    Household,
    OccurrenceStatus,
    RecurrenceType,
    Transaction,
)
from recurrence import OccurrenceEngine
from schemas import AutopayRuleIn, BillTemplatePatch, OccurrenceFilters, PayOccurrenceIn
from services import AutopayService, OccurrenceService, PaymentService, TemplateService

TODAY = date(2026, 3, 10)


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
    electric = BillTemplate(
        household_id=household.id,
        created_by_user_id=1,
        name="Electric",
        bill_type=BillType.expense,
        recurrence_type=RecurrenceType.monthly,
        recurrence_due_day=20,
        default_amount_cents=10_000,
        budget_period_assignment=1,
    )
    water = BillTemplate(
        household_id=household.id,
        created_by_user_id=1,
        name="Water",
        bill_type=BillType.expense,
        recurrence_type=RecurrenceType.monthly,
        recurrence_due_day=5,
        default_amount_cents=4_000,
    )
    session.add_all([checking, electric, water])
    session.commit()
    return household, checking, electric, water


def _occurrence(session, template, due_date):
    return session.scalars(
        select(BillOccurrence).where(
            BillOccurrence.template_id == template.id,
            BillOccurrence.due_date == due_date,
        )
    ).one()


def _count(session, model):
    return session.execute(select(func.count(model.id))).scalar_one()


def test_update_applies_patch_and_rechecks_cadence() -> None:
    session = make_session()
    household, _, electric, _ = _seed(session)
    templates = TemplateService(session, household.id, user_id=1)

    updated = templates.update(
        electric.id,
        BillTemplatePatch(default_amount_cents=12_000, recurrence_due_day=25),
    )
    assert updated.default_amount_cents == 12_000
    assert updated.recurrence_due_day == 25
    assert updated.name == "Electric"

    # Switching to weekly without a weekday leaves the merged cadence invalid.
    with pytest.raises(InvalidRequestError, match="recurrence_due_weekday"):
        templates.update(electric.id, BillTemplatePatch(recurrence_type=RecurrenceType.weekly))

    weekly = templates.update(
        electric.id,
        BillTemplatePatch(recurrence_type=RecurrenceType.weekly, recurrence_due_weekday=4),
    )
    assert weekly.recurrence_type == RecurrenceType.weekly
    assert weekly.recurrence_due_weekday == 4


def test_update_rejects_nulls_for_required_fields() -> None:
    session = make_session()
    household, _, electric, _ = _seed(session)
    templates = TemplateService(session, household.id)

    with pytest.raises(InvalidRequestError, match="name cannot be null"):
        templates.update(electric.id, BillTemplatePatch(name=None))
    with pytest.raises(InvalidRequestError, match="recurrence_type cannot be null"):
        templates.update(electric.id, BillTemplatePatch(recurrence_type=None))
    with pytest.raises(InvalidRequestError, match="default_amount_cents cannot be null"):
        templates.update(electric.id, BillTemplatePatch(default_amount_cents=None))
    with pytest.raises(InvalidRequestError):
        templates.update(electric.id, BillTemplatePatch(recurrence_due_day=None))

    session.refresh(electric)
    assert electric.name == "Electric"
    assert electric.recurrence_due_day == 20


def test_delete_template_removes_children_and_keeps_ledger() -> None:
    session = make_session()
    household, checking, electric, water = _seed(session)
    OccurrenceEngine(session).ensure_template_occurrences(
        electric, date(2026, 3, 1), date(2026, 3, 31)
    )
    session.commit()
    occurrence = _occurrence(session, electric, date(2026, 3, 20))
    AutopayService(session, household.id).upsert_rule(
        electric.id,
        AutopayRuleIn(
            pay_from_account_id=checking.id,
            amount_type=AutopayAmountType.fixed,
            fixed_amount_cents=10_000,
        ),
    )
    PaymentService(session, household.id, user_id=1).pay_occurrence(
        occurrence.id, PayOccurrenceIn(account_id=checking.id), today=TODAY
    )
    assert _count(session, BillOccurrenceAllocation) == 1
    assert _count(session, BillPaymentEvent) == 1

    TemplateService(session, household.id).delete(electric.id)

    assert _count(session, BillOccurrence) == 0
    assert _count(session, BillOccurrenceAllocation) == 0
    assert _count(session, BillPaymentEvent) == 0
    assert _count(session, AutopayRule) == 0
    assert session.get(BillTemplate, electric.id) is None
    [txn] = session.scalars(select(Transaction)).all()
    assert txn.bill_template_id is None
    assert txn.amount_cents == 10_000
    assert checking.balance_cents == 90_000
    assert session.get(BillTemplate, water.id) is not None


def test_delete_template_from_other_household_is_not_found() -> None:
    session = make_session()
    household, _, electric, _ = _seed(session)
    other = Household(name="Other")
    session.add(other)
    session.commit()

    with pytest.raises(NotFoundError):
        TemplateService(session, other.id).delete(electric.id)
    assert session.get(BillTemplate, electric.id) is not None


def test_delete_occurrence_removes_allocations_and_events() -> None:
    session = make_session()
    household, checking, electric, _ = _seed(session)
    OccurrenceEngine(session).ensure_template_occurrences(
        electric, date(2026, 3, 1), date(2026, 4, 30)
    )
    session.commit()
    march = _occurrence(session, electric, date(2026, 3, 20))
    april = _occurrence(session, electric, date(2026, 4, 20))
    PaymentService(session, household.id).pay_occurrence(
        march.id, PayOccurrenceIn(account_id=checking.id, amount_cents=2_500), today=TODAY
    )

    occurrences = OccurrenceService(session, household.id)
    occurrences.delete(march.id)

    with pytest.raises(NotFoundError):
        occurrences.get(march.id)
    remaining = session.scalars(select(BillOccurrenceAllocation)).all()
    assert [a.occurrence_id for a in remaining] == [april.id]
    assert _count(session, BillPaymentEvent) == 0
    assert _count(session, Transaction) == 1
    assert occurrences.get(april.id).status == OccurrenceStatus.unpaid


def test_list_summary_counts_overdue_upcoming_and_paid() -> None:
    session = make_session()
    household, checking, electric, water = _seed(session)
    occurrences = OccurrenceService(session, household.id)
    filters = OccurrenceFilters(
        period="custom", start=date(2026, 2, 1), end=date(2026, 3, 31)
    )

    first = occurrences.list(filters, today=TODAY)
    assert first["total"] == 4
    water_march = _occurrence(session, water, date(2026, 3, 5))
    assert water_march.status == OccurrenceStatus.overdue
    PaymentService(session, household.id).pay_occurrence(
        water_march.id, PayOccurrenceIn(account_id=checking.id), today=TODAY
    )

    result = occurrences.list(filters, today=TODAY)
    assert [o.due_date for o in result["items"]] == [
        date(2026, 2, 5),
        date(2026, 2, 20),
        date(2026, 3, 5),
        date(2026, 3, 20),
    ]
    summary = result["summary"]
    assert summary["overdue_count"] == 2
    assert summary["overdue_amount_cents"] == 14_000
    assert summary["upcoming_count"] == 1
    assert summary["upcoming_amount_cents"] == 10_000
    assert summary["next_due_date"] == date(2026, 3, 20)
    assert summary["paid_this_period_count"] == 1
    assert summary["paid_this_period_amount_cents"] == 4_000

    overdue_only = occurrences.list(
        OccurrenceFilters(
            period="custom",
            start=date(2026, 2, 1),
            end=date(2026, 3, 31),
            status=[OccurrenceStatus.overdue],
        ),
        today=TODAY,
    )
    assert overdue_only["total"] == 2


def test_dashboard_summary_covers_current_month() -> None:
    session = make_session()
    household, checking, _, water = _seed(session)
    occurrences = OccurrenceService(session, household.id)

    data = occurrences.dashboard_summary(today=TODAY)
    assert data["period_start"] == date(2026, 3, 1)
    assert data["period_end"] == date(2026, 3, 31)
    assert data["active_template_count"] == 2
    # Electric Feb 20, Water Feb 5 and Mar 5 are all past due.
    assert data["overdue_count"] == 3
    assert data["overdue_amount_cents"] == 18_000
    assert data["upcoming_count"] == 1
    assert data["next_due_date"] == date(2026, 3, 20)
    assert data["paid_this_period_count"] == 0

    water_march = _occurrence(session, water, date(2026, 3, 5))
    PaymentService(session, household.id).pay_occurrence(
        water_march.id, PayOccurrenceIn(account_id=checking.id), today=TODAY
    )
    water.is_active = False
    session.commit()

    data = occurrences.dashboard_summary(today=TODAY)
    assert data["active_template_count"] == 1
    assert data["overdue_count"] == 2
    assert data["overdue_amount_cents"] == 14_000
    assert data["paid_this_period_count"] == 1
    assert data["paid_this_period_amount_cents"] == 4_000
