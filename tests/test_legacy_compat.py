from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidRequestError
from legacy_compat import (
    LegacyBillIn,
    LegacyBillService,
    build_template_request,
    cents_to_dollars,
    dollars_to_cents,
    legacy_frequency_to_recurrence,
    legacy_status,
    legacy_statuses_to_occurrence,
    recurrence_to_legacy_frequency,
)
from models import (
    AutopayAmountType,
    BillClassification,
    Household,
    OccurrenceStatus,
    RecurrenceType,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_dollar_conversion_rounds_half_up():
    assert dollars_to_cents("12.345") == 1235
    assert dollars_to_cents(0.005) == 1
    assert dollars_to_cents(Decimal("19.99")) == 1999
    assert dollars_to_cents(None) is None
    assert dollars_to_cents("") is None
    assert cents_to_dollars(1999) == 19.99
    with pytest.raises(InvalidRequestError):
        dollars_to_cents("twelve")


def test_frequency_mapping():
    assert legacy_frequency_to_recurrence("semi-annual") == RecurrenceType.semi_annual
    assert legacy_frequency_to_recurrence("one-time") == RecurrenceType.one_time
    assert legacy_frequency_to_recurrence("fortnightly") == RecurrenceType.monthly
    assert recurrence_to_legacy_frequency(RecurrenceType.one_time) == "one-time"


def test_status_mapping():
    assert legacy_status(OccurrenceStatus.overpaid) == "paid"
    assert legacy_status(OccurrenceStatus.partial) == "pending"
    assert legacy_status(OccurrenceStatus.overdue) == "overdue"
    assert legacy_statuses_to_occurrence(["pending", "paid"]) == [
        OccurrenceStatus.unpaid,
        OccurrenceStatus.partial,
        OccurrenceStatus.paid,
        OccurrenceStatus.overpaid,
    ]


def test_camel_case_payload_builds_template():
    payload = LegacyBillIn.model_validate(
        {
            "name": " Water ",
            "expectedAmount": 45.5,
            "dueDate": 1,
            "frequency": "weekly",
            "billClassification": "garden",
            "amountTolerance": 2.5,
        }
    )
    template, autopay = build_template_request(payload)

    assert template.name == "Water"
    assert template.default_amount_cents == 4_550
    assert template.recurrence_type == RecurrenceType.weekly
    # Legacy weekdays start on Sunday.
    assert template.recurrence_due_weekday == 0
    assert template.classification == BillClassification.other
    assert template.classification_subcategory == "garden"
    assert template.amount_tolerance_bps == 250
    assert autopay is None


def test_quarterly_start_month_and_autopay_defaults():
    payload = LegacyBillIn(
        name="Insurance",
        expected_amount=Decimal("300"),
        due_date=28,
        frequency="quarterly",
        start_month=0,
        bill_classification="insurance",
        is_autopay_enabled=True,
        autopay_days_before=90,
    )
    template, autopay = build_template_request(payload)

    assert template.recurrence_due_day == 28
    assert template.recurrence_start_month == 1
    assert template.amount_tolerance_bps == 500
    assert template.classification == BillClassification.insurance
    assert autopay.amount_type == AutopayAmountType.fixed
    assert autopay.fixed_amount_cents == 30_000
    assert autopay.days_before_due == 60


def test_one_time_uses_specific_date():
    payload = LegacyBillIn(
        name="Repair",
        expected_amount=Decimal("80"),
        frequency="one-time",
        specific_due_date=date(2026, 5, 2),
    )
    template, _ = build_template_request(payload)
    assert template.recurrence_specific_due_date == date(2026, 5, 2)
    assert template.recurrence_due_day is None


def test_service_create_and_list_round_trip():
    session = make_session()
    household = Household(name="Home")
    session.add(household)
    session.commit()
    service = LegacyBillService(session, household.id, user_id=5)

    bill = service.create(
        LegacyBillIn(name="Rent", expected_amount=Decimal("1200.50"), due_date=1)
    )
    assert bill["expectedAmount"] == 1200.5
    assert bill["frequency"] == "monthly"
    assert bill["dueDate"] == 1
    assert bill["userId"] == 5
    assert bill["isAutopayEnabled"] is False

    rows, total = service.list()
    assert total == 1
    [row] = rows
    assert row["bill"]["id"] == bill["id"]
    instances = row["upcomingInstances"]
    assert len(instances) == 3
    assert all(i["status"] == "pending" for i in instances)
    assert all(i["expectedAmount"] == 1200.5 for i in instances)
    assert [i["dueDate"] for i in instances] == sorted(i["dueDate"] for i in instances)


def test_list_filters_instances_by_legacy_status_with_allocations():
    session = make_session()
    household = Household(name="Home")
    session.add(household)
    session.commit()
    service = LegacyBillService(session, household.id, user_id=5)
    service.create(
        LegacyBillIn(
            name="Phone",
            expected_amount=Decimal("50"),
            due_date=12,
            budget_period_assignment=2,
        )
    )
    today = date(2026, 3, 20)

    rows, _ = service.list(today=today, statuses=["overdue"])
    instances = rows[0]["upcomingInstances"]
    assert [i["dueDate"] for i in instances] == ["2026-02-12", "2026-03-12"]
    assert all(i["status"] == "overdue" for i in instances)
    overdue = instances[-1]
    [allocation] = overdue["allocations"]
    assert allocation["billInstanceId"] == overdue["id"]
    assert allocation["periodNumber"] == 2
    assert allocation["allocatedAmount"] == 50.0
    assert allocation["isPaid"] is False

    rows, _ = service.list(today=today, statuses=["skipped"])
    assert rows[0]["upcomingInstances"] == []

    with pytest.raises(InvalidRequestError):
        service.list(today=today, statuses=["late"])
