from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import AutopayErrorCode, NotFoundError
from models import (
    AutopayRule,
    BillOccurrence,
    BillTemplate,
    BillType,
    Household,
    Notification,
    NotificationPriority,
    NotificationType,
    OccurrenceStatus,
    RecurrenceType,
)
from notifications import (
    NotificationService,
    ReminderService,
    format_money,
    render_copy,
)

TODAY = date(2026, 3, 10)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _household(session) -> Household:
    household = Household(name="Home")
    session.add(household)
    session.commit()
    return household


def _bill(session, household, due_date, name="Water", bill_type=BillType.expense):
    template = BillTemplate(
        household_id=household.id,
        created_by_user_id=3,
        name=name,
        bill_type=bill_type,
        recurrence_type=RecurrenceType.monthly,
        recurrence_due_day=due_date.day,
        default_amount_cents=4_550,
    )
    session.add(template)
    session.flush()
    occurrence = BillOccurrence(
        template_id=template.id,
        household_id=household.id,
        due_date=due_date,
        status=OccurrenceStatus.overdue if due_date < TODAY else OccurrenceStatus.unpaid,
        amount_due_cents=4_550,
        amount_paid_cents=0,
        amount_remaining_cents=4_550,
    )
    session.add(occurrence)
    session.commit()
    return template, occurrence


def test_format_money():
    assert format_money(123456) == "$1,234.56"
    assert format_money(-5) == "-$0.05"
    assert format_money(None) == "$0.00"


@pytest.mark.parametrize("code", list(AutopayErrorCode))
def test_every_failure_code_has_copy(code):
    text = render_copy(
        f"autopay_failed.{code.value}",
        name="Rent",
        amount=1_000,
        due_date=TODAY,
        detail="missing settings",
    )
    assert text


def test_due_reminder_is_deduplicated():
    session = make_session()
    household = _household(session)
    _, occurrence = _bill(session, household, TODAY + timedelta(days=2))
    reminders = ReminderService(session, household.id, reminder_days=3)

    assert reminders.create_bill_reminders(TODAY) == 1
    assert reminders.create_bill_reminders(TODAY) == 0

    [notification] = session.scalars(select(Notification)).all()
    assert notification.type == NotificationType.bill_due
    assert notification.user_id == 3
    assert notification.entity_id == occurrence.id
    assert notification.title == "Water is due in 2 days"
    assert "$45.50" in notification.message

    later = datetime.utcnow() + timedelta(hours=13)
    assert reminders.create_bill_reminders(TODAY, now=later) == 1


def test_overdue_reminder_is_urgent():
    session = make_session()
    household = _household(session)
    _bill(session, household, TODAY - timedelta(days=1))

    assert ReminderService(session, household.id, reminder_days=3).create_bill_reminders(
        TODAY
    ) == 1
    notification = session.scalars(select(Notification)).one()
    assert notification.type == NotificationType.bill_overdue
    assert notification.priority == NotificationPriority.urgent
    assert "(1 day late)" in notification.message


def test_reminders_skip_far_bills_income_and_autopay():
    session = make_session()
    household = _household(session)
    _bill(session, household, TODAY + timedelta(days=10), name="Far away")
    _bill(session, household, TODAY, name="Paycheck", bill_type=BillType.income)
    autopaid, _ = _bill(session, household, TODAY, name="Streaming")
    session.add(
        AutopayRule(
            template_id=autopaid.id,
            household_id=household.id,
            is_enabled=True,
            fixed_amount_cents=4_550,
        )
    )
    session.commit()

    assert ReminderService(session, household.id, reminder_days=3).create_bill_reminders(
        TODAY
    ) == 0


def test_mark_read_is_scoped_to_owner():
    session = make_session()
    household = _household(session)
    service = NotificationService(session, household.id)
    notification = service.create(
        3, NotificationType.bill_due, "Water is due today", "$45.50 is due."
    )
    session.commit()

    with pytest.raises(NotFoundError):
        service.mark_read(4, notification.id)

    assert service.mark_read(3, notification.id).is_read is True
    assert service.list(3, unread_only=True) == []
    assert len(service.list(3)) == 1
