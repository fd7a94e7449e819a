from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Optional

from jinja2 import DictLoader, Environment, StrictUndefined
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from errors import AutopayErrorCode, NotFoundError
from models import (
    AutopayRule,
    BillOccurrence,
    BillTemplate,
    BillType,
    Notification,
    NotificationPriority,
    NotificationType,
    OccurrenceStatus,
)
from recurrence import local_today

if TYPE_CHECKING:  # pragma: no cover
    from services import AutopayAttempt

logger = logging.getLogger(__name__)

REMINDER_DEDUPE_WINDOW = timedelta(hours=12)
OCCURRENCE_ENTITY = "bill_occurrence"


def format_money(cents: Optional[int]) -> str:
    cents = cents or 0
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:,.2f}"


COPY_TEMPLATES = {
    "bill_due.title": "{{ name }} is due {{ when }}",
    "bill_due.message": "{{ amount | money }} is due on {{ due_date }}.",
    "bill_overdue.title": "{{ name }} is overdue",
    "bill_overdue.message": (
        "{{ amount | money }} was due on {{ due_date }}"
        " ({{ days_late }} day{{ '' if days_late == 1 else 's' }} late)."
    ),
    "autopay_success.title": "Autopay paid {{ name }}",
    "autopay_success.message": (
        "{{ amount | money }} was paid automatically for the bill due {{ due_date }}."
    ),
    "autopay_failed.title": "Autopay failed for {{ name }}",
    "autopay_failed.INSUFFICIENT_FUNDS": (
        "The pay-from account does not have enough funds to cover {{ amount | money }}."
        " Add funds or pay the bill manually."
    ),
    "autopay_failed.ACCOUNT_NOT_FOUND": (
        "The pay-from account for this bill no longer exists. Update the autopay settings."
    ),
    "autopay_failed.BILL_NOT_FOUND": "This bill could not be found or is inactive.",
    "autopay_failed.INSTANCE_NOT_FOUND": "The bill due {{ due_date }} could not be found.",
    "autopay_failed.ALREADY_PAID": "The bill due {{ due_date }} was already paid.",
    "autopay_failed.INVALID_CONFIGURATION": (
        "Autopay is not configured correctly: {{ detail }}."
    ),
    "autopay_failed.ZERO_AMOUNT": "There was nothing to pay for the bill due {{ due_date }}.",
    "autopay_failed.SYSTEM_ERROR": (
        "Something went wrong while paying the bill due {{ due_date }}. Please try again."
    ),
}

_env = Environment(
    loader=DictLoader(COPY_TEMPLATES),
    undefined=StrictUndefined,
    autoescape=False,
)
_env.filters["money"] = format_money


def render_copy(key: str, **context) -> str:
    return _env.get_template(key).render(**context).strip()


def _when(due_date: date, today: date) -> str:
    days = (due_date - today).days
    if days <= 0:
        return "today"
    if days == 1:
        return "tomorrow"
    return f"in {days} days"


class NotificationService:
    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def create(
        self,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        *,
        priority: NotificationPriority = NotificationPriority.normal,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        metadata: Optional[dict] = None,
    ) -> Notification:
        """Stage a notification; the caller owns the commit."""
        notification = Notification(
            household_id=self.household_id,
            user_id=user_id,
            type=type,
            title=title[:200],
            message=message,
            priority=priority,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        )
        self.session.add(notification)
        self.session.flush()
        return notification

    def list(
        self, user_id: int, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        stmt = select(Notification).where(
            Notification.household_id == self.household_id,
            Notification.user_id == user_id,
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
        return list(self.session.scalars(stmt.limit(max(1, min(limit, 200)))).all())

    def mark_read(self, user_id: int, notification_id: int) -> Notification:
        notification = self.session.get(Notification, notification_id)
        if (
            not notification
            or notification.household_id != self.household_id
            or notification.user_id != user_id
        ):
            raise NotFoundError("Notification not found")
        notification.is_read = True
        self.session.commit()
        return notification

    def sent_recently(
        self,
        type: NotificationType,
        entity_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or datetime.utcnow()
        stmt = (
            select(Notification.id)
            .where(
                Notification.household_id == self.household_id,
                Notification.type == type,
                Notification.entity_type == OCCURRENCE_ENTITY,
                Notification.entity_id == entity_id,
                Notification.created_at >= now - REMINDER_DEDUPE_WINDOW,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def autopay_success(self, user_id: int, attempt: "AutopayAttempt") -> Notification:
        context = {
            "name": attempt.template_name,
            "amount": attempt.amount_cents,
            "due_date": attempt.due_date,
        }
        return self.create(
            user_id,
            NotificationType.autopay_success,
            render_copy("autopay_success.title", **context),
            render_copy("autopay_success.message", **context),
            entity_type=OCCURRENCE_ENTITY,
            entity_id=attempt.occurrence_id,
            metadata={"amount_cents": attempt.amount_cents},
        )

    def autopay_failed(self, user_id: int, attempt: "AutopayAttempt") -> Notification:
        code = attempt.error_code or AutopayErrorCode.system_error
        context = {
            "name": attempt.template_name or "a bill",
            "amount": attempt.amount_cents,
            "due_date": attempt.due_date,
            "detail": (attempt.message or "missing settings").rstrip("."),
        }
        priority = (
            NotificationPriority.urgent
            if code == AutopayErrorCode.insufficient_funds
            else NotificationPriority.high
        )
        return self.create(
            user_id,
            NotificationType.autopay_failed,
            render_copy("autopay_failed.title", **context),
            render_copy(f"autopay_failed.{code.value}", **context),
            priority=priority,
            entity_type=OCCURRENCE_ENTITY,
            entity_id=attempt.occurrence_id,
            metadata={"error_code": code.value, "message": attempt.message},
        )


class ReminderService:
    def __init__(
        self, session: Session, household_id: int, reminder_days: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        if reminder_days is None:
            reminder_days = get_settings().reminder_days
        self.reminder_days = reminder_days
        self.notifications = NotificationService(session, household_id)

    def _outstanding(self, today: date) -> list[BillOccurrence]:
        autopay_templates = select(AutopayRule.template_id).where(
            AutopayRule.household_id == self.household_id,
            AutopayRule.is_enabled.is_(True),
        )
        stmt = (
            select(BillOccurrence)
            .join(BillTemplate, BillOccurrence.template_id == BillTemplate.id)
            .options(joinedload(BillOccurrence.template))
            .where(
                BillOccurrence.household_id == self.household_id,
                BillTemplate.is_active.is_(True),
                BillTemplate.bill_type == BillType.expense,
                BillTemplate.id.not_in(autopay_templates),
                BillOccurrence.due_date <= today + timedelta(days=self.reminder_days),
                BillOccurrence.status.in_(
                    [
                        OccurrenceStatus.unpaid,
                        OccurrenceStatus.partial,
                        OccurrenceStatus.overdue,
                    ]
                ),
            )
            .order_by(BillOccurrence.due_date)
        )
        return list(self.session.scalars(stmt).unique().all())

    def create_bill_reminders(
        self, today: Optional[date] = None, now: Optional[datetime] = None
    ) -> int:
        today = today or local_today()
        created = 0
        for occurrence in self._outstanding(today):
            template = occurrence.template
            overdue = occurrence.due_date < today
            kind = NotificationType.bill_overdue if overdue else NotificationType.bill_due
            if self.notifications.sent_recently(kind, occurrence.id, now=now):
                continue
            days_late = (today - occurrence.due_date).days if overdue else 0
            context = {
                "name": template.name,
                "amount": occurrence.amount_remaining_cents,
                "due_date": occurrence.due_date,
                "when": _when(occurrence.due_date, today),
                "days_late": days_late,
            }
            if overdue:
                priority = NotificationPriority.urgent
            elif occurrence.due_date == today:
                priority = NotificationPriority.high
            else:
                priority = NotificationPriority.normal
            self.notifications.create(
                template.created_by_user_id,
                kind,
                render_copy(f"{kind.value}.title", **context),
                render_copy(f"{kind.value}.message", **context),
                priority=priority,
                entity_type=OCCURRENCE_ENTITY,
                entity_id=occurrence.id,
                metadata={"due_date": occurrence.due_date, "days_late": days_late},
            )
            created += 1
        self.session.commit()
        if created:
            logger.info(
                f"bill_reminders_created: household_id={self.household_id} count={created}"
            )
        return created
