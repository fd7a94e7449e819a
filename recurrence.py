import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from models import (
    BillOccurrence,
    BillOccurrenceAllocation,
    BillTemplate,
    BillType,
    OccurrenceStatus,
    RecurrenceType,
    SETTLED_STATUSES,
)

logger = logging.getLogger(__name__)

MONTH_STEP = {
    RecurrenceType.monthly: 1,
    RecurrenceType.quarterly: 3,
    RecurrenceType.semi_annual: 6,
    RecurrenceType.annual: 12,
}

WEEK_STEP_DAYS = {
    RecurrenceType.weekly: 7,
    RecurrenceType.biweekly: 14,
}

# Upper bound on dates produced by one expansion call.
HORIZON_COUNT = {
    RecurrenceType.one_time: 1,
    RecurrenceType.weekly: 18,
    RecurrenceType.biweekly: 12,
    RecurrenceType.monthly: 8,
    RecurrenceType.quarterly: 8,
    RecurrenceType.semi_annual: 6,
    RecurrenceType.annual: 4,
}

# Weekly cadences without an explicit first due date are phased off this Monday.
WEEKLY_REFERENCE_DATE = date(2024, 1, 1)

MAX_ITERATIONS = 120


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


def _month_date(month_index: int, desired_day: int) -> date:
    """Date for an absolute month index (year * 12 + month - 1), snapped to month end."""
    year, month0 = divmod(month_index, 12)
    dim = days_in_month(year, month0 + 1)
    return date(year, month0 + 1, min(desired_day, dim))


def validate_cadence(
    recurrence_type: RecurrenceType,
    *,
    due_day: Optional[int],
    due_weekday: Optional[int],
    specific_due_date: Optional[date],
    start_month: Optional[int],
) -> None:
    if recurrence_type == RecurrenceType.one_time:
        if specific_due_date is None:
            raise ValueError(
                "recurrence_specific_due_date is required for one_time recurrence"
            )
        return
    if recurrence_type in WEEK_STEP_DAYS:
        if due_weekday is None:
            raise ValueError(
                "recurrence_due_weekday is required for weekly/biweekly recurrence"
            )
        if not 0 <= due_weekday <= 6:
            raise ValueError("recurrence_due_weekday must be between 0 and 6")
        if specific_due_date is not None and specific_due_date.weekday() != due_weekday:
            raise ValueError(
                "recurrence_specific_due_date must fall on recurrence_due_weekday"
            )
        return
    if due_day is None:
        raise ValueError("recurrence_due_day is required for monthly and longer cadences")
    if not 1 <= due_day <= 31:
        raise ValueError("recurrence_due_day must be between 1 and 31")
    if start_month is not None and not 1 <= start_month <= 12:
        raise ValueError("recurrence_start_month must be between 1 and 12")


def _weekly_dates(template: BillTemplate, start: date, end: date) -> list[date]:
    step = WEEK_STEP_DAYS[template.recurrence_type]
    anchor = template.recurrence_specific_due_date
    if anchor is None:
        weekday = template.recurrence_due_weekday
        if weekday is None:
            return []
        anchor = WEEKLY_REFERENCE_DATE + timedelta(days=weekday)
    offset = (start - anchor).days % step
    current = start if offset == 0 else start + timedelta(days=step - offset)
    if anchor > current:
        current = anchor

    dates: list[date] = []
    cap = HORIZON_COUNT[template.recurrence_type]
    while current <= end and len(dates) < cap:
        dates.append(current)
        current += timedelta(days=step)
    return dates


def _monthly_dates(template: BillTemplate, start: date, end: date) -> list[date]:
    day = template.recurrence_due_day
    if not day:
        return []
    step = MONTH_STEP[template.recurrence_type]
    if template.recurrence_type == RecurrenceType.monthly:
        anchor_month = start.month
    elif template.recurrence_start_month:
        anchor_month = template.recurrence_start_month
    elif template.recurrence_specific_due_date:
        anchor_month = template.recurrence_specific_due_date.month
    else:
        anchor_month = 1

    index = (start.year - 1) * 12 + anchor_month - 1
    current = _month_date(index, day)
    iterations = 0
    while current < start and iterations < MAX_ITERATIONS:
        index += step
        current = _month_date(index, day)
        iterations += 1

    dates: list[date] = []
    cap = HORIZON_COUNT[template.recurrence_type]
    while current <= end and len(dates) < cap:
        dates.append(current)
        index += step
        current = _month_date(index, day)
    return dates


def generate_occurrence_dates(
    template: BillTemplate, start: date, end: date
) -> list[date]:
    if start > end:
        return []
    if template.recurrence_type == RecurrenceType.one_time:
        due = template.recurrence_specific_due_date
        if due is not None and start <= due <= end:
            return [due]
        return []
    if template.recurrence_type in WEEK_STEP_DAYS:
        return _weekly_dates(template, start, end)
    return _monthly_dates(template, start, end)


def derive_status(
    amount_due_cents: int, amount_paid_cents: int, due_date: date, today: date
) -> OccurrenceStatus:
    if amount_paid_cents > amount_due_cents:
        return OccurrenceStatus.overpaid
    if amount_paid_cents > 0 and amount_paid_cents == amount_due_cents:
        return OccurrenceStatus.paid
    if due_date < today and amount_due_cents - amount_paid_cents > 0:
        return OccurrenceStatus.overdue
    if amount_paid_cents > 0:
        return OccurrenceStatus.partial
    return OccurrenceStatus.unpaid


def remaining_cents(amount_due_cents: int, amount_paid_cents: int) -> int:
    return max(0, amount_due_cents - amount_paid_cents)


class OccurrenceEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _has_settled_occurrence(self, template: BillTemplate) -> bool:
        stmt = (
            select(BillOccurrence.id)
            .where(
                BillOccurrence.template_id == template.id,
                BillOccurrence.status.in_(SETTLED_STATUSES),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _existing_due_dates(self, template: BillTemplate) -> set[date]:
        stmt = select(BillOccurrence.due_date).where(
            BillOccurrence.template_id == template.id
        )
        return set(self.session.scalars(stmt).all())

    def _new_occurrence(self, template: BillTemplate, due_date: date) -> BillOccurrence:
        amount_due = max(0, template.default_amount_cents)
        return BillOccurrence(
            template_id=template.id,
            household_id=template.household_id,
            due_date=due_date,
            status=OccurrenceStatus.unpaid,
            amount_due_cents=amount_due,
            amount_paid_cents=0,
            amount_remaining_cents=amount_due,
            days_late=0,
            late_fee_cents=0,
            is_manual_override=False,
        )

    def ensure_template_occurrences(
        self, template: BillTemplate, start: date, end: date
    ) -> int:
        if not template.is_active:
            return 0
        if template.is_one_time and self._has_settled_occurrence(template):
            template.is_active = False
            self.session.flush()
            logger.info(f"one_time_template_deactivated: template_id={template.id}")
            return 0

        candidates = generate_occurrence_dates(template, start, end)
        if not candidates:
            return 0
        existing = self._existing_due_dates(template)
        created: list[BillOccurrence] = []
        for due_date in candidates:
            if due_date in existing:
                continue
            occurrence = self._new_occurrence(template, due_date)
            self.session.add(occurrence)
            created.append(occurrence)
        if not created:
            return 0
        self.session.flush()

        if template.budget_period_assignment is not None:
            for occurrence in created:
                self.session.add(
                    BillOccurrenceAllocation(
                        occurrence_id=occurrence.id,
                        template_id=template.id,
                        household_id=template.household_id,
                        period_number=template.budget_period_assignment,
                        allocated_amount_cents=occurrence.amount_due_cents,
                        paid_amount_cents=0,
                        is_paid=False,
                    )
                )
            self.session.flush()
        return len(created)

    def ensure_household(
        self,
        household_id: int,
        start: date,
        end: date,
        bill_type: Optional[BillType] = None,
    ) -> int:
        stmt = select(BillTemplate).where(
            BillTemplate.household_id == household_id,
            BillTemplate.is_active.is_(True),
        )
        if bill_type is not None:
            stmt = stmt.where(BillTemplate.bill_type == bill_type)
        count = 0
        for template in self.session.scalars(stmt).all():
            count += self.ensure_template_occurrences(template, start, end)
        if count:
            logger.info(
                f"occurrences_generated: household_id={household_id} count={count}"
            )
        return count

    def preview_template_occurrences(
        self, template: BillTemplate, start: date, end: date
    ) -> list[BillOccurrence]:
        """Occurrences the generator would create, built but never added to the session."""
        if not template.is_active:
            return []
        if template.is_one_time and self._has_settled_occurrence(template):
            return []
        existing = self._existing_due_dates(template)
        previews: list[BillOccurrence] = []
        for due_date in generate_occurrence_dates(template, start, end):
            if due_date in existing:
                continue
            previews.append(self._new_occurrence(template, due_date))
        return previews

    def refresh_statuses(self, household_id: int, today: Optional[date] = None) -> int:
        today = today or local_today()
        changed = 0

        overdue_stmt = select(BillOccurrence).where(
            BillOccurrence.household_id == household_id,
            BillOccurrence.status.in_(
                [OccurrenceStatus.unpaid, OccurrenceStatus.partial]
            ),
            BillOccurrence.due_date < today,
            BillOccurrence.amount_remaining_cents != 0,
        )
        for occurrence in self.session.scalars(overdue_stmt).all():
            occurrence.status = OccurrenceStatus.overdue
            occurrence.days_late = max(0, (today - occurrence.due_date).days)
            changed += 1

        current_stmt = select(BillOccurrence).where(
            BillOccurrence.household_id == household_id,
            BillOccurrence.status == OccurrenceStatus.overdue,
        )
        for occurrence in self.session.scalars(current_stmt).all():
            if occurrence.due_date < today:
                occurrence.days_late = max(0, (today - occurrence.due_date).days)
                continue
            occurrence.status = derive_status(
                occurrence.amount_due_cents,
                occurrence.amount_paid_cents,
                occurrence.due_date,
                today,
            )
            occurrence.days_late = 0
            changed += 1

        self.session.flush()
        return changed
