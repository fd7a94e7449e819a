"""Dollar-denominated view of bill templates for older clients.

Amounts cross this boundary as decimal dollars and are stored as integer
cents. Legacy weekdays count from Sunday (0) and legacy start months from
January (0); both are shifted to the stored conventions here.
"""

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from errors import InvalidRequestError
from models import (
    AutopayAmountType,
    AutopayRule,
    BillClassification,
    BillOccurrence,
    BillOccurrenceAllocation,
    BillTemplate,
    BillType,
    OccurrenceStatus,
    RecurrenceType,
)
from periods import DEFAULT_LOOKAHEAD_DAYS, DEFAULT_LOOKBACK_DAYS
from recurrence import OccurrenceEngine, local_today
from schemas import AutopayRuleIn, BillTemplateIn
from services import TemplateService, AutopayService

Number = Union[int, float, str, Decimal]

LEGACY_TO_RECURRENCE = {
    "one-time": RecurrenceType.one_time,
    "weekly": RecurrenceType.weekly,
    "biweekly": RecurrenceType.biweekly,
    "monthly": RecurrenceType.monthly,
    "quarterly": RecurrenceType.quarterly,
    "semi-annual": RecurrenceType.semi_annual,
    "annual": RecurrenceType.annual,
}
RECURRENCE_TO_LEGACY = {value: key for key, value in LEGACY_TO_RECURRENCE.items()}

UPCOMING_INSTANCE_LIMIT = 3
DEFAULT_TOLERANCE_PERCENT = Decimal("5")


def dollars_to_cents(value: Optional[Number]) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidRequestError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidRequestError(f"Invalid amount: {value!r}")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cents_to_dollars(value: Optional[int]) -> float:
    return float(Decimal(value or 0) / 100)


def legacy_frequency_to_recurrence(frequency: Optional[str]) -> RecurrenceType:
    return LEGACY_TO_RECURRENCE.get(frequency or "", RecurrenceType.monthly)


def recurrence_to_legacy_frequency(recurrence_type: RecurrenceType) -> str:
    return RECURRENCE_TO_LEGACY.get(recurrence_type, "monthly")


def legacy_status(status: OccurrenceStatus) -> str:
    if status in (OccurrenceStatus.paid, OccurrenceStatus.overpaid):
        return "paid"
    if status == OccurrenceStatus.overdue:
        return "overdue"
    if status == OccurrenceStatus.skipped:
        return "skipped"
    return "pending"


def legacy_payment_status(status: OccurrenceStatus) -> str:
    if status in (
        OccurrenceStatus.paid,
        OccurrenceStatus.overpaid,
        OccurrenceStatus.partial,
    ):
        return status.value
    return "unpaid"


def legacy_statuses_to_occurrence(statuses: list[str]) -> list[OccurrenceStatus]:
    mapping = {
        "pending": [OccurrenceStatus.unpaid, OccurrenceStatus.partial],
        "paid": [OccurrenceStatus.paid, OccurrenceStatus.overpaid],
        "overdue": [OccurrenceStatus.overdue],
        "skipped": [OccurrenceStatus.skipped],
    }
    result: list[OccurrenceStatus] = []
    for status in statuses:
        if status not in mapping:
            raise InvalidRequestError(f"Invalid status: {status}")
        for mapped in mapping[status]:
            if mapped not in result:
                result.append(mapped)
    return result


def _legacy_weekday(weekday: int) -> int:
    return (weekday + 1) % 7


def _stored_weekday(legacy_weekday: int) -> int:
    return (legacy_weekday + 6) % 7


def _legacy_due_day(template: BillTemplate) -> int:
    if template.recurrence_type in (RecurrenceType.weekly, RecurrenceType.biweekly):
        return _legacy_weekday(template.recurrence_due_weekday or 0)
    if template.recurrence_type == RecurrenceType.one_time:
        if template.recurrence_specific_due_date:
            return template.recurrence_specific_due_date.day
        return 1
    return template.recurrence_due_day or 1


class LegacyBillIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=120)
    expected_amount: Decimal
    due_date: Optional[int] = None
    specific_due_date: Optional[date] = None
    start_month: Optional[int] = Field(default=None, ge=0, le=11)
    frequency: str = "monthly"
    is_variable_amount: bool = False
    amount_tolerance: Optional[Decimal] = None
    category_id: Optional[int] = None
    merchant_id: Optional[int] = None
    account_id: Optional[int] = None
    linked_account_id: Optional[int] = None
    auto_mark_paid: bool = True
    notes: Optional[str] = None
    bill_type: BillType = BillType.expense
    bill_classification: Optional[str] = None
    classification_subcategory: Optional[str] = None
    is_autopay_enabled: bool = False
    autopay_account_id: Optional[int] = None
    autopay_amount_type: Optional[str] = None
    autopay_fixed_amount: Optional[Decimal] = None
    autopay_days_before: Optional[int] = None
    is_debt: bool = False
    original_balance: Optional[Decimal] = None
    remaining_balance: Optional[Decimal] = None
    bill_interest_rate: Optional[Decimal] = None
    budget_period_assignment: Optional[int] = None


def _classification(
    raw: Optional[str], subcategory: Optional[str]
) -> tuple[BillClassification, Optional[str]]:
    subcategory = subcategory.strip() if subcategory and subcategory.strip() else None
    if raw:
        try:
            return BillClassification(raw), subcategory
        except ValueError:
            # Unknown labels are kept as the subcategory of "other".
            return BillClassification.other, subcategory or raw.strip()
    return BillClassification.other, subcategory


def build_template_request(
    payload: LegacyBillIn,
) -> tuple[BillTemplateIn, Optional[AutopayRuleIn]]:
    recurrence_type = legacy_frequency_to_recurrence(payload.frequency)
    amount_cents = dollars_to_cents(payload.expected_amount) or 0
    classification, subcategory = _classification(
        payload.bill_classification, payload.classification_subcategory
    )
    tolerance = payload.amount_tolerance
    if tolerance is None:
        tolerance = DEFAULT_TOLERANCE_PERCENT

    cadence: dict[str, object] = {}
    if recurrence_type == RecurrenceType.one_time:
        cadence["recurrence_specific_due_date"] = payload.specific_due_date
    elif recurrence_type in (RecurrenceType.weekly, RecurrenceType.biweekly):
        cadence["recurrence_due_weekday"] = _stored_weekday(payload.due_date or 0)
    else:
        cadence["recurrence_due_day"] = payload.due_date or 1
        if recurrence_type != RecurrenceType.monthly and payload.start_month is not None:
            cadence["recurrence_start_month"] = payload.start_month + 1

    debt: dict[str, object] = {"debt_enabled": payload.is_debt}
    if payload.is_debt:
        original = dollars_to_cents(payload.original_balance)
        remaining = dollars_to_cents(
            payload.remaining_balance
            if payload.remaining_balance is not None
            else payload.original_balance
        )
        debt["debt_original_balance_cents"] = original
        debt["debt_remaining_balance_cents"] = remaining
        if payload.bill_interest_rate is not None:
            debt["debt_interest_apr_bps"] = int(
                (payload.bill_interest_rate * 100).quantize(
                    Decimal("1"), rounding=ROUND_HALF_UP
                )
            )

    template = BillTemplateIn(
        name=payload.name.strip(),
        bill_type=payload.bill_type,
        classification=classification,
        classification_subcategory=subcategory,
        recurrence_type=recurrence_type,
        default_amount_cents=amount_cents,
        is_variable_amount=payload.is_variable_amount,
        amount_tolerance_bps=max(
            0, int((tolerance * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        ),
        category_id=payload.category_id,
        merchant_id=payload.merchant_id,
        payment_account_id=payload.account_id,
        linked_liability_account_id=payload.linked_account_id,
        auto_mark_paid=payload.auto_mark_paid,
        notes=payload.notes,
        budget_period_assignment=payload.budget_period_assignment,
        **cadence,
        **debt,
    )

    autopay = None
    if payload.is_autopay_enabled:
        try:
            amount_type = AutopayAmountType(payload.autopay_amount_type or "fixed")
        except ValueError:
            amount_type = AutopayAmountType.fixed
        fixed = None
        if amount_type == AutopayAmountType.fixed:
            fixed = dollars_to_cents(payload.autopay_fixed_amount) or amount_cents
        autopay = AutopayRuleIn(
            is_enabled=True,
            pay_from_account_id=payload.autopay_account_id,
            amount_type=amount_type,
            fixed_amount_cents=fixed,
            days_before_due=max(0, min(payload.autopay_days_before or 0, 60)),
        )
    return template, autopay


def to_legacy_instance(occurrence: BillOccurrence) -> dict[str, object]:
    return {
        "id": occurrence.id,
        "householdId": occurrence.household_id,
        "billId": occurrence.template_id,
        "dueDate": occurrence.due_date.isoformat(),
        "expectedAmount": cents_to_dollars(occurrence.amount_due_cents),
        "actualAmount": (
            cents_to_dollars(occurrence.actual_amount_cents)
            if occurrence.actual_amount_cents is not None
            else None
        ),
        "paidDate": occurrence.paid_date.isoformat() if occurrence.paid_date else None,
        "transactionId": occurrence.last_transaction_id,
        "status": legacy_status(occurrence.status),
        "daysLate": occurrence.days_late,
        "lateFee": cents_to_dollars(occurrence.late_fee_cents),
        "isManualOverride": occurrence.is_manual_override,
        "notes": occurrence.notes,
        "budgetPeriodOverride": occurrence.budget_period_override,
        "paidAmount": cents_to_dollars(occurrence.amount_paid_cents),
        "remainingAmount": cents_to_dollars(occurrence.amount_remaining_cents),
        "paymentStatus": legacy_payment_status(occurrence.status),
        "allocations": [to_legacy_allocation(a) for a in occurrence.allocations],
    }


def to_legacy_allocation(allocation: BillOccurrenceAllocation) -> dict[str, object]:
    return {
        "id": allocation.id,
        "billInstanceId": allocation.occurrence_id,
        "billId": allocation.template_id,
        "householdId": allocation.household_id,
        "periodNumber": allocation.period_number,
        "allocatedAmount": cents_to_dollars(allocation.allocated_amount_cents),
        "isPaid": allocation.is_paid,
        "paidAmount": cents_to_dollars(allocation.paid_amount_cents),
        "paymentEventId": allocation.payment_event_id,
    }


def to_legacy_bill(
    template: BillTemplate, rule: Optional[AutopayRule]
) -> dict[str, object]:
    def optional_dollars(value: Optional[int]) -> Optional[float]:
        return cents_to_dollars(value) if value is not None else None

    start_month = template.recurrence_start_month
    return {
        "id": template.id,
        "userId": template.created_by_user_id,
        "householdId": template.household_id,
        "name": template.name,
        "categoryId": template.category_id,
        "merchantId": template.merchant_id,
        "expectedAmount": cents_to_dollars(template.default_amount_cents),
        "dueDate": _legacy_due_day(template),
        "frequency": recurrence_to_legacy_frequency(template.recurrence_type),
        "specificDueDate": (
            template.recurrence_specific_due_date.isoformat()
            if template.recurrence_specific_due_date
            else None
        ),
        "startMonth": start_month - 1 if start_month else None,
        "isVariableAmount": template.is_variable_amount,
        "amountTolerance": float(Decimal(template.amount_tolerance_bps) / 100),
        "accountId": template.payment_account_id,
        "isActive": template.is_active,
        "autoMarkPaid": template.auto_mark_paid,
        "notes": template.notes,
        "createdAt": template.created_at.isoformat() if template.created_at else None,
        "updatedAt": template.updated_at.isoformat() if template.updated_at else None,
        "billType": template.bill_type.value,
        "billClassification": template.classification.value,
        "classificationSubcategory": template.classification_subcategory,
        "linkedAccountId": template.linked_liability_account_id,
        "isAutopayEnabled": bool(rule and rule.is_enabled),
        "autopayAccountId": rule.pay_from_account_id if rule else None,
        "autopayAmountType": rule.amount_type.value if rule else "fixed",
        "autopayFixedAmount": optional_dollars(rule.fixed_amount_cents) if rule else None,
        "autopayDaysBefore": rule.days_before_due if rule else 0,
        "isDebt": template.debt_enabled,
        "originalBalance": optional_dollars(template.debt_original_balance_cents),
        "remainingBalance": optional_dollars(template.debt_remaining_balance_cents),
        "billInterestRate": (
            float(Decimal(template.debt_interest_apr_bps) / 100)
            if template.debt_interest_apr_bps is not None
            else None
        ),
        "budgetPeriodAssignment": template.budget_period_assignment,
    }


class LegacyBillService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id

    def _instances(
        self,
        template: BillTemplate,
        today: date,
        statuses: Optional[list[OccurrenceStatus]] = None,
    ) -> list[BillOccurrence]:
        conditions = [BillOccurrence.template_id == template.id]
        if statuses:
            conditions.append(BillOccurrence.status.in_(statuses))
            conditions.append(
                BillOccurrence.due_date.between(
                    today - timedelta(days=DEFAULT_LOOKBACK_DAYS),
                    today + timedelta(days=DEFAULT_LOOKAHEAD_DAYS),
                )
            )
        else:
            conditions.append(
                BillOccurrence.status.in_(
                    [OccurrenceStatus.unpaid, OccurrenceStatus.partial]
                )
            )
            conditions.append(BillOccurrence.due_date >= today)
        stmt = (
            select(BillOccurrence)
            .options(selectinload(BillOccurrence.allocations))
            .where(*conditions)
            .order_by(BillOccurrence.due_date)
            .limit(UPCOMING_INSTANCE_LIMIT)
        )
        return list(self.session.scalars(stmt).all())

    def list(
        self,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
        today: Optional[date] = None,
        statuses: Optional[list[str]] = None,
    ) -> tuple[list[dict[str, object]], int]:
        """Templates in the legacy bill shape, each with a few instances.

        Without ``statuses`` the instances are the next unpaid ones; with legacy
        statuses (pending, paid, overdue, skipped) they are matching occurrences
        inside the default list window.
        """
        today = today or local_today()
        occurrence_statuses = legacy_statuses_to_occurrence(statuses or [])
        engine = OccurrenceEngine(self.session)
        engine.ensure_household(
            self.household_id,
            today - timedelta(days=DEFAULT_LOOKBACK_DAYS),
            today + timedelta(days=DEFAULT_LOOKAHEAD_DAYS),
        )
        engine.refresh_statuses(self.household_id, today)
        self.session.commit()

        templates, total = TemplateService(self.session, self.household_id).list(
            is_active=is_active, limit=limit, offset=offset
        )
        rows = [
            {
                "bill": to_legacy_bill(template, template.autopay_rule),
                "upcomingInstances": [
                    to_legacy_instance(o)
                    for o in self._instances(template, today, occurrence_statuses)
                ],
            }
            for template in templates
        ]
        return rows, total

    def create(self, payload: LegacyBillIn) -> dict[str, object]:
        template_in, autopay_in = build_template_request(payload)
        template = TemplateService(self.session, self.household_id, self.user_id).create(
            template_in
        )
        rule = None
        if autopay_in is not None:
            rule = AutopayService(self.session, self.household_id, self.user_id).upsert_rule(
                template.id, autopay_in
            )
        return to_legacy_bill(template, rule)
