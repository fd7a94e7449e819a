from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session, joinedload, selectinload

from rapidfuzz import fuzz, utils as fuzz_utils

from errors import (
    AlreadyPaidError,
    AutopayErrorCode,
    BillsError,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from models import (
    Account,
    AutopayAmountType,
    AutopayRule,
    AutopayRun,
    AutopayRunStatus,
    AutopayRunType,
    BillClassification,
    BillOccurrence,
    BillOccurrenceAllocation,
    BillPaymentEvent,
    BillTemplate,
    BillType,
    Category,
    Merchant,
    OccurrenceStatus,
    OUTSTANDING_STATUSES,
    PaymentMethod,
    SETTLED_STATUSES,
    Transaction,
    TransactionType,
)
from notifications import NotificationService
from periods import Period, current_month, resolve_period
from recurrence import (
    OccurrenceEngine,
    derive_status,
    local_today,
    remaining_cents,
    validate_cadence,
)
from schemas import (
    AllocationIn,
    AutopayRuleIn,
    BillTemplateIn,
    BillTemplatePatch,
    OccurrenceFilters,
    PayOccurrenceIn,
)

logger = logging.getLogger(__name__)

TEMPLATE_LOOKBACK_DAYS = 45
TEMPLATE_LOOKAHEAD_DAYS = 180
AUTOPAY_WINDOW_DAYS = 60
MAX_PAGE_SIZE = 500


def _clamp_page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(limit, MAX_PAGE_SIZE)), max(0, offset)


def _get_household_row(session: Session, model, row_id: int, household_id: int):
    row = session.get(model, row_id)
    if not row or row.household_id != household_id:
        return None
    return row


class TemplateService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id

    def get(self, template_id: int) -> BillTemplate:
        template = _get_household_row(
            self.session, BillTemplate, template_id, self.household_id
        )
        if not template:
            raise NotFoundError("Bill template not found")
        return template

    def list(
        self,
        *,
        is_active: Optional[bool] = None,
        bill_type: Optional[BillType] = None,
        classification: Optional[BillClassification] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[BillTemplate], int]:
        limit, offset = _clamp_page(limit, offset)
        conditions = [BillTemplate.household_id == self.household_id]
        if is_active is not None:
            conditions.append(BillTemplate.is_active.is_(is_active))
        if bill_type is not None:
            conditions.append(BillTemplate.bill_type == bill_type)
        if classification is not None:
            conditions.append(BillTemplate.classification == classification)

        total = int(
            self.session.execute(
                select(func.count(BillTemplate.id)).where(*conditions)
            ).scalar_one()
        )
        stmt = (
            select(BillTemplate)
            .options(joinedload(BillTemplate.autopay_rule))
            .where(*conditions)
            .order_by(BillTemplate.name, BillTemplate.id)
            .limit(limit)
            .offset(offset)
        )
        return list(self.session.scalars(stmt).unique().all()), total

    def _check_links(self, values: dict) -> None:
        links = (
            ("category_id", Category, "Category not found"),
            ("merchant_id", Merchant, "Merchant not found"),
            ("payment_account_id", Account, "Payment account not found"),
            ("linked_liability_account_id", Account, "Liability account not found"),
        )
        for key, model, message in links:
            value = values.get(key)
            if value is None:
                continue
            if not _get_household_row(self.session, model, value, self.household_id):
                raise NotFoundError(message)
        liability_id = values.get("linked_liability_account_id")
        if liability_id is not None:
            account = self.session.get(Account, liability_id)
            if not account.is_liability:
                raise InvalidRequestError(
                    "Linked liability account must be a credit card, loan or line of credit"
                )

    @staticmethod
    def _check_cadence(values: dict) -> None:
        try:
            validate_cadence(
                values["recurrence_type"],
                due_day=values.get("recurrence_due_day"),
                due_weekday=values.get("recurrence_due_weekday"),
                specific_due_date=values.get("recurrence_specific_due_date"),
                start_month=values.get("recurrence_start_month"),
            )
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc

    def _ensure_upcoming(self, template: BillTemplate) -> None:
        today = local_today()
        OccurrenceEngine(self.session).ensure_template_occurrences(
            template,
            today - timedelta(days=TEMPLATE_LOOKBACK_DAYS),
            today + timedelta(days=TEMPLATE_LOOKAHEAD_DAYS),
        )

    def create(self, data: BillTemplateIn) -> BillTemplate:
        values = data.model_dump()
        self._check_cadence(values)
        self._check_links(values)
        template = BillTemplate(
            household_id=self.household_id,
            created_by_user_id=self.user_id or 0,
            **values,
        )
        self.session.add(template)
        self.session.flush()
        self._ensure_upcoming(template)
        self.session.commit()
        self.session.refresh(template)
        logger.info(
            f"bill_template_created: household_id={self.household_id} template_id={template.id}"
        )
        return template

    def update(self, template_id: int, patch: BillTemplatePatch) -> BillTemplate:
        template = self.get(template_id)
        changes = patch.model_dump(exclude_unset=True)
        merged = {
            "recurrence_type": template.recurrence_type,
            "recurrence_due_day": template.recurrence_due_day,
            "recurrence_due_weekday": template.recurrence_due_weekday,
            "recurrence_specific_due_date": template.recurrence_specific_due_date,
            "recurrence_start_month": template.recurrence_start_month,
        }
        merged.update(changes)
        if merged["recurrence_type"] is None:
            raise InvalidRequestError("recurrence_type cannot be null")
        self._check_cadence(merged)
        self._check_links(changes)
        for key in ("name", "bill_type", "default_amount_cents", "is_active"):
            if key in changes and changes[key] is None:
                raise InvalidRequestError(f"{key} cannot be null")

        for key, value in changes.items():
            setattr(template, key, value)
        self.session.flush()
        self._ensure_upcoming(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        self.session.execute(
            update(Transaction)
            .where(Transaction.bill_template_id == template.id)
            .values(bill_template_id=None)
        )
        self.session.execute(
            delete(BillOccurrenceAllocation).where(
                BillOccurrenceAllocation.template_id == template.id
            )
        )
        self.session.execute(
            delete(BillPaymentEvent).where(BillPaymentEvent.template_id == template.id)
        )
        self.session.execute(
            delete(BillOccurrence).where(BillOccurrence.template_id == template.id)
        )
        self.session.execute(
            delete(AutopayRule).where(AutopayRule.template_id == template.id)
        )
        self.session.expire(template, ["occurrences", "autopay_rule"])
        self.session.delete(template)
        self.session.commit()
        logger.info(
            f"bill_template_deleted: household_id={self.household_id} template_id={template_id}"
        )


class OccurrenceService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id

    def get(self, occurrence_id: int) -> BillOccurrence:
        stmt = (
            select(BillOccurrence)
            .options(
                joinedload(BillOccurrence.template),
                selectinload(BillOccurrence.allocations),
            )
            .where(
                BillOccurrence.id == occurrence_id,
                BillOccurrence.household_id == self.household_id,
            )
        )
        occurrence = self.session.scalars(stmt).unique().one_or_none()
        if not occurrence:
            raise NotFoundError("Occurrence not found")
        return occurrence

    def _prepare(
        self, start: date, end: date, today: date, bill_type: Optional[BillType] = None
    ) -> None:
        engine = OccurrenceEngine(self.session)
        engine.ensure_household(self.household_id, start, end, bill_type)
        engine.refresh_statuses(self.household_id, today)
        self.session.commit()

    def summary(self, period: Period, today: date) -> dict[str, object]:
        base = BillOccurrence.household_id == self.household_id

        overdue_count, overdue_cents = self.session.execute(
            select(
                func.count(BillOccurrence.id),
                func.coalesce(func.sum(BillOccurrence.amount_remaining_cents), 0),
            ).where(base, BillOccurrence.status == OccurrenceStatus.overdue)
        ).one()
        upcoming_count, upcoming_cents = self.session.execute(
            select(
                func.count(BillOccurrence.id),
                func.coalesce(func.sum(BillOccurrence.amount_remaining_cents), 0),
            ).where(
                base,
                BillOccurrence.status.in_(
                    [OccurrenceStatus.unpaid, OccurrenceStatus.partial]
                ),
                BillOccurrence.due_date >= today,
                BillOccurrence.due_date <= period.end,
            )
        ).one()
        next_due = self.session.execute(
            select(func.min(BillOccurrence.due_date)).where(
                base,
                BillOccurrence.status.in_(OUTSTANDING_STATUSES),
                BillOccurrence.due_date >= today,
            )
        ).scalar_one()
        paid_count, paid_cents = self.session.execute(
            select(
                func.count(BillOccurrence.id),
                func.coalesce(func.sum(BillOccurrence.amount_paid_cents), 0),
            ).where(
                base,
                BillOccurrence.status.in_(SETTLED_STATUSES),
                BillOccurrence.paid_date.between(period.start, period.end),
            )
        ).one()
        return {
            "overdue_count": int(overdue_count),
            "overdue_amount_cents": int(overdue_cents or 0),
            "upcoming_count": int(upcoming_count),
            "upcoming_amount_cents": int(upcoming_cents or 0),
            "next_due_date": next_due,
            "paid_this_period_count": int(paid_count),
            "paid_this_period_amount_cents": int(paid_cents or 0),
        }

    def list(
        self, filters: OccurrenceFilters, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        try:
            period = resolve_period(
                filters.period, filters.start, filters.end, today=today
            )
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
        limit, offset = _clamp_page(filters.limit, filters.offset)
        self._prepare(period.start, period.end, today, filters.bill_type)

        conditions = [
            BillOccurrence.household_id == self.household_id,
            BillOccurrence.due_date.between(period.start, period.end),
        ]
        if filters.status:
            conditions.append(BillOccurrence.status.in_(filters.status))
        stmt = select(BillOccurrence).where(*conditions)
        count_stmt = select(func.count(BillOccurrence.id)).where(*conditions)
        if filters.bill_type is not None:
            stmt = stmt.join(BillTemplate).where(
                BillTemplate.bill_type == filters.bill_type
            )
            count_stmt = count_stmt.join(BillTemplate).where(
                BillTemplate.bill_type == filters.bill_type
            )
        stmt = (
            stmt.options(
                joinedload(BillOccurrence.template),
                selectinload(BillOccurrence.allocations),
            )
            .order_by(BillOccurrence.due_date, BillOccurrence.id)
            .limit(limit)
            .offset(offset)
        )
        items = list(self.session.scalars(stmt).unique().all())
        total = int(self.session.execute(count_stmt).scalar_one())
        return {
            "items": items,
            "total": total,
            "period": period,
            "summary": self.summary(period, today),
        }

    def dashboard_summary(self, today: Optional[date] = None) -> dict[str, object]:
        today = today or local_today()
        period = current_month(today)
        self._prepare(
            min(period.start, today - timedelta(days=TEMPLATE_LOOKBACK_DAYS)),
            max(period.end, today + timedelta(days=30)),
            today,
        )
        data = self.summary(period, today)
        data["active_template_count"] = int(
            self.session.execute(
                select(func.count(BillTemplate.id)).where(
                    BillTemplate.household_id == self.household_id,
                    BillTemplate.is_active.is_(True),
                )
            ).scalar_one()
        )
        data["period_start"] = period.start
        data["period_end"] = period.end
        return data

    def skip(self, occurrence_id: int, notes: Optional[str] = None) -> BillOccurrence:
        occurrence = self.get(occurrence_id)
        if occurrence.status in SETTLED_STATUSES:
            raise ConflictError("Paid occurrences cannot be skipped")
        occurrence.status = OccurrenceStatus.skipped
        occurrence.is_manual_override = True
        occurrence.days_late = 0
        if notes is not None:
            occurrence.notes = notes
        self.session.commit()
        return occurrence

    def reset(self, occurrence_id: int, today: Optional[date] = None) -> BillOccurrence:
        today = today or local_today()
        occurrence = self.get(occurrence_id)
        occurrence.amount_paid_cents = 0
        occurrence.amount_remaining_cents = occurrence.amount_due_cents
        occurrence.actual_amount_cents = None
        occurrence.paid_date = None
        occurrence.last_transaction_id = None
        occurrence.is_manual_override = False
        occurrence.status = derive_status(
            occurrence.amount_due_cents, 0, occurrence.due_date, today
        )
        if occurrence.status == OccurrenceStatus.overdue:
            occurrence.days_late = (today - occurrence.due_date).days
        else:
            occurrence.days_late = 0
        for allocation in occurrence.allocations:
            allocation.paid_amount_cents = 0
            allocation.is_paid = False
            allocation.payment_event_id = None
        self.session.commit()
        return occurrence

    def delete(self, occurrence_id: int) -> None:
        occurrence = self.get(occurrence_id)
        self.session.execute(
            delete(BillOccurrenceAllocation).where(
                BillOccurrenceAllocation.occurrence_id == occurrence.id
            )
        )
        self.session.execute(
            delete(BillPaymentEvent).where(
                BillPaymentEvent.occurrence_id == occurrence.id
            )
        )
        self.session.expire(occurrence, ["allocations"])
        self.session.delete(occurrence)
        self.session.commit()

    def payments(self, occurrence_id: int) -> list[BillPaymentEvent]:
        occurrence = self.get(occurrence_id)
        stmt = (
            select(BillPaymentEvent)
            .where(BillPaymentEvent.occurrence_id == occurrence.id)
            .order_by(BillPaymentEvent.payment_date, BillPaymentEvent.id)
        )
        return list(self.session.scalars(stmt).all())


@dataclass
class PaymentResult:
    occurrence: BillOccurrence
    event: BillPaymentEvent
    allocations: list[BillOccurrenceAllocation]
    replayed: bool = False


def _debit(account: Account, amount_cents: int) -> None:
    # Liability balances are amounts owed, so spending from one increases it.
    if account.is_liability:
        account.balance_cents += amount_cents
    else:
        account.balance_cents -= amount_cents


def _credit(account: Account, amount_cents: int) -> None:
    if account.is_liability:
        account.balance_cents -= amount_cents
    else:
        account.balance_cents += amount_cents


class PaymentService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id

    def _replay(
        self, occurrence_id: int, idempotency_key: str
    ) -> Optional[PaymentResult]:
        event = self.session.scalar(
            select(BillPaymentEvent).where(
                BillPaymentEvent.household_id == self.household_id,
                BillPaymentEvent.idempotency_key == idempotency_key,
            )
        )
        if not event:
            return None
        if event.occurrence_id != occurrence_id:
            raise ConflictError("Idempotency key was already used for another occurrence")
        occurrence = OccurrenceService(self.session, self.household_id).get(
            occurrence_id
        )
        return PaymentResult(
            occurrence=occurrence,
            event=event,
            allocations=list(occurrence.allocations),
            replayed=True,
        )

    def _split_principal(self, data: PayOccurrenceIn, amount: int) -> tuple[int, int]:
        if data.principal_cents is None and data.interest_cents is None:
            return amount, 0
        principal = data.principal_cents or 0
        interest = data.interest_cents or 0
        if principal + interest != amount:
            raise InvalidRequestError(
                "Principal and interest must add up to the payment amount"
            )
        return principal, interest

    def _check_splits(
        self, occurrence: BillOccurrence, data: PayOccurrenceIn, amount: int
    ) -> None:
        if data.allocation_splits is None:
            if data.allocation_id is not None and not any(
                a.id == data.allocation_id for a in occurrence.allocations
            ):
                raise NotFoundError("Allocation not found")
            return
        if not data.allocation_splits:
            raise InvalidRequestError("allocation_splits cannot be empty")
        known = {a.id for a in occurrence.allocations}
        seen: set[int] = set()
        for split in data.allocation_splits:
            if split.allocation_id not in known:
                raise InvalidRequestError(
                    f"Allocation {split.allocation_id} does not belong to this occurrence"
                )
            if split.allocation_id in seen:
                raise InvalidRequestError("Allocation splits must be unique")
            seen.add(split.allocation_id)
        if sum(split.amount_cents for split in data.allocation_splits) != amount:
            raise InvalidRequestError(
                "Allocation splits must add up to the payment amount"
            )

    def _post_ledger(
        self,
        template: BillTemplate,
        source: Account,
        amount: int,
        principal: int,
        payment_date: date,
        notes: Optional[str],
    ) -> tuple[Transaction, Optional[int], Optional[int]]:
        """Write ledger rows and move balances; returns the source-side row and balance before/after."""
        common = {
            "household_id": self.household_id,
            "user_id": self.user_id or template.created_by_user_id,
            "date": payment_date,
            "amount_cents": amount,
            "notes": notes,
            "bill_template_id": template.id,
            "category_id": template.category_id,
            "merchant_id": template.merchant_id,
        }

        if template.bill_type == BillType.income:
            txn = Transaction(
                account_id=source.id,
                type=TransactionType.income,
                description=f"Bill income: {template.name}",
                **common,
            )
            before = source.balance_cents
            _credit(source, amount)
            self.session.add(txn)
            return txn, before, source.balance_cents

        liability = None
        if template.linked_liability_account_id is not None:
            liability = _get_household_row(
                self.session,
                Account,
                template.linked_liability_account_id,
                self.household_id,
            )
            if not liability:
                raise NotFoundError(
                    "Liability account not found",
                    code=AutopayErrorCode.account_not_found,
                )

        if liability is not None and liability.id != source.id:
            group = uuid.uuid4().hex
            out_txn = Transaction(
                account_id=source.id,
                type=TransactionType.transfer_out,
                description=f"Payment to {liability.name}: {template.name}",
                transfer_group=group,
                **common,
            )
            in_txn = Transaction(
                account_id=liability.id,
                type=TransactionType.transfer_in,
                description=f"Payment from {source.name}: {template.name}",
                transfer_group=group,
                **common,
            )
            _debit(source, amount)
            before = liability.balance_cents
            liability.balance_cents = max(0, before - principal)
            self.session.add_all([out_txn, in_txn])
            return out_txn, before, liability.balance_cents

        txn = Transaction(
            account_id=source.id,
            type=TransactionType.expense,
            description=f"Bill payment: {template.name}",
            **common,
        )
        self.session.add(txn)
        if template.debt_enabled and template.debt_remaining_balance_cents is not None:
            before = template.debt_remaining_balance_cents
            template.debt_remaining_balance_cents = max(0, before - principal)
            _debit(source, amount)
            return txn, before, template.debt_remaining_balance_cents
        before = source.balance_cents
        _debit(source, amount)
        return txn, before, source.balance_cents

    def _apply_allocations(
        self,
        occurrence: BillOccurrence,
        data: PayOccurrenceIn,
        amount: int,
        event: BillPaymentEvent,
    ) -> list[BillOccurrenceAllocation]:
        by_id = {a.id: a for a in occurrence.allocations}
        plan: list[tuple[BillOccurrenceAllocation, int]] = []
        if data.allocation_splits:
            plan = [(by_id[s.allocation_id], s.amount_cents) for s in data.allocation_splits]
        else:
            ordered = sorted(occurrence.allocations, key=lambda a: a.period_number)
            if data.allocation_id is not None:
                first = by_id[data.allocation_id]
                ordered = [first] + [a for a in ordered if a.id != first.id]
            left = amount
            for allocation in ordered:
                if left <= 0:
                    break
                take = min(left, allocation.remaining_cents)
                if take <= 0:
                    continue
                plan.append((allocation, take))
                left -= take

        touched: list[BillOccurrenceAllocation] = []
        for allocation, portion in plan:
            allocation.paid_amount_cents += portion
            allocation.is_paid = (
                allocation.paid_amount_cents >= allocation.allocated_amount_cents
            )
            allocation.payment_event_id = event.id
            touched.append(allocation)
        return touched

    def pay_occurrence(
        self,
        occurrence_id: int,
        data: PayOccurrenceIn,
        *,
        method: Optional[PaymentMethod] = None,
        today: Optional[date] = None,
    ) -> PaymentResult:
        today = today or local_today()
        method = method or data.payment_method
        if data.idempotency_key:
            replay = self._replay(occurrence_id, data.idempotency_key)
            if replay:
                return replay

        occurrence = OccurrenceService(self.session, self.household_id).get(
            occurrence_id
        )
        if occurrence.status == OccurrenceStatus.skipped:
            raise ConflictError("Skipped occurrences cannot be paid; reset it first")
        if method == PaymentMethod.autopay and occurrence.status in SETTLED_STATUSES:
            raise AlreadyPaidError()

        source = _get_household_row(
            self.session, Account, data.account_id, self.household_id
        )
        if not source:
            raise NotFoundError(
                "Account not found", code=AutopayErrorCode.account_not_found
            )

        amount = (
            data.amount_cents
            if data.amount_cents is not None
            else occurrence.amount_remaining_cents
        )
        if amount <= 0:
            raise InvalidRequestError(
                "Payment amount must be greater than zero",
                code=AutopayErrorCode.zero_amount,
            )
        self._check_splits(occurrence, data, amount)
        principal, interest = self._split_principal(data, amount)

        template = occurrence.template
        payment_date = data.payment_date or today
        txn, balance_before, balance_after = self._post_ledger(
            template, source, amount, principal, payment_date, data.notes
        )
        source.usage_count += 1
        source.last_used_at = datetime.utcnow()
        self.session.flush()

        event = BillPaymentEvent(
            household_id=self.household_id,
            template_id=template.id,
            occurrence_id=occurrence.id,
            transaction_id=txn.id,
            amount_cents=amount,
            principal_cents=principal,
            interest_cents=interest,
            balance_before_cents=balance_before,
            balance_after_cents=balance_after,
            payment_date=payment_date,
            payment_method=method,
            source_account_id=source.id,
            idempotency_key=data.idempotency_key,
            notes=data.notes,
        )
        self.session.add(event)
        self.session.flush()

        paid = occurrence.amount_paid_cents + amount
        occurrence.amount_paid_cents = paid
        occurrence.amount_remaining_cents = remaining_cents(
            occurrence.amount_due_cents, paid
        )
        occurrence.actual_amount_cents = paid
        occurrence.last_transaction_id = txn.id
        occurrence.status = derive_status(
            occurrence.amount_due_cents, paid, occurrence.due_date, today
        )
        if occurrence.status in SETTLED_STATUSES:
            occurrence.paid_date = payment_date
            occurrence.days_late = max(0, (payment_date - occurrence.due_date).days)
        else:
            occurrence.paid_date = None

        touched = self._apply_allocations(occurrence, data, amount, event)

        if template.is_one_time and occurrence.status in SETTLED_STATUSES:
            template.is_active = False
            logger.info(f"one_time_template_deactivated: template_id={template.id}")

        self.session.commit()
        logger.info(
            f"bill_payment_recorded: household_id={self.household_id} "
            f"occurrence_id={occurrence.id} amount_cents={amount} "
            f"method={method.value} status={occurrence.status.value}"
        )
        return PaymentResult(occurrence=occurrence, event=event, allocations=touched)


class AllocationService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id

    def _occurrence(self, occurrence_id: int) -> BillOccurrence:
        return OccurrenceService(self.session, self.household_id).get(occurrence_id)

    def list(self, occurrence_id: int) -> list[BillOccurrenceAllocation]:
        return list(self._occurrence(occurrence_id).allocations)

    def replace(
        self, occurrence_id: int, allocations: list[AllocationIn]
    ) -> list[BillOccurrenceAllocation]:
        occurrence = self._occurrence(occurrence_id)
        if occurrence.amount_paid_cents > 0 or any(
            a.paid_amount_cents > 0 or a.is_paid for a in occurrence.allocations
        ):
            raise ConflictError("Allocations cannot change after payments have started")
        if not allocations:
            raise InvalidRequestError("At least one allocation is required")

        periods: set[int] = set()
        for item in allocations:
            if item.period_number < 1:
                raise InvalidRequestError("period_number must be at least 1")
            if item.allocated_amount_cents < 0:
                raise InvalidRequestError("Allocated amounts cannot be negative")
            if item.period_number in periods:
                raise InvalidRequestError(
                    f"Duplicate period_number {item.period_number}"
                )
            periods.add(item.period_number)
        total = sum(item.allocated_amount_cents for item in allocations)
        if total != occurrence.amount_due_cents:
            raise InvalidRequestError(
                f"Allocations total {total} does not match amount due "
                f"{occurrence.amount_due_cents}"
            )

        self.session.execute(
            delete(BillOccurrenceAllocation).where(
                BillOccurrenceAllocation.occurrence_id == occurrence.id
            )
        )
        self.session.flush()
        self.session.expire(occurrence, ["allocations"])
        for item in allocations:
            self.session.add(
                BillOccurrenceAllocation(
                    occurrence_id=occurrence.id,
                    template_id=occurrence.template_id,
                    household_id=self.household_id,
                    period_number=item.period_number,
                    allocated_amount_cents=item.allocated_amount_cents,
                    paid_amount_cents=0,
                    is_paid=False,
                )
            )
        self.session.commit()
        return list(occurrence.allocations)

    def delete(self, occurrence_id: int, allocation_id: int) -> None:
        occurrence = self._occurrence(occurrence_id)
        allocation = next(
            (a for a in occurrence.allocations if a.id == allocation_id), None
        )
        if not allocation:
            raise NotFoundError("Allocation not found")
        if allocation.is_paid or allocation.paid_amount_cents > 0:
            raise ConflictError("Cannot delete a paid allocation")
        self.session.delete(allocation)
        self.session.commit()
        self.session.expire(occurrence, ["allocations"])

    def clear(self, occurrence_id: int) -> None:
        occurrence = self._occurrence(occurrence_id)
        if any(a.is_paid or a.paid_amount_cents > 0 for a in occurrence.allocations):
            raise ConflictError("Cannot delete paid allocations")
        for allocation in list(occurrence.allocations):
            self.session.delete(allocation)
        self.session.commit()
        self.session.expire(occurrence, ["allocations"])


@dataclass
class AutopayAttempt:
    template_id: Optional[int]
    template_name: Optional[str]
    occurrence_id: Optional[int]
    due_date: Optional[date]
    success: bool
    amount_cents: int = 0
    error_code: Optional[AutopayErrorCode] = None
    message: Optional[str] = None
    payment_event_id: Optional[int] = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["error_code"] = self.error_code.value if self.error_code else None
        return data


@dataclass
class AutopayRunResult:
    run: AutopayRun
    attempts: list[AutopayAttempt] = field(default_factory=list)


class AutopayService:
    def __init__(
        self, session: Session, household_id: int, user_id: Optional[int] = None
    ) -> None:
        self.session = session
        self.household_id = household_id
        self.user_id = user_id
        self.notifications = NotificationService(session, household_id)

    def get_rule(self, template_id: int) -> Optional[AutopayRule]:
        template = TemplateService(self.session, self.household_id).get(template_id)
        return self.session.scalar(
            select(AutopayRule).where(AutopayRule.template_id == template.id)
        )

    def upsert_rule(self, template_id: int, data: AutopayRuleIn) -> AutopayRule:
        template = TemplateService(self.session, self.household_id).get(template_id)
        if data.pay_from_account_id is not None and not _get_household_row(
            self.session, Account, data.pay_from_account_id, self.household_id
        ):
            raise NotFoundError("Account not found")
        if data.amount_type == AutopayAmountType.fixed and data.fixed_amount_cents is None:
            raise InvalidRequestError("fixed_amount_cents is required for fixed autopay")
        self.session.execute(
            delete(AutopayRule).where(AutopayRule.template_id == template.id)
        )
        self.session.flush()
        rule = AutopayRule(
            template_id=template.id,
            household_id=self.household_id,
            **data.model_dump(),
        )
        self.session.add(rule)
        self.session.commit()
        self.session.expire(template, ["autopay_rule"])
        self.session.refresh(rule)
        return rule

    def delete_rule(self, template_id: int) -> None:
        template = TemplateService(self.session, self.household_id).get(template_id)
        result = self.session.execute(
            delete(AutopayRule).where(AutopayRule.template_id == template.id)
        )
        if not result.rowcount:
            raise NotFoundError("Autopay rule not found")
        self.session.commit()
        self.session.expire(template, ["autopay_rule"])

    @staticmethod
    def calculate_amount(
        rule: AutopayRule,
        occurrence: BillOccurrence,
        linked_account: Optional[Account] = None,
    ) -> int:
        remaining = occurrence.amount_remaining_cents
        if rule.amount_type == AutopayAmountType.fixed:
            return min(rule.fixed_amount_cents or 0, remaining)
        if linked_account is not None:
            if rule.amount_type == AutopayAmountType.minimum_payment:
                if linked_account.minimum_payment_cents is not None:
                    return linked_account.minimum_payment_cents
            elif rule.amount_type == AutopayAmountType.statement_balance:
                if linked_account.statement_balance_cents is not None:
                    return linked_account.statement_balance_cents
            elif rule.amount_type == AutopayAmountType.full_balance:
                return linked_account.balance_cents
        return remaining

    @staticmethod
    def _has_funds(account: Account, amount: int) -> bool:
        if account.is_liability:
            if account.credit_limit_cents is None:
                return True
            return account.credit_limit_cents - account.balance_cents >= amount
        return account.balance_cents >= amount

    def attempt(
        self,
        occurrence: Optional[BillOccurrence],
        template: Optional[BillTemplate],
        rule: Optional[AutopayRule],
        run_date: date,
        dry_run: bool = False,
    ) -> AutopayAttempt:
        result = AutopayAttempt(
            template_id=template.id if template else None,
            template_name=template.name if template else None,
            occurrence_id=occurrence.id if occurrence else None,
            due_date=occurrence.due_date if occurrence else None,
            success=False,
            dry_run=dry_run,
        )

        def fail(code: AutopayErrorCode, message: str) -> AutopayAttempt:
            result.error_code = code
            result.message = message
            return result

        if occurrence is None:
            return fail(AutopayErrorCode.instance_not_found, "Occurrence not found")
        if occurrence.status in SETTLED_STATUSES:
            return fail(AutopayErrorCode.already_paid, "Occurrence is already paid")
        if template is None or not template.is_active:
            return fail(AutopayErrorCode.bill_not_found, "Bill not found or inactive")
        if rule is None or not rule.is_enabled:
            return fail(
                AutopayErrorCode.invalid_configuration,
                "Autopay is not enabled for this bill",
            )
        if rule.pay_from_account_id is None:
            return fail(
                AutopayErrorCode.invalid_configuration, "No pay-from account configured"
            )
        if rule.amount_type == AutopayAmountType.fixed and rule.fixed_amount_cents is None:
            return fail(
                AutopayErrorCode.invalid_configuration, "Fixed amount is not configured"
            )
        account = _get_household_row(
            self.session, Account, rule.pay_from_account_id, self.household_id
        )
        if not account:
            return fail(AutopayErrorCode.account_not_found, "Pay-from account not found")
        linked = None
        if template.linked_liability_account_id is not None:
            linked = _get_household_row(
                self.session,
                Account,
                template.linked_liability_account_id,
                self.household_id,
            )

        amount = self.calculate_amount(rule, occurrence, linked)
        if amount <= 0:
            return fail(AutopayErrorCode.zero_amount, "Calculated amount is zero")
        result.amount_cents = amount
        if not self._has_funds(account, amount):
            return fail(
                AutopayErrorCode.insufficient_funds,
                f"{account.name} does not have enough available funds",
            )

        if dry_run:
            result.success = True
            result.message = "Dry run: payment would be submitted"
            return result

        payment = PaymentService(self.session, self.household_id, self.user_id)
        try:
            paid = payment.pay_occurrence(
                occurrence.id,
                PayOccurrenceIn(
                    account_id=account.id,
                    amount_cents=amount,
                    payment_date=run_date,
                    notes="Autopay",
                    idempotency_key=f"autopay:{occurrence.id}:{run_date.isoformat()}",
                ),
                method=PaymentMethod.autopay,
                today=run_date,
            )
        except BillsError as exc:
            self.session.rollback()
            return fail(exc.code or AutopayErrorCode.invalid_configuration, exc.message)
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                f"autopay_attempt_error: household_id={self.household_id} "
                f"occurrence_id={result.occurrence_id}"
            )
            return fail(AutopayErrorCode.system_error, str(exc) or "Unexpected error")

        if paid.replayed:
            return fail(
                AutopayErrorCode.already_paid, "Autopay already ran for this date"
            )
        result.success = True
        result.payment_event_id = paid.event.id
        result.message = "Payment submitted"
        return result

    def _notify(self, attempt: AutopayAttempt, user_id: int) -> None:
        if attempt.success:
            self.notifications.autopay_success(user_id, attempt)
        else:
            self.notifications.autopay_failed(user_id, attempt)

    def _candidates(
        self, template: BillTemplate, target_due: date, run_date: date, dry_run: bool
    ) -> list[BillOccurrence]:
        engine = OccurrenceEngine(self.session)
        start = run_date - timedelta(days=AUTOPAY_WINDOW_DAYS)
        end = run_date + timedelta(days=AUTOPAY_WINDOW_DAYS)
        previews: list[BillOccurrence] = []
        if dry_run:
            previews = engine.preview_template_occurrences(template, start, end)
        else:
            engine.ensure_template_occurrences(template, start, end)
        stored = self.session.scalars(
            select(BillOccurrence)
            .where(
                BillOccurrence.template_id == template.id,
                BillOccurrence.due_date == target_due,
            )
            .order_by(BillOccurrence.id)
        ).all()
        return list(stored) + [o for o in previews if o.due_date == target_due]

    def run(
        self,
        run_date: Optional[date] = None,
        run_type: AutopayRunType = AutopayRunType.manual,
        dry_run: bool = False,
    ) -> AutopayRunResult:
        run_date = run_date or local_today()
        dry_run = dry_run or run_type == AutopayRunType.dry_run
        if dry_run:
            run_type = AutopayRunType.dry_run
        run = AutopayRun(
            household_id=self.household_id,
            run_date=run_date,
            run_type=run_type,
            status=AutopayRunStatus.started,
        )
        self.session.add(run)
        self.session.commit()
        run_id = run.id

        attempts: list[AutopayAttempt] = []
        counts = {"processed": 0, "success": 0, "failed": 0, "skipped": 0}
        total = 0
        try:
            rules = self.session.scalars(
                select(AutopayRule)
                .join(BillTemplate, AutopayRule.template_id == BillTemplate.id)
                .where(
                    AutopayRule.household_id == self.household_id,
                    AutopayRule.is_enabled.is_(True),
                    BillTemplate.is_active.is_(True),
                )
                .order_by(AutopayRule.id)
            ).all()
            for rule in list(rules):
                template = rule.template
                target_due = run_date + timedelta(days=rule.days_before_due)
                occurrences = self._candidates(template, target_due, run_date, dry_run)
                if not dry_run:
                    self.session.commit()
                for occurrence in occurrences:
                    counts["processed"] += 1
                    if occurrence.status == OccurrenceStatus.skipped:
                        counts["skipped"] += 1
                        continue
                    attempt = self.attempt(occurrence, template, rule, run_date, dry_run)
                    attempts.append(attempt)
                    if attempt.success:
                        counts["success"] += 1
                        total += attempt.amount_cents
                    else:
                        counts["failed"] += 1
                    if not dry_run:
                        self._notify(attempt, template.created_by_user_id)
                        self.session.commit()
        except Exception as exc:
            self.session.rollback()
            logger.exception(
                f"autopay_run_error: household_id={self.household_id} run_id={run_id}"
            )
            failures = [a.to_dict() for a in attempts if not a.success]
            failures.append(
                {"error_code": AutopayErrorCode.system_error.value, "message": str(exc)}
            )
            self._finish(run_id, counts, total, failures, AutopayRunStatus.failed)
            raise

        failures = [a.to_dict() for a in attempts if not a.success]
        status = (
            AutopayRunStatus.failed if counts["failed"] else AutopayRunStatus.completed
        )
        run = self._finish(run_id, counts, total, failures, status)
        logger.info(
            f"autopay_run_finished: household_id={self.household_id} run_id={run.id} "
            f"run_type={run.run_type.value} processed={counts['processed']} "
            f"success={counts['success']} failed={counts['failed']} "
            f"skipped={counts['skipped']}"
        )
        return AutopayRunResult(run=run, attempts=attempts)

    def _finish(
        self,
        run_id: int,
        counts: dict[str, int],
        total: int,
        failures: list[dict],
        status: AutopayRunStatus,
    ) -> AutopayRun:
        run = self.session.get(AutopayRun, run_id)
        run.processed_count = counts["processed"]
        run.success_count = counts["success"]
        run.failed_count = counts["failed"]
        run.skipped_count = counts["skipped"]
        run.total_amount_cents = total
        run.error_summary = json.dumps(failures, default=str) if failures else None
        run.status = status
        run.completed_at = datetime.utcnow()
        self.session.commit()
        return run

    def attempt_single(
        self,
        occurrence_id: int,
        run_date: Optional[date] = None,
        dry_run: bool = False,
    ) -> AutopayAttempt:
        run_date = run_date or local_today()
        occurrence = self.session.get(BillOccurrence, occurrence_id)
        if not occurrence or occurrence.household_id != self.household_id:
            raise NotFoundError(
                "Occurrence not found", code=AutopayErrorCode.instance_not_found
            )
        template = occurrence.template
        rule = template.autopay_rule if template else None
        attempt = self.attempt(occurrence, template, rule, run_date, dry_run)
        if not dry_run and template is not None:
            self._notify(attempt, template.created_by_user_id)
            self.session.commit()
        return attempt

    def list_runs(self, limit: int = 20) -> list[AutopayRun]:
        limit, _ = _clamp_page(limit, 0)
        stmt = (
            select(AutopayRun)
            .where(AutopayRun.household_id == self.household_id)
            .order_by(AutopayRun.started_at.desc(), AutopayRun.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())


@dataclass
class BillMatch:
    occurrence: BillOccurrence
    confidence: int
    name_score: int
    amount_score: int
    date_score: int


class BillMatchService:
    NAME_POINTS = 60
    AMOUNT_POINTS = 30
    DATE_POINTS = 10
    DATE_WINDOW_DAYS = 10

    def __init__(self, session: Session, household_id: int) -> None:
        self.session = session
        self.household_id = household_id

    def _name_score(self, description: str, template: BillTemplate) -> int:
        similarity = fuzz.token_set_ratio(
            description, template.name, processor=fuzz_utils.default_process
        )
        return round(similarity * self.NAME_POINTS / 100)

    def _amount_score(self, amount_cents: int, occurrence: BillOccurrence) -> int:
        expected = occurrence.amount_remaining_cents or occurrence.amount_due_cents
        if expected <= 0:
            return 0
        diff = abs(amount_cents - expected)
        tolerance = expected * occurrence.template.amount_tolerance_bps // 10000
        if diff == 0:
            return self.AMOUNT_POINTS
        if diff <= tolerance:
            # Linear falloff inside the tolerance band, never below half credit.
            return max(
                self.AMOUNT_POINTS // 2,
                round(self.AMOUNT_POINTS * (1 - diff / max(tolerance, 1))),
            )
        return 0

    def _date_score(self, when: date, occurrence: BillOccurrence) -> int:
        distance = abs((when - occurrence.due_date).days)
        if distance > self.DATE_WINDOW_DAYS:
            return 0
        return round(self.DATE_POINTS * (1 - distance / self.DATE_WINDOW_DAYS))

    def candidates(self) -> list[BillOccurrence]:
        stmt = (
            select(BillOccurrence)
            .join(BillTemplate, BillOccurrence.template_id == BillTemplate.id)
            .options(joinedload(BillOccurrence.template))
            .where(
                BillOccurrence.household_id == self.household_id,
                BillOccurrence.status.in_(OUTSTANDING_STATUSES),
                BillTemplate.is_active.is_(True),
                BillTemplate.bill_type == BillType.expense,
            )
            .order_by(BillOccurrence.due_date)
        )
        return list(self.session.scalars(stmt).unique().all())

    def score(
        self, description: str, amount_cents: int, when: date, occurrence: BillOccurrence
    ) -> BillMatch:
        name = self._name_score(description, occurrence.template)
        amount = self._amount_score(amount_cents, occurrence)
        proximity = self._date_score(when, occurrence)
        return BillMatch(
            occurrence=occurrence,
            confidence=name + amount + proximity,
            name_score=name,
            amount_score=amount,
            date_score=proximity,
        )

    def find_match(
        self,
        description: str,
        amount_cents: int,
        when: date,
        min_confidence: int = 70,
    ) -> Optional[BillMatch]:
        best: Optional[BillMatch] = None
        for occurrence in self.candidates():
            match = self.score(description, amount_cents, when, occurrence)
            if match.confidence < min_confidence:
                continue
            if best is None or match.confidence > best.confidence:
                best = match
        return best
