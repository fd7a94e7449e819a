import datetime as dt
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AutopayAmountType,
    AutopayRunType,
    BillClassification,
    BillType,
    OccurrenceStatus,
    PaymentMethod,
    RecurrenceType,
)


class BillTemplateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    is_active: bool = True
    bill_type: BillType
    classification: BillClassification = BillClassification.other
    classification_subcategory: Optional[str] = Field(default=None, max_length=100)
    recurrence_type: RecurrenceType
    recurrence_due_day: Optional[int] = None
    recurrence_due_weekday: Optional[int] = None
    recurrence_specific_due_date: Optional[date] = None
    recurrence_start_month: Optional[int] = None
    default_amount_cents: int = Field(..., ge=0)
    is_variable_amount: bool = False
    amount_tolerance_bps: int = Field(default=500, ge=0)
    category_id: Optional[int] = None
    merchant_id: Optional[int] = None
    payment_account_id: Optional[int] = None
    linked_liability_account_id: Optional[int] = None
    auto_mark_paid: bool = True
    notes: Optional[str] = None
    debt_enabled: bool = False
    debt_original_balance_cents: Optional[int] = Field(default=None, ge=0)
    debt_remaining_balance_cents: Optional[int] = Field(default=None, ge=0)
    debt_interest_apr_bps: Optional[int] = Field(default=None, ge=0)
    budget_period_assignment: Optional[int] = Field(default=None, ge=1)


class BillTemplatePatch(BaseModel):
    """Partial update; only fields present in the request body are applied."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    bill_type: Optional[BillType] = None
    classification: Optional[BillClassification] = None
    classification_subcategory: Optional[str] = Field(default=None, max_length=100)
    recurrence_type: Optional[RecurrenceType] = None
    recurrence_due_day: Optional[int] = None
    recurrence_due_weekday: Optional[int] = None
    recurrence_specific_due_date: Optional[date] = None
    recurrence_start_month: Optional[int] = None
    default_amount_cents: Optional[int] = Field(default=None, ge=0)
    is_variable_amount: Optional[bool] = None
    amount_tolerance_bps: Optional[int] = Field(default=None, ge=0)
    category_id: Optional[int] = None
    merchant_id: Optional[int] = None
    payment_account_id: Optional[int] = None
    linked_liability_account_id: Optional[int] = None
    auto_mark_paid: Optional[bool] = None
    notes: Optional[str] = None
    debt_enabled: Optional[bool] = None
    debt_original_balance_cents: Optional[int] = Field(default=None, ge=0)
    debt_remaining_balance_cents: Optional[int] = Field(default=None, ge=0)
    debt_interest_apr_bps: Optional[int] = Field(default=None, ge=0)
    budget_period_assignment: Optional[int] = Field(default=None, ge=1)


class AllocationSplitIn(BaseModel):
    allocation_id: int
    amount_cents: int = Field(..., gt=0)


class PayOccurrenceIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    amount_cents: Optional[int] = None
    payment_date: Optional[date] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    allocation_id: Optional[int] = None
    allocation_splits: Optional[list[AllocationSplitIn]] = None
    principal_cents: Optional[int] = Field(default=None, ge=0)
    interest_cents: Optional[int] = Field(default=None, ge=0)
    idempotency_key: Optional[str] = Field(default=None, max_length=120)
    payment_method: PaymentMethod = PaymentMethod.manual


class SkipOccurrenceIn(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class AllocationIn(BaseModel):
    period_number: int
    allocated_amount_cents: int


class AllocationsIn(BaseModel):
    allocations: list[AllocationIn]


class AutopayRuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    is_enabled: bool = True
    pay_from_account_id: Optional[int] = None
    amount_type: AutopayAmountType = AutopayAmountType.fixed
    fixed_amount_cents: Optional[int] = Field(default=None, ge=0)
    days_before_due: int = Field(default=0, ge=0, le=60)


class AutopayRunIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_date: Optional[date] = Field(default=None, alias="runDate")
    run_type: AutopayRunType = Field(default=AutopayRunType.manual, alias="runType")
    dry_run: bool = Field(default=False, alias="dryRun")


class OccurrenceFilters(BaseModel):
    status: Optional[list[OccurrenceStatus]] = None
    start: Optional[date] = None
    end: Optional[date] = None
    period: Optional[Literal["this_month", "last_month", "next_month", "custom"]] = None
    bill_type: Optional[BillType] = None
    limit: int = 50
    offset: int = 0


class BillMatchIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., ge=0)
    date: dt.date
    min_confidence: int = Field(default=70, ge=0, le=100)
