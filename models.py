from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class MemberRole(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"
    viewer = "viewer"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    cash = "cash"
    credit_card = "credit_card"
    loan = "loan"
    line_of_credit = "line_of_credit"


LIABILITY_ACCOUNT_TYPES = frozenset(
    {AccountType.credit_card, AccountType.loan, AccountType.line_of_credit}
)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer_in = "transfer_in"
    transfer_out = "transfer_out"


class BillType(str, Enum):
    expense = "expense"
    income = "income"
    savings_transfer = "savings_transfer"


class BillClassification(str, Enum):
    subscription = "subscription"
    utility = "utility"
    housing = "housing"
    insurance = "insurance"
    loan_payment = "loan_payment"
    membership = "membership"
    service = "service"
    other = "other"


class RecurrenceType(str, Enum):
    one_time = "one_time"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    semi_annual = "semi_annual"
    annual = "annual"


class OccurrenceStatus(str, Enum):
    unpaid = "unpaid"
    partial = "partial"
    paid = "paid"
    overpaid = "overpaid"
    overdue = "overdue"
    skipped = "skipped"


OUTSTANDING_STATUSES = (
    OccurrenceStatus.unpaid,
    OccurrenceStatus.partial,
    OccurrenceStatus.overdue,
)
SETTLED_STATUSES = (OccurrenceStatus.paid, OccurrenceStatus.overpaid)


class PaymentMethod(str, Enum):
    manual = "manual"
    transfer = "transfer"
    autopay = "autopay"
    match = "match"


class AutopayAmountType(str, Enum):
    fixed = "fixed"
    minimum_payment = "minimum_payment"
    statement_balance = "statement_balance"
    full_balance = "full_balance"


class AutopayRunType(str, Enum):
    scheduled = "scheduled"
    manual = "manual"
    dry_run = "dry_run"


class AutopayRunStatus(str, Enum):
    started = "started"
    completed = "completed"
    failed = "failed"


class NotificationType(str, Enum):
    bill_due = "bill_due"
    bill_overdue = "bill_overdue"
    autopay_success = "autopay_success"
    autopay_failed = "autopay_failed"


class NotificationPriority(str, Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Household(Base, TimestampMixin):
    __tablename__ = "households"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    members: Mapped[list["HouseholdMember"]] = relationship(
        "HouseholdMember", back_populates="household"
    )


class HouseholdMember(Base, TimestampMixin):
    __tablename__ = "household_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[MemberRole] = mapped_column(
        SAEnum(MemberRole), nullable=False, default=MemberRole.member
    )

    household: Mapped["Household"] = relationship(
        "Household", back_populates="members"
    )

    __table_args__ = (
        UniqueConstraint("household_id", "user_id", name="uq_member_household_user"),
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    # For liability accounts this is the amount owed.
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    statement_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    minimum_payment_cents: Mapped[Optional[int]] = mapped_column(Integer)
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    @property
    def is_liability(self) -> bool:
        return self.type in LIABILITY_ACCOUNT_TYPES

    __table_args__ = (Index("ix_accounts_household", "household_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("household_id", "name", name="uq_category_household_name"),
    )


class Merchant(Base, TimestampMixin):
    __tablename__ = "merchants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    __table_args__ = (
        UniqueConstraint("household_id", "name", name="uq_merchant_household_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("merchants.id"))
    bill_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bill_templates.id", ondelete="SET NULL")
    )
    transfer_group: Mapped[Optional[str]] = mapped_column(String(40))

    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        Index("ix_transactions_household_date", "household_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class BillTemplate(Base, TimestampMixin):
    __tablename__ = "bill_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    created_by_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    bill_type: Mapped[BillType] = mapped_column(SAEnum(BillType), nullable=False)
    classification: Mapped[BillClassification] = mapped_column(
        SAEnum(BillClassification), nullable=False, default=BillClassification.other
    )
    classification_subcategory: Mapped[Optional[str]] = mapped_column(String(100))
    recurrence_type: Mapped[RecurrenceType] = mapped_column(
        SAEnum(RecurrenceType), nullable=False
    )
    recurrence_due_day: Mapped[Optional[int]] = mapped_column(Integer)
    # 0 = Monday, as date.weekday()
    recurrence_due_weekday: Mapped[Optional[int]] = mapped_column(Integer)
    recurrence_specific_due_date: Mapped[Optional[date]] = mapped_column(Date)
    recurrence_start_month: Mapped[Optional[int]] = mapped_column(Integer)
    default_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    is_variable_amount: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    amount_tolerance_bps: Mapped[int] = mapped_column(
        Integer, default=500, nullable=False
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    merchant_id: Mapped[Optional[int]] = mapped_column(ForeignKey("merchants.id"))
    payment_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    linked_liability_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    auto_mark_paid: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    debt_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    debt_original_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    debt_remaining_balance_cents: Mapped[Optional[int]] = mapped_column(Integer)
    debt_interest_apr_bps: Mapped[Optional[int]] = mapped_column(Integer)
    budget_period_assignment: Mapped[Optional[int]] = mapped_column(Integer)

    occurrences: Mapped[list["BillOccurrence"]] = relationship(
        "BillOccurrence", back_populates="template"
    )
    autopay_rule: Mapped[Optional["AutopayRule"]] = relationship(
        "AutopayRule", back_populates="template", uselist=False
    )

    @property
    def is_one_time(self) -> bool:
        return self.recurrence_type == RecurrenceType.one_time

    __table_args__ = (
        CheckConstraint(
            "default_amount_cents >= 0", name="ck_bill_template_amount_positive"
        ),
        Index("ix_bill_templates_household_active", "household_id", "is_active"),
    )


class BillOccurrence(Base, TimestampMixin):
    __tablename__ = "bill_occurrences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("bill_templates.id"), nullable=False
    )
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[OccurrenceStatus] = mapped_column(
        SAEnum(OccurrenceStatus), nullable=False, default=OccurrenceStatus.unpaid
    )
    amount_due_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    last_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    days_late: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    late_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_manual_override: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    budget_period_override: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    template: Mapped["BillTemplate"] = relationship(
        "BillTemplate", back_populates="occurrences"
    )
    allocations: Mapped[list["BillOccurrenceAllocation"]] = relationship(
        "BillOccurrenceAllocation",
        back_populates="occurrence",
        order_by="BillOccurrenceAllocation.period_number",
    )

    __table_args__ = (
        UniqueConstraint("template_id", "due_date", name="uq_occurrence_template_due"),
        Index("ix_occurrences_household_due", "household_id", "due_date"),
        Index("ix_occurrences_household_status", "household_id", "status"),
        CheckConstraint("amount_due_cents >= 0", name="ck_occurrence_due_positive"),
        CheckConstraint("amount_paid_cents >= 0", name="ck_occurrence_paid_positive"),
        CheckConstraint(
            "amount_remaining_cents >= 0", name="ck_occurrence_remaining_positive"
        ),
    )


class BillOccurrenceAllocation(Base, TimestampMixin):
    __tablename__ = "bill_occurrence_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    occurrence_id: Mapped[int] = mapped_column(
        ForeignKey("bill_occurrences.id"), nullable=False
    )
    template_id: Mapped[int] = mapped_column(
        ForeignKey("bill_templates.id"), nullable=False
    )
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_event_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("bill_payment_events.id", ondelete="SET NULL")
    )

    occurrence: Mapped["BillOccurrence"] = relationship(
        "BillOccurrence", back_populates="allocations"
    )

    @property
    def remaining_cents(self) -> int:
        return max(0, self.allocated_amount_cents - self.paid_amount_cents)

    __table_args__ = (
        UniqueConstraint(
            "occurrence_id", "period_number", name="uq_allocation_occurrence_period"
        ),
        CheckConstraint("period_number >= 1", name="ck_allocation_period_positive"),
        CheckConstraint(
            "allocated_amount_cents >= 0", name="ck_allocation_amount_positive"
        ),
    )


class BillPaymentEvent(Base):
    __tablename__ = "bill_payment_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    template_id: Mapped[int] = mapped_column(
        ForeignKey("bill_templates.id"), nullable=False
    )
    occurrence_id: Mapped[int] = mapped_column(
        ForeignKey("bill_occurrences.id"), nullable=False
    )
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    principal_cents: Mapped[Optional[int]] = mapped_column(Integer)
    interest_cents: Mapped[Optional[int]] = mapped_column(Integer)
    balance_before_cents: Mapped[Optional[int]] = mapped_column(Integer)
    balance_after_cents: Mapped[Optional[int]] = mapped_column(Integer)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod), nullable=False
    )
    source_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(120))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "household_id", "idempotency_key", name="uq_payment_event_idempotency"
        ),
        Index("ix_payment_events_occurrence", "occurrence_id"),
        CheckConstraint("amount_cents > 0", name="ck_payment_event_amount_positive"),
    )


class AutopayRule(Base, TimestampMixin):
    __tablename__ = "autopay_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("bill_templates.id"), nullable=False, unique=True
    )
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    pay_from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    amount_type: Mapped[AutopayAmountType] = mapped_column(
        SAEnum(AutopayAmountType), nullable=False, default=AutopayAmountType.fixed
    )
    fixed_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    days_before_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    template: Mapped["BillTemplate"] = relationship(
        "BillTemplate", back_populates="autopay_rule"
    )

    __table_args__ = (
        CheckConstraint("days_before_due >= 0", name="ck_autopay_days_positive"),
    )


class AutopayRun(Base):
    __tablename__ = "autopay_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    run_type: Mapped[AutopayRunType] = mapped_column(
        SAEnum(AutopayRunType), nullable=False
    )
    status: Mapped[AutopayRunStatus] = mapped_column(
        SAEnum(AutopayRunStatus), nullable=False, default=AutopayRunStatus.started
    )
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_summary: Mapped[Optional[str]] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_autopay_runs_household_date", "household_id", "run_date"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    household_id: Mapped[int] = mapped_column(
        ForeignKey("households.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        SAEnum(NotificationType), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[NotificationPriority] = mapped_column(
        SAEnum(NotificationPriority), nullable=False, default=NotificationPriority.normal
    )
    entity_type: Mapped[Optional[str]] = mapped_column(String(40))
    entity_id: Mapped[Optional[int]] = mapped_column(Integer)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_entity", "entity_type", "entity_id", "type"),
    )
