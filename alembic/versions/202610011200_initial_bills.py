"""initial bills schema

Revision ID: 202610011200
Revises:
Create Date: 2026-10-01 12:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610011200"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "households",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "household_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "role",
            sa.Enum("owner", "admin", "member", "viewer", name="memberrole"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("household_id", "user_id", name="uq_member_household_user"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "checking",
                "savings",
                "cash",
                "credit_card",
                "loan",
                "line_of_credit",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("statement_balance_cents", sa.Integer()),
        sa.Column("minimum_payment_cents", sa.Integer()),
        sa.Column("credit_limit_cents", sa.Integer()),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_used_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index("ix_accounts_household", "accounts", ["household_id"])

    for table, constraint, length in (
        ("categories", "uq_category_household_name", 100),
        ("merchants", "uq_merchant_household_name", 120),
    ):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "household_id",
                sa.Integer(),
                sa.ForeignKey("households.id"),
                nullable=False,
            ),
            sa.Column("name", sa.String(length=length), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("household_id", "name", name=constraint),
        )

    op.create_table(
        "bill_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("created_by_user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "bill_type",
            sa.Enum("expense", "income", "savings_transfer", name="billtype"),
            nullable=False,
        ),
        sa.Column(
            "classification",
            sa.Enum(
                "subscription",
                "utility",
                "housing",
                "insurance",
                "loan_payment",
                "membership",
                "service",
                "other",
                name="billclassification",
            ),
            nullable=False,
        ),
        sa.Column("classification_subcategory", sa.String(length=100)),
        sa.Column(
            "recurrence_type",
            sa.Enum(
                "one_time",
                "weekly",
                "biweekly",
                "monthly",
                "quarterly",
                "semi_annual",
                "annual",
                name="recurrencetype",
            ),
            nullable=False,
        ),
        sa.Column("recurrence_due_day", sa.Integer()),
        sa.Column("recurrence_due_weekday", sa.Integer()),
        sa.Column("recurrence_specific_due_date", sa.Date()),
        sa.Column("recurrence_start_month", sa.Integer()),
        sa.Column("default_amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "is_variable_amount", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "amount_tolerance_bps", sa.Integer(), nullable=False, server_default="500"
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("merchant_id", sa.Integer(), sa.ForeignKey("merchants.id")),
        sa.Column("payment_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "linked_liability_account_id", sa.Integer(), sa.ForeignKey("accounts.id")
        ),
        sa.Column(
            "auto_mark_paid", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("debt_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("debt_original_balance_cents", sa.Integer()),
        sa.Column("debt_remaining_balance_cents", sa.Integer()),
        sa.Column("debt_interest_apr_bps", sa.Integer()),
        sa.Column("budget_period_assignment", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint(
            "default_amount_cents >= 0", name="ck_bill_template_amount_positive"
        ),
    )
    op.create_index(
        "ix_bill_templates_household_active",
        "bill_templates",
        ["household_id", "is_active"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "income",
                "expense",
                "transfer_in",
                "transfer_out",
                name="transactiontype",
            ),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("merchant_id", sa.Integer(), sa.ForeignKey("merchants.id")),
        sa.Column(
            "bill_template_id",
            sa.Integer(),
            sa.ForeignKey("bill_templates.id", ondelete="SET NULL"),
        ),
        sa.Column("transfer_group", sa.String(length=40)),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_household_date", "transactions", ["household_id", "date"]
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )

    op.create_table(
        "bill_occurrences",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("bill_templates.id"),
            nullable=False,
        ),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "unpaid",
                "partial",
                "paid",
                "overpaid",
                "overdue",
                "skipped",
                name="occurrencestatus",
            ),
            nullable=False,
        ),
        sa.Column("amount_due_cents", sa.Integer(), nullable=False),
        sa.Column("amount_paid_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_remaining_cents", sa.Integer(), nullable=False),
        sa.Column("actual_amount_cents", sa.Integer()),
        sa.Column("paid_date", sa.Date()),
        sa.Column(
            "last_transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("days_late", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("late_fee_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_manual_override", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("budget_period_override", sa.Integer()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint("template_id", "due_date", name="uq_occurrence_template_due"),
        sa.CheckConstraint("amount_due_cents >= 0", name="ck_occurrence_due_positive"),
        sa.CheckConstraint("amount_paid_cents >= 0", name="ck_occurrence_paid_positive"),
        sa.CheckConstraint(
            "amount_remaining_cents >= 0", name="ck_occurrence_remaining_positive"
        ),
    )
    op.create_index(
        "ix_occurrences_household_due", "bill_occurrences", ["household_id", "due_date"]
    )
    op.create_index(
        "ix_occurrences_household_status",
        "bill_occurrences",
        ["household_id", "status"],
    )

    op.create_table(
        "bill_payment_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("bill_templates.id"),
            nullable=False,
        ),
        sa.Column(
            "occurrence_id",
            sa.Integer(),
            sa.ForeignKey("bill_occurrences.id"),
            nullable=False,
        ),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("principal_cents", sa.Integer()),
        sa.Column("interest_cents", sa.Integer()),
        sa.Column("balance_before_cents", sa.Integer()),
        sa.Column("balance_after_cents", sa.Integer()),
        sa.Column("payment_date", sa.Date(), nullable=False),
        sa.Column(
            "payment_method",
            sa.Enum("manual", "transfer", "autopay", "match", name="paymentmethod"),
            nullable=False,
        ),
        sa.Column("source_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("idempotency_key", sa.String(length=120)),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "household_id", "idempotency_key", name="uq_payment_event_idempotency"
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_payment_event_amount_positive"),
    )
    op.create_index(
        "ix_payment_events_occurrence", "bill_payment_events", ["occurrence_id"]
    )

    op.create_table(
        "bill_occurrence_allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "occurrence_id",
            sa.Integer(),
            sa.ForeignKey("bill_occurrences.id"),
            nullable=False,
        ),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("bill_templates.id"),
            nullable=False,
        ),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("period_number", sa.Integer(), nullable=False),
        sa.Column("allocated_amount_cents", sa.Integer(), nullable=False),
        sa.Column("paid_amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "payment_event_id",
            sa.Integer(),
            sa.ForeignKey("bill_payment_events.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "occurrence_id", "period_number", name="uq_allocation_occurrence_period"
        ),
        sa.CheckConstraint("period_number >= 1", name="ck_allocation_period_positive"),
        sa.CheckConstraint(
            "allocated_amount_cents >= 0", name="ck_allocation_amount_positive"
        ),
    )

    op.create_table(
        "autopay_rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "template_id",
            sa.Integer(),
            sa.ForeignKey("bill_templates.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("pay_from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column(
            "amount_type",
            sa.Enum(
                "fixed",
                "minimum_payment",
                "statement_balance",
                "full_balance",
                name="autopayamounttype",
            ),
            nullable=False,
        ),
        sa.Column("fixed_amount_cents", sa.Integer()),
        sa.Column("days_before_due", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("days_before_due >= 0", name="ck_autopay_days_positive"),
    )

    op.create_table(
        "autopay_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("run_date", sa.Date(), nullable=False),
        sa.Column(
            "run_type",
            sa.Enum("scheduled", "manual", "dry_run", name="autopayruntype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("started", "completed", "failed", name="autopayrunstatus"),
            nullable=False,
        ),
        sa.Column("processed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_amount_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("error_summary", sa.Text()),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
    )
    op.create_index(
        "ix_autopay_runs_household_date", "autopay_runs", ["household_id", "run_date"]
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "household_id", sa.Integer(), sa.ForeignKey("households.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "bill_due",
                "bill_overdue",
                "autopay_success",
                "autopay_failed",
                name="notificationtype",
            ),
            nullable=False,
        ),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column(
            "priority",
            sa.Enum("low", "normal", "high", "urgent", name="notificationpriority"),
            nullable=False,
        ),
        sa.Column("entity_type", sa.String(length=40)),
        sa.Column("entity_id", sa.Integer()),
        sa.Column("metadata_json", sa.Text()),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_notifications_user_created", "notifications", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_notifications_entity",
        "notifications",
        ["entity_type", "entity_id", "type"],
    )


def downgrade():
    op.drop_index("ix_notifications_entity", table_name="notifications")
    op.drop_index("ix_notifications_user_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_autopay_runs_household_date", table_name="autopay_runs")
    op.drop_table("autopay_runs")
    op.drop_table("autopay_rules")
    op.drop_table("bill_occurrence_allocations")
    op.drop_index("ix_payment_events_occurrence", table_name="bill_payment_events")
    op.drop_table("bill_payment_events")
    op.drop_index("ix_occurrences_household_status", table_name="bill_occurrences")
    op.drop_index("ix_occurrences_household_due", table_name="bill_occurrences")
    op.drop_table("bill_occurrences")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_household_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_bill_templates_household_active", table_name="bill_templates")
    op.drop_table("bill_templates")
    op.drop_table("merchants")
    op.drop_table("categories")
    op.drop_index("ix_accounts_household", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("household_members")
    op.drop_table("households")
