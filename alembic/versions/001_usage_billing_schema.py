"""001 – accounts, projects, feedback, subscription state, usage, events, payments

Revision ID: 001_usage_billing_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_usage_billing_schema"
down_revision = None
branch_labels = None
depends_on = None

_PLAN_VALUES = ("free", "starter", "pro")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    conn = op.get_bind()
    plan_id = postgresql.ENUM(*_PLAN_VALUES, name="planid", create_type=False)
    subscription_status = postgresql.ENUM(
        "active", "past_due", "canceled", "incomplete",
        name="subscriptionstatus", create_type=False,
    )
    event_status = postgresql.ENUM(
        "seen", "processed", "failed", name="processedeventstatus", create_type=False
    )
    payment_status = postgresql.ENUM(
        "succeeded", "failed", name="paymentstatus", create_type=False
    )
    for enum_type in (plan_id, subscription_status, event_status, payment_status):
        enum_type.create(conn, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("name", sa.String(160), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email", name="uq_accounts_email"),
    )

    op.create_table(
        "projects",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("url", sa.String(512), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_index("ix_projects_account_id", "projects", ["account_id"])

    op.create_table(
        "feedback",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "project_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("projects.id"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("is_visible", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("visibility_rank", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_feedback_project_created", "feedback", ["project_id", "created_at"]
    )

    op.create_table(
        "subscription_states",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("plan_id", plan_id, server_default="free"),
        sa.Column("status", subscription_status, server_default="active"),
        sa.Column("provider_customer_ref", sa.String(255), nullable=True),
        sa.Column("provider_subscription_ref", sa.String(255), nullable=True),
        sa.Column("cycle_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cycle_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), server_default=sa.text("false")
        ),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", name="uq_subscription_states_account_id"),
    )
    op.create_index(
        "ix_subscription_states_provider_customer_ref",
        "subscription_states",
        ["provider_customer_ref"],
    )
    op.create_index(
        "ix_subscription_states_provider_subscription_ref",
        "subscription_states",
        ["provider_subscription_ref"],
    )
    op.create_index(
        "ix_subscription_states_cycle_end", "subscription_states", ["cycle_end"]
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("records_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_projects", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("account_id", name="uq_usage_counters_account_id"),
    )

    op.create_table(
        "processed_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("provider", sa.String(40), server_default="stripe"),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(120), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", event_status, server_default="seen"),
        sa.Column("processed", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("event_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "provider_event_id", name="uq_processed_events_provider_event_id"
        ),
    )

    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("provider_invoice_ref", sa.String(255), nullable=False),
        sa.Column("provider_subscription_ref", sa.String(255), nullable=True),
        sa.Column("amount_cents", sa.Integer(), server_default="0"),
        sa.Column("currency", sa.String(3), server_default="usd"),
        sa.Column("status", payment_status, nullable=False),
        sa.Column(
            "plan_at_payment",
            postgresql.ENUM(*_PLAN_VALUES, name="planid", create_type=False),
            nullable=False,
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("provider_invoice_ref", name="uq_payments_provider_invoice_ref"),
    )
    op.create_index("ix_payments_account_id", "payments", ["account_id"])


def downgrade() -> None:
    op.drop_index("ix_payments_account_id", table_name="payments")
    op.drop_table("payments")
    op.drop_table("processed_events")
    op.drop_table("usage_counters")
    op.drop_index("ix_subscription_states_cycle_end", table_name="subscription_states")
    op.drop_index(
        "ix_subscription_states_provider_subscription_ref",
        table_name="subscription_states",
    )
    op.drop_index(
        "ix_subscription_states_provider_customer_ref",
        table_name="subscription_states",
    )
    op.drop_table("subscription_states")
    op.drop_index("ix_feedback_project_created", table_name="feedback")
    op.drop_table("feedback")
    op.drop_index("ix_projects_account_id", table_name="projects")
    op.drop_table("projects")
    op.drop_table("accounts")

    conn = op.get_bind()
    for name in ("paymentstatus", "processedeventstatus", "subscriptionstatus", "planid"):
        postgresql.ENUM(name=name).drop(conn, checkfirst=True)
