"""initial cashback schema

Revision ID: 5e1c0a7b9d21
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '5e1c0a7b9d21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("tiers"):
        op.create_table(
            "tiers",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("min_spend", sa.Numeric(12, 2), nullable=True),
            sa.Column("cashback_percent", sa.Numeric(5, 2), nullable=False),
            sa.Column("evaluation_period", sa.String(length=20), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("sort_hint", sa.Integer(), server_default="0", nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("merchant_id", "name", name="uq_tiers_merchant_id_name"),
        )
        op.create_index("ix_tiers_merchant_id_active", "tiers", ["merchant_id", "is_active"])

    if not inspector.has_table("customers"):
        op.create_table(
            "customers",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("external_customer_id", sa.String(length=100), nullable=False),
            sa.Column("email", sa.String(length=320), nullable=True),
            sa.Column("currency", sa.String(length=3), server_default="USD", nullable=False),
            sa.Column("store_credit_balance", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("total_earned", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("last_synced_at", sa.TIMESTAMP(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint(
                "merchant_id", "external_customer_id", name="uq_customers_merchant_id_external_customer_id"
            ),
        )
        op.create_index("ix_customers_merchant_id", "customers", ["merchant_id"])

    if not inspector.has_table("customer_memberships"):
        op.create_table(
            "customer_memberships",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("tier_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tiers.id"), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False),
            sa.Column("start_date", sa.TIMESTAMP(), nullable=False),
            sa.Column("end_date", sa.TIMESTAMP(), nullable=True),
            sa.Column("assignment_type", sa.String(length=20), nullable=False),
            sa.Column("assigned_by", sa.String(length=200), nullable=True),
            sa.Column("reason", sa.String(length=1000), nullable=True),
            sa.Column("previous_tier_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tiers.id"), nullable=True),
            *_timestamps(),
        )
        op.create_index(
            "uq_customer_memberships_active_customer",
            "customer_memberships",
            ["customer_id"],
            unique=True,
            postgresql_where=sa.text("is_active"),
        )
        op.create_index("ix_customer_memberships_tier_id_active", "customer_memberships", ["tier_id", "is_active"])

    if not inspector.has_table("tier_change_logs"):
        op.create_table(
            "tier_change_logs",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column(
                "from_tier_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("tiers.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("to_tier_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tiers.id"), nullable=False),
            sa.Column("change_type", sa.String(length=30), nullable=False),
            sa.Column("reason", sa.String(length=1000), nullable=True),
            sa.Column("triggered_by", sa.String(length=200), nullable=False),
            sa.Column("snapshot", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), nullable=False),
        )
        op.create_index("ix_tier_change_logs_customer_id", "tier_change_logs", ["customer_id"])
        op.create_index("ix_tier_change_logs_created_at", "tier_change_logs", ["created_at"])

    if not inspector.has_table("cashback_transactions"):
        op.create_table(
            "cashback_transactions",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("order_id", sa.String(length=100), nullable=False),
            sa.Column("currency", sa.String(length=3), nullable=False),
            sa.Column("eligible_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("cashback_amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("cashback_percent_snapshot", sa.Numeric(5, 2), nullable=False),
            sa.Column("status", sa.String(length=30), nullable=False),
            sa.Column("external_transaction_id", sa.String(length=200), nullable=True),
            sa.Column("sync_error", sa.String(length=2000), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("updated_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
            sa.UniqueConstraint("merchant_id", "order_id", name="uq_cashback_transactions_merchant_id_order_id"),
        )
        op.create_index(
            "ix_cashback_transactions_customer_id_created_at",
            "cashback_transactions",
            ["customer_id", "created_at"],
        )

    if not inspector.has_table("store_credit_ledger_entries"):
        op.create_table(
            "store_credit_ledger_entries",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("customer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("customers.id"), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("balance_after", sa.Numeric(12, 2), nullable=False),
            sa.Column("type", sa.String(length=30), nullable=False),
            sa.Column("source", sa.String(length=30), nullable=False),
            sa.Column("external_reference", sa.String(length=200), nullable=True),
            sa.Column("description", sa.String(length=1000), nullable=True),
            sa.Column("reconciled_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), nullable=False),
            sa.UniqueConstraint(
                "customer_id", "sequence", name="uq_store_credit_ledger_entries_customer_id_sequence"
            ),
        )
        op.create_index("ix_store_credit_ledger_entries_customer_id", "store_credit_ledger_entries", ["customer_id"])
        op.create_index(
            "ix_store_credit_ledger_entries_external_reference",
            "store_credit_ledger_entries",
            ["external_reference"],
        )

    if not inspector.has_table("customer_analytics"):
        op.create_table(
            "customer_analytics",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column(
                "customer_id",
                postgresql.UUID(as_uuid=True),
                sa.ForeignKey("customers.id"),
                nullable=False,
                unique=True,
            ),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("lifetime_spending", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("yearly_spending", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("quarterly_spending", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("monthly_spending", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("avg_order_value", sa.Numeric(12, 2), server_default="0", nullable=False),
            sa.Column("order_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("current_tier_days", sa.Integer(), server_default="0", nullable=False),
            sa.Column("tier_upgrade_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("last_tier_change", sa.TIMESTAMP(), nullable=True),
            sa.Column("next_tier_progress", sa.Numeric(5, 2), server_default="0", nullable=False),
            sa.Column("last_order_date", sa.TIMESTAMP(), nullable=True),
            sa.Column("days_since_last_order", sa.Integer(), nullable=True),
            sa.Column("calculated_at", sa.TIMESTAMP(), nullable=False),
        )
        op.create_index("ix_customer_analytics_merchant_id", "customer_analytics", ["merchant_id"])

    if not inspector.has_table("maintenance_jobs"):
        op.create_table(
            "maintenance_jobs",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("job_key", sa.String(length=100), nullable=False),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("job_type", sa.String(length=30), nullable=False),
            sa.Column("params", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            sa.Column("active", sa.Boolean(), nullable=True),
            sa.Column("schedule", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            sa.Column("next_run_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("last_run_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("locked_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("locked_by", sa.String(length=100), nullable=True),
            sa.Column("last_status", sa.String(length=20), nullable=True),
            sa.Column("last_error", sa.String(length=2000), nullable=True),
            sa.Column("last_summary", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("merchant_id", "job_key", name="uq_maintenance_jobs_merchant_id_job_key"),
        )
        op.create_index("ix_maintenance_jobs_next_run_at", "maintenance_jobs", ["next_run_at"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table in (
        "maintenance_jobs",
        "customer_analytics",
        "store_credit_ledger_entries",
        "cashback_transactions",
        "tier_change_logs",
        "customer_memberships",
        "customers",
        "tiers",
    ):
        if inspector.has_table(table):
            op.drop_table(table)
