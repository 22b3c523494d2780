"""ledger sync status and order imports

Revision ID: 7d4e9b2c1f60
Revises: 5e1c0a7b9d21
Create Date: 2026-10-18

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "7d4e9b2c1f60"
down_revision = "5e1c0a7b9d21"
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    ledger_cols = {c["name"] for c in insp.get_columns("store_credit_ledger_entries")}
    if "sync_status" not in ledger_cols:
        op.add_column("store_credit_ledger_entries", sa.Column("sync_status", sa.String(length=20), nullable=True))
    if "sync_error" not in ledger_cols:
        op.add_column("store_credit_ledger_entries", sa.Column("sync_error", sa.String(length=2000), nullable=True))

    existing_indexes = {ix["name"] for ix in insp.get_indexes("store_credit_ledger_entries")}
    if "ix_store_credit_ledger_entries_sync_status" not in existing_indexes:
        op.create_index(
            "ix_store_credit_ledger_entries_sync_status",
            "store_credit_ledger_entries",
            ["sync_status"],
            unique=False,
        )

    # Unpushed app-side entries from before this revision cannot be told apart
    # from pushed ones; they are left null and treated as already applied.

    tx_cols = {c["name"] for c in insp.get_columns("cashback_transactions")}
    if "source" not in tx_cols:
        op.add_column(
            "cashback_transactions",
            sa.Column("source", sa.String(length=30), server_default="ORDER_EVENT", nullable=False),
        )

    if not insp.has_table("order_imports"):
        op.create_table(
            "order_imports",
            sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
            sa.Column("merchant_id", sa.String(length=255), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("start_date", sa.TIMESTAMP(), nullable=False),
            sa.Column("end_date", sa.TIMESTAMP(), nullable=False),
            sa.Column("update_tiers", sa.Boolean(), nullable=False, server_default=sa.text("true")),
            sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("processed_orders", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("new_transactions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_transactions", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("new_customers", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("tiers_updated", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("errors", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
            sa.Column("started_at", sa.TIMESTAMP(), nullable=False),
            sa.Column("completed_at", sa.TIMESTAMP(), nullable=True),
            sa.Column("created_at", sa.TIMESTAMP(), server_default=sa.text("now()"), nullable=True),
        )
        op.create_index("ix_order_imports_merchant_id", "order_imports", ["merchant_id"], unique=False)


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if insp.has_table("order_imports"):
        op.drop_index("ix_order_imports_merchant_id", table_name="order_imports")
        op.drop_table("order_imports")

    tx_cols = {c["name"] for c in insp.get_columns("cashback_transactions")}
    if "source" in tx_cols:
        op.drop_column("cashback_transactions", "source")

    existing_indexes = {ix["name"] for ix in insp.get_indexes("store_credit_ledger_entries")}
    if "ix_store_credit_ledger_entries_sync_status" in existing_indexes:
        op.drop_index("ix_store_credit_ledger_entries_sync_status", table_name="store_credit_ledger_entries")

    ledger_cols = {c["name"] for c in insp.get_columns("store_credit_ledger_entries")}
    if "sync_error" in ledger_cols:
        op.drop_column("store_credit_ledger_entries", "sync_error")
    if "sync_status" in ledger_cols:
        op.drop_column("store_credit_ledger_entries", "sync_status")
