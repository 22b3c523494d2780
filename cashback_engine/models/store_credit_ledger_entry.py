import uuid
from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, Numeric, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from cashback_engine.db import Base


class LedgerEntryType(str, Enum):
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    EXTERNAL_SYNC = "EXTERNAL_SYNC"
    CASHBACK_EARNED = "CASHBACK_EARNED"
    ORDER_PAYMENT = "ORDER_PAYMENT"
    REFUND_CREDIT = "REFUND_CREDIT"
    INITIAL_IMPORT = "INITIAL_IMPORT"


class LedgerSource(str, Enum):
    APP_MANUAL = "APP_MANUAL"
    APP_CASHBACK = "APP_CASHBACK"
    EXTERNAL_ADMIN = "EXTERNAL_ADMIN"
    EXTERNAL_ORDER = "EXTERNAL_ORDER"
    RECONCILIATION = "RECONCILIATION"


class LedgerSyncStatus(str, Enum):
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


# App-side entries the platform has not applied yet.
UNSYNCED_STATUSES = (LedgerSyncStatus.PENDING.value, LedgerSyncStatus.FAILED.value)


class StoreCreditLedgerEntry(Base):
    """Append-only; balance_after(n) = balance_after(n-1) + amount(n)."""

    __tablename__ = "store_credit_ledger_entries"

    __table_args__ = (
        UniqueConstraint("customer_id", "sequence", name="uq_store_credit_ledger_entries_customer_id_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    amount = Column(Numeric(12, 2), nullable=False)  # signed
    balance_after = Column(Numeric(12, 2), nullable=False)

    type = Column(String(30), nullable=False)
    source = Column(String(30), nullable=False)

    external_reference = Column(String(200), nullable=True, index=True)
    description = Column(String(1000), nullable=True)

    # null for entries that mirror the platform rather than push to it
    sync_status = Column(String(20), nullable=True, index=True)
    sync_error = Column(String(2000), nullable=True)

    reconciled_at = Column(TIMESTAMP, nullable=True)
    created_at = Column(TIMESTAMP, nullable=False)
