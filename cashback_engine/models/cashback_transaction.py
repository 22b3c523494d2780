import uuid
from enum import Enum

from sqlalchemy import Column, ForeignKey, Index, Numeric, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from cashback_engine.db import Base


class CashbackStatus(str, Enum):
    COMPLETED = "COMPLETED"
    SYNCED_EXTERNAL = "SYNCED_EXTERNAL"
    EXTERNAL_SYNC_FAILED = "EXTERNAL_SYNC_FAILED"
    REDEEMED = "REDEEMED"


class CashbackSource(str, Enum):
    ORDER_EVENT = "ORDER_EVENT"
    HISTORICAL_IMPORT = "HISTORICAL_IMPORT"


# Statuses whose eligible amount counts toward tier qualification.
QUALIFYING_STATUSES = (CashbackStatus.COMPLETED.value, CashbackStatus.SYNCED_EXTERNAL.value)


class CashbackTransaction(Base):
    __tablename__ = "cashback_transactions"

    # idempotency key for order-paid deliveries
    __table_args__ = (
        UniqueConstraint("merchant_id", "order_id", name="uq_cashback_transactions_merchant_id_order_id"),
        Index("ix_cashback_transactions_customer_id_created_at", "customer_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    merchant_id = Column(String(255), nullable=False)
    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    order_id = Column(String(100), nullable=False)

    currency = Column(String(3), nullable=False, default="USD")

    eligible_amount = Column(Numeric(12, 2), nullable=False)
    cashback_amount = Column(Numeric(12, 2), nullable=False)
    cashback_percent_snapshot = Column(Numeric(5, 2), nullable=False)

    status = Column(String(30), nullable=False, default=CashbackStatus.COMPLETED.value)
    source = Column(String(30), nullable=False, default=CashbackSource.ORDER_EVENT.value)

    external_transaction_id = Column(String(200), nullable=True)
    sync_error = Column(String(2000), nullable=True)

    created_at = Column(TIMESTAMP, nullable=False)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
