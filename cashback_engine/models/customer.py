import uuid

from sqlalchemy import Column, Numeric, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from cashback_engine.db import Base


class Customer(Base):
    __tablename__ = "customers"

    __table_args__ = (
        UniqueConstraint("merchant_id", "external_customer_id", name="uq_customers_merchant_id_external_customer_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    merchant_id = Column(String(255), nullable=False, index=True)
    external_customer_id = Column(String(100), nullable=False)
    email = Column(String(320))
    currency = Column(String(3), nullable=False, default="USD")

    # Cache of the latest ledger balance_after; only the ledger service writes it.
    store_credit_balance = Column(Numeric(12, 2), nullable=False, default=0)
    total_earned = Column(Numeric(12, 2), nullable=False, default=0)

    last_synced_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
