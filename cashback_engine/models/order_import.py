import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, Integer, JSON, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from cashback_engine.db import Base


class OrderImportStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class OrderImport(Base):
    """One backfill run of historical orders; its counters are its report."""

    __tablename__ = "order_imports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    merchant_id = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderImportStatus.PROCESSING.value)

    start_date = Column(TIMESTAMP, nullable=False)
    end_date = Column(TIMESTAMP, nullable=False)
    update_tiers = Column(Boolean, nullable=False, default=True)

    total_orders = Column(Integer, nullable=False, default=0)
    processed_orders = Column(Integer, nullable=False, default=0)
    new_transactions = Column(Integer, nullable=False, default=0)
    skipped_transactions = Column(Integer, nullable=False, default=0)
    new_customers = Column(Integer, nullable=False, default=0)
    tiers_updated = Column(Integer, nullable=False, default=0)

    # ["Order 1001 has no customer", ...]
    errors = Column(JSON, nullable=True)

    started_at = Column(TIMESTAMP, nullable=False)
    completed_at = Column(TIMESTAMP, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
