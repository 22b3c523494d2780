import uuid

from sqlalchemy import Column, ForeignKey, Integer, Numeric, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID

from cashback_engine.db import Base


class CustomerAnalytics(Base):
    """Derived cache, rebuilt from cashback transaction history."""

    __tablename__ = "customer_analytics"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, unique=True)
    merchant_id = Column(String(255), nullable=False, index=True)

    lifetime_spending = Column(Numeric(12, 2), nullable=False, default=0)
    yearly_spending = Column(Numeric(12, 2), nullable=False, default=0)
    quarterly_spending = Column(Numeric(12, 2), nullable=False, default=0)
    monthly_spending = Column(Numeric(12, 2), nullable=False, default=0)

    avg_order_value = Column(Numeric(12, 2), nullable=False, default=0)
    order_count = Column(Integer, nullable=False, default=0)

    current_tier_days = Column(Integer, nullable=False, default=0)
    tier_upgrade_count = Column(Integer, nullable=False, default=0)
    last_tier_change = Column(TIMESTAMP, nullable=True)
    next_tier_progress = Column(Numeric(5, 2), nullable=False, default=0)

    last_order_date = Column(TIMESTAMP, nullable=True)
    days_since_last_order = Column(Integer, nullable=True)

    calculated_at = Column(TIMESTAMP, nullable=False)
