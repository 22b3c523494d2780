import uuid
from enum import Enum

from sqlalchemy import Column, ForeignKey, JSON, String, TIMESTAMP
from sqlalchemy.dialects.postgresql import UUID

from cashback_engine.db import Base


class TierChangeType(str, Enum):
    INITIAL_ASSIGNMENT = "INITIAL_ASSIGNMENT"
    AUTOMATIC_UPGRADE = "AUTOMATIC_UPGRADE"
    AUTOMATIC_DOWNGRADE = "AUTOMATIC_DOWNGRADE"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    EXPIRATION_REVERT = "EXPIRATION_REVERT"


class TierChangeLog(Base):
    """Append-only audit of membership transitions."""

    __tablename__ = "tier_change_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False, index=True)

    from_tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id", ondelete="SET NULL"), nullable=True)
    to_tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=False)

    change_type = Column(String(30), nullable=False)
    reason = Column(String(1000), nullable=True)
    triggered_by = Column(String(200), nullable=False, default="System")

    snapshot = Column(JSON, nullable=True)

    created_at = Column(TIMESTAMP, nullable=False, index=True)
