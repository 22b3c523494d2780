import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, TIMESTAMP, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from cashback_engine.db import Base


class AssignmentType(str, Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


class CustomerMembership(Base):
    __tablename__ = "customer_memberships"

    __table_args__ = (
        # At most one active membership per customer.
        Index(
            "uq_customer_memberships_active_customer",
            "customer_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_customer_memberships_tier_id_active", "tier_id", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    customer_id = Column(UUID(as_uuid=True), ForeignKey("customers.id"), nullable=False)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)

    start_date = Column(TIMESTAMP, nullable=False)
    end_date = Column(TIMESTAMP, nullable=True)

    assignment_type = Column(String(20), nullable=False, default=AssignmentType.AUTOMATIC.value)
    assigned_by = Column(String(200), nullable=True)
    reason = Column(String(1000), nullable=True)

    previous_tier_id = Column(UUID(as_uuid=True), ForeignKey("tiers.id"), nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    tier = relationship("Tier", foreign_keys=[tier_id])
