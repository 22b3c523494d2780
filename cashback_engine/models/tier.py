import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, Index, Integer, Numeric, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from cashback_engine.db import Base


class EvaluationPeriod(str, Enum):
    ANNUAL = "ANNUAL"
    LIFETIME = "LIFETIME"


class Tier(Base):
    __tablename__ = "tiers"

    __table_args__ = (
        UniqueConstraint("merchant_id", "name", name="uq_tiers_merchant_id_name"),
        Index("ix_tiers_merchant_id_active", "merchant_id", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    merchant_id = Column(String(255), nullable=False)

    name = Column(String(200), nullable=False)

    # NULL = base tier, always qualifies
    min_spend = Column(Numeric(12, 2), nullable=True)
    cashback_percent = Column(Numeric(5, 2), nullable=False)

    evaluation_period = Column(String(20), nullable=False, default=EvaluationPeriod.ANNUAL.value)

    is_active = Column(Boolean, nullable=False, default=True)
    sort_hint = Column(Integer, nullable=False, default=0)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
