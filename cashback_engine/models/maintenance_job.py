import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, JSON, String, TIMESTAMP, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from cashback_engine.db import Base


class MaintenanceJobType(str, Enum):
    REVERT_EXPIRED = "REVERT_EXPIRED"
    EVALUATE_ALL = "EVALUATE_ALL"
    BULK_SYNC = "BULK_SYNC"
    RETRY_FAILED_SYNCS = "RETRY_FAILED_SYNCS"


class MaintenanceJob(Base):
    __tablename__ = "maintenance_jobs"

    __table_args__ = (UniqueConstraint("merchant_id", "job_key", name="uq_maintenance_jobs_merchant_id_job_key"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)

    job_key = Column(String(100), nullable=False)
    merchant_id = Column(String(255), nullable=False)

    job_type = Column(String(30), nullable=False)
    params = Column(JSON, nullable=True)

    active = Column(Boolean, default=True)

    # {"type": "cron", "cron": "0 3 * * *", "timezone": "UTC"}
    schedule = Column(JSON, nullable=True)

    next_run_at = Column(TIMESTAMP, nullable=True, index=True)
    last_run_at = Column(TIMESTAMP, nullable=True)

    locked_at = Column(TIMESTAMP, nullable=True)
    locked_by = Column(String(100), nullable=True)

    last_status = Column(String(20), nullable=True)
    last_error = Column(String(2000), nullable=True)
    last_summary = Column(JSON, nullable=True)

    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())
