from datetime import datetime
from typing import Any, Dict, Literal, Optional

from uuid import UUID

from pydantic import BaseModel, Field


class MaintenanceJobScheduleCron(BaseModel):
    type: Literal["cron"] = "cron"
    cron: str
    timezone: str = "UTC"


class MaintenanceJobCreate(BaseModel):
    job_key: str
    job_type: Literal["REVERT_EXPIRED", "EVALUATE_ALL", "BULK_SYNC", "RETRY_FAILED_SYNCS"]

    params: Dict[str, Any] = Field(default_factory=dict)

    active: bool = True
    schedule: Optional[MaintenanceJobScheduleCron] = None

    first_run_at: Optional[datetime] = None
    start_in_seconds: Optional[int] = None


class MaintenanceJobUpdate(BaseModel):
    params: Optional[Dict[str, Any]] = None

    active: Optional[bool] = None
    schedule: Optional[MaintenanceJobScheduleCron] = None

    first_run_at: Optional[datetime] = None
    start_in_seconds: Optional[int] = None


class MaintenanceJobOut(BaseModel):
    id: UUID
    job_key: str
    merchant_id: str
    job_type: str

    params: Optional[Dict[str, Any]] = None

    active: bool
    schedule: Optional[Dict[str, Any]] = None

    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    last_status: Optional[str] = None
    last_error: Optional[str] = None
    last_summary: Optional[Dict[str, Any]] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
