from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from sqlalchemy.orm import Session

from cashback_engine.clock import utcnow
from cashback_engine.config import BATCH_SIZE, SYNC_STALE_AFTER_HOURS
from cashback_engine.errors import ValidationError
from cashback_engine.models.maintenance_job import MaintenanceJob, MaintenanceJobType
from cashback_engine.services.cashback_service import retry_failed_syncs
from cashback_engine.services.ledger_service import bulk_sync
from cashback_engine.services.membership_service import batch_evaluate, revert_expired
from cashback_engine.services.store_credit_client import build_store_credit_client


logger = logging.getLogger(__name__)

# Job types that talk to the store-credit platform.
_NEEDS_CLIENT = (MaintenanceJobType.BULK_SYNC.value, MaintenanceJobType.RETRY_FAILED_SYNCS.value)


def _as_utc_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=ZoneInfo("UTC"))
    return dt.astimezone(ZoneInfo("UTC"))


def _to_utc_naive(dt: datetime) -> datetime:
    return _as_utc_aware(dt).replace(tzinfo=None)


def validate_schedule(schedule: dict | None) -> None:
    if schedule is None:
        return
    if schedule.get("type") != "cron":
        raise ValidationError("Unsupported schedule.type (expected 'cron')")
    if not schedule.get("cron") or not croniter.is_valid(schedule["cron"]):
        raise ValidationError("schedule.cron must be a valid cron expression")
    try:
        ZoneInfo(schedule.get("timezone") or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError("schedule.timezone is not a known timezone")


def compute_next_run_at_from_schedule(*, base_utc: datetime, schedule: dict | None) -> datetime | None:
    """Next cron fire time after ``base_utc``, as naive UTC.

    The cron expression is read in the schedule's own timezone, so
    "0 3 * * *" in Europe/Paris stays at 03:00 local across DST changes.
    """
    if not schedule or not isinstance(schedule, dict):
        return None
    validate_schedule(schedule)

    tz = ZoneInfo(schedule.get("timezone") or "UTC")
    base_local = _as_utc_aware(base_utc).astimezone(tz)
    it = croniter(schedule["cron"], base_local)
    next_local: datetime = it.get_next(datetime)
    return _to_utc_naive(next_local)


def compute_first_run_at(
    *,
    now: datetime,
    schedule: dict | None,
    first_run_at: datetime | None = None,
    start_in_seconds: int | None = None,
) -> datetime | None:
    if not schedule:
        return None
    if first_run_at is not None:
        return _to_utc_naive(first_run_at)
    if start_in_seconds is not None:
        return now + timedelta(seconds=int(start_in_seconds))
    return compute_next_run_at_from_schedule(base_utc=now, schedule=schedule)


def run_maintenance_job_once(
    db: Session,
    *,
    job: MaintenanceJob,
    now: datetime | None = None,
    client_factory=build_store_credit_client,
) -> dict:
    """Run one job for its merchant and return the operation's summary."""
    if now is None:
        now = utcnow()

    params = job.params or {}
    job_type = job.job_type

    if job_type == MaintenanceJobType.REVERT_EXPIRED.value:
        return revert_expired(db, job.merchant_id, now=now)

    if job_type == MaintenanceJobType.EVALUATE_ALL.value:
        return batch_evaluate(db, job.merchant_id, batch_size=params.get("batch_size") or BATCH_SIZE, now=now)

    if job_type not in _NEEDS_CLIENT:
        raise ValidationError(f"Unknown maintenance job type: {job_type}")

    client = client_factory(job.merchant_id)
    if client is None:
        raise ValidationError("Store credit platform is not configured")

    try:
        if job_type == MaintenanceJobType.BULK_SYNC.value:
            stale_hours = params.get("stale_after_hours", SYNC_STALE_AFTER_HOURS)
            return bulk_sync(
                db,
                job.merchant_id,
                client,
                stale_after=timedelta(hours=stale_hours) if stale_hours is not None else None,
                batch_size=params.get("batch_size") or BATCH_SIZE,
                now=now,
            )
        return retry_failed_syncs(db, job.merchant_id, client, limit=params.get("limit") or 100, now=now)
    finally:
        client.close()
