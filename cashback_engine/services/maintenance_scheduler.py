from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from cashback_engine.clock import utcnow
from cashback_engine.config import LOG_LEVEL
from cashback_engine.db import SessionLocal
from cashback_engine.models.maintenance_job import MaintenanceJob
from cashback_engine.services.maintenance_job_runner import compute_next_run_at_from_schedule, run_maintenance_job_once
from cashback_engine.services.store_credit_client import build_store_credit_client


logger = logging.getLogger(__name__)


def _due_filter(q, *, now: datetime, lock_ttl_seconds: int):
    lock_expired_before = now - timedelta(seconds=int(lock_ttl_seconds))
    return (
        q.filter(MaintenanceJob.active.is_(True))
        .filter(MaintenanceJob.schedule.isnot(None))
        .filter(MaintenanceJob.next_run_at.isnot(None))
        .filter(or_(MaintenanceJob.locked_at.is_(None), MaintenanceJob.locked_at < lock_expired_before))
    )


def claim_due_jobs(
    db: Session,
    *,
    now: datetime,
    worker_id: str,
    batch_size: int,
    lock_ttl_seconds: int,
) -> list[MaintenanceJob]:
    q = (
        _due_filter(db.query(MaintenanceJob), now=now, lock_ttl_seconds=lock_ttl_seconds)
        .filter(MaintenanceJob.next_run_at <= now)
        .order_by(MaintenanceJob.next_run_at.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )

    jobs = q.all()
    for job in jobs:
        job.locked_at = now
        job.locked_by = worker_id

    return jobs


def run_claimed_job(db: Session, job: MaintenanceJob, *, now: datetime | None = None, client_factory=build_store_credit_client):
    run_now = now or utcnow()
    try:
        logger.info(
            "running maintenance job",
            extra={"job_id": str(job.id), "job_key": job.job_key, "job_type": job.job_type, "merchant_id": job.merchant_id},
        )
        summary = run_maintenance_job_once(db, job=job, now=run_now, client_factory=client_factory)
        job.last_status = "SUCCESS"
        job.last_error = None
        job.last_summary = {k: v for k, v in summary.items() if k != "error_details"}

        logger.info(
            "maintenance job success",
            extra={"job_id": str(job.id), "job_key": job.job_key, **job.last_summary},
        )

    except Exception as e:
        db.rollback()
        job.last_status = "FAILED"
        job.last_error = str(e)[:2000]
        logger.exception("maintenance job failed", extra={"job_id": str(job.id), "job_key": job.job_key})

    finally:
        job.last_run_at = run_now
        # failures also move forward, otherwise the job would spin
        job.next_run_at = compute_next_run_at_from_schedule(base_utc=run_now, schedule=job.schedule)
        job.locked_at = None
        job.locked_by = None
        db.commit()


def run_due_jobs_once(
    db: Session,
    *,
    worker_id: str,
    batch_size: int = 5,
    lock_ttl_seconds: int = 600,
    now: datetime | None = None,
    client_factory=build_store_credit_client,
) -> int:
    now = now or utcnow()
    jobs = claim_due_jobs(db, now=now, worker_id=worker_id, batch_size=batch_size, lock_ttl_seconds=lock_ttl_seconds)
    db.commit()

    if jobs:
        logger.info("claimed due maintenance jobs", extra={"count": len(jobs), "now": now.isoformat()})

    for job in jobs:
        run_claimed_job(db, job, now=now, client_factory=client_factory)

    return len(jobs)


def _seconds_until_next_due(db: Session, *, now: datetime, lock_ttl_seconds: int, idle_sleep_seconds: int, max_sleep_seconds: int) -> int:
    next_due = (
        _due_filter(db.query(MaintenanceJob.next_run_at), now=now, lock_ttl_seconds=lock_ttl_seconds)
        .order_by(MaintenanceJob.next_run_at.asc())
        .first()
    )
    if next_due and next_due[0]:
        delta = (next_due[0] - now).total_seconds()
        if delta > 0:
            return min(max_sleep_seconds, max(1, int(delta)))
    return idle_sleep_seconds


def run_scheduler_loop(
    *,
    worker_id: str | None = None,
    batch_size: int = 5,
    lock_ttl_seconds: int = 600,
    idle_sleep_seconds: int = 5,
    max_sleep_seconds: int = 30,
):
    if worker_id is None:
        worker_id = os.getenv("MAINTENANCE_JOB_WORKER_ID") or os.getenv("HOSTNAME") or "worker"

    logger.info(
        "maintenance scheduler started",
        extra={"worker_id": worker_id, "batch_size": batch_size, "lock_ttl_seconds": lock_ttl_seconds},
    )

    while True:
        db = SessionLocal()
        try:
            ran = run_due_jobs_once(db, worker_id=worker_id, batch_size=batch_size, lock_ttl_seconds=lock_ttl_seconds)
            if ran:
                continue

            now = utcnow()
            sleep_for = _seconds_until_next_due(
                db,
                now=now,
                lock_ttl_seconds=lock_ttl_seconds,
                idle_sleep_seconds=idle_sleep_seconds,
                max_sleep_seconds=max_sleep_seconds,
            )
            logger.debug("no due jobs; sleeping", extra={"sleep_for_seconds": sleep_for})
        finally:
            db.close()

        time.sleep(sleep_for)


def main():
    logging.basicConfig(level=LOG_LEVEL)

    run_scheduler_loop(
        batch_size=int(os.getenv("MAINTENANCE_JOB_BATCH_SIZE") or "5"),
        lock_ttl_seconds=int(os.getenv("MAINTENANCE_JOB_LOCK_TTL_SECONDS") or "600"),
        idle_sleep_seconds=int(os.getenv("MAINTENANCE_JOB_IDLE_SLEEP_SECONDS") or "5"),
        max_sleep_seconds=int(os.getenv("MAINTENANCE_JOB_MAX_SLEEP_SECONDS") or "30"),
    )


if __name__ == "__main__":
    main()
