from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cashback_engine.clock import utcnow
from cashback_engine.db import get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.models.maintenance_job import MaintenanceJob
from cashback_engine.schemas.maintenance_job import MaintenanceJobCreate, MaintenanceJobOut, MaintenanceJobUpdate
from cashback_engine.services.maintenance_job_runner import compute_first_run_at, validate_schedule
from cashback_engine.services.maintenance_scheduler import run_claimed_job


router = APIRouter(prefix="/admin/maintenance-jobs", tags=["admin-maintenance-jobs"])


def _get_job(db: Session, merchant: str, job_id: UUID) -> MaintenanceJob:
    job = db.query(MaintenanceJob).filter(MaintenanceJob.id == job_id).first()
    if not job or job.merchant_id != merchant:
        raise HTTPException(status_code=404, detail="Maintenance job not found")
    return job


@router.get("", response_model=list[MaintenanceJobOut])
def list_maintenance_jobs(
    active: bool | None = None,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    q = db.query(MaintenanceJob).filter(MaintenanceJob.merchant_id == merchant)
    if active is not None:
        q = q.filter(MaintenanceJob.active.is_(active))
    return q.order_by(MaintenanceJob.created_at.desc()).all()


@router.post("", response_model=MaintenanceJobOut)
def create_maintenance_job(
    payload: MaintenanceJobCreate,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    existing = (
        db.query(MaintenanceJob.id)
        .filter(MaintenanceJob.merchant_id == merchant)
        .filter(MaintenanceJob.job_key == payload.job_key)
        .first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Job key already exists for merchant")

    schedule = payload.schedule.model_dump() if payload.schedule else None
    validate_schedule(schedule)

    job = MaintenanceJob(
        job_key=payload.job_key,
        merchant_id=merchant,
        job_type=payload.job_type,
        params=payload.params,
        active=payload.active,
        schedule=schedule,
    )
    if payload.active:
        job.next_run_at = compute_first_run_at(
            now=utcnow(),
            schedule=schedule,
            first_run_at=payload.first_run_at,
            start_in_seconds=payload.start_in_seconds,
        )

    db.add(job)
    db.commit()
    db.refresh(job)
    return job


@router.get("/{job_id}", response_model=MaintenanceJobOut)
def get_maintenance_job(job_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return _get_job(db, merchant, job_id)


@router.patch("/{job_id}", response_model=MaintenanceJobOut)
def update_maintenance_job(
    job_id: UUID,
    payload: MaintenanceJobUpdate,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    job = _get_job(db, merchant, job_id)
    data = payload.model_dump(exclude_unset=True)

    first_run_at = data.pop("first_run_at", None)
    start_in_seconds = data.pop("start_in_seconds", None)
    if "schedule" in data:
        validate_schedule(data["schedule"])

    for k, v in data.items():
        setattr(job, k, v)

    schedule_touched = "schedule" in data or "active" in data or first_run_at is not None or start_in_seconds is not None
    if schedule_touched:
        if job.active:
            job.next_run_at = compute_first_run_at(
                now=utcnow(),
                schedule=job.schedule,
                first_run_at=first_run_at,
                start_in_seconds=start_in_seconds,
            )
        else:
            job.next_run_at = None

    db.commit()
    db.refresh(job)
    return job


@router.delete("/{job_id}")
def delete_maintenance_job(job_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    job = _get_job(db, merchant, job_id)
    db.delete(job)
    db.commit()
    return {"deleted": True}


@router.post("/{job_id}/run", response_model=MaintenanceJobOut)
def run_maintenance_job_now(job_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    job = _get_job(db, merchant, job_id)
    if job.locked_at is not None:
        raise HTTPException(status_code=409, detail="Maintenance job is already running")

    now = utcnow()
    job.locked_at = now
    job.locked_by = "manual"
    db.commit()

    run_claimed_job(db, job, now=now)
    db.refresh(job)
    return job
