from datetime import timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from cashback_engine.config import SYNC_STALE_AFTER_HOURS
from cashback_engine.db import SessionLocal, get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.deps.store_credit import get_store_credit_client
from cashback_engine.errors import ValidationError
from cashback_engine.schemas.ledger import BulkSyncOut
from cashback_engine.services import cashback_service, ledger_service, membership_service


router = APIRouter(prefix="/admin/maintenance", tags=["admin-maintenance"])


class BatchEvaluateOut(BaseModel):
    processed: int
    changed: int
    failed: int


class RevertExpiredOut(BaseModel):
    processed: int
    reverted: int
    failed: int


class RetryFailedSyncsOut(BaseModel):
    processed: int
    synced: int
    failed: int


@router.post("/evaluate-all", response_model=BatchEvaluateOut)
def evaluate_all(
    batch_size: int | None = None,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    return membership_service.batch_evaluate(db, merchant, batch_size=batch_size)


@router.post("/revert-expired", response_model=RevertExpiredOut)
def revert_expired(merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return membership_service.revert_expired(db, merchant)


@router.post("/bulk-sync", response_model=BulkSyncOut)
def bulk_sync(
    stale_only: bool = True,
    max_workers: int = 1,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    if client is None:
        raise ValidationError("Store credit platform is not configured")
    return ledger_service.bulk_sync(
        db,
        merchant,
        client,
        stale_after=timedelta(hours=SYNC_STALE_AFTER_HOURS) if stale_only else None,
        max_workers=max(1, min(max_workers, 8)),
        session_factory=SessionLocal if max_workers > 1 else None,
    )


@router.post("/retry-failed-syncs", response_model=RetryFailedSyncsOut)
def retry_failed_syncs(
    limit: int = 100,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    if client is None:
        raise ValidationError("Store credit platform is not configured")
    return cashback_service.retry_failed_syncs(db, merchant, client, limit=limit)
