from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from cashback_engine.db import get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.schemas.tier import TierCreate, TierDeleteOut, TierDistributionOut, TierOut, TierUpdate
from cashback_engine.services import tier_catalog_service


router = APIRouter(prefix="/admin/tiers", tags=["admin-tiers"])


@router.get("", response_model=list[TierOut])
def list_tiers(
    active: bool | None = None,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    return tier_catalog_service.list_tiers(db, merchant, active=active)


@router.get("/distribution", response_model=list[TierDistributionOut])
def get_tier_distribution(merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return tier_catalog_service.tier_distribution(db, merchant)


@router.post("", response_model=TierOut)
def create_tier(payload: TierCreate, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return tier_catalog_service.create_tier(db, merchant, payload.model_dump())


@router.get("/{tier_id}", response_model=TierOut)
def get_tier(tier_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return tier_catalog_service.get_tier(db, merchant, tier_id)


@router.patch("/{tier_id}", response_model=TierOut)
def update_tier(
    tier_id: UUID,
    payload: TierUpdate,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    return tier_catalog_service.update_tier(db, merchant, tier_id, payload.model_dump(exclude_unset=True))


@router.delete("/{tier_id}", response_model=TierDeleteOut)
def delete_tier(tier_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return tier_catalog_service.delete_tier(db, merchant, tier_id)
