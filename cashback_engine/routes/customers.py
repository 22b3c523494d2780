from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from cashback_engine.db import get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.deps.store_credit import get_store_credit_client
from cashback_engine.errors import ValidationError
from cashback_engine.schemas.customer import (
    CashbackTransactionOut,
    CustomerCreate,
    CustomerOut,
    CustomerTierInfoOut,
    EvaluationOut,
    ManualTierAssign,
    MembershipOut,
)
from cashback_engine.schemas.ledger import (
    CreditAdjustment,
    CreditAdjustmentOut,
    InitialBalanceImport,
    LedgerEntryOut,
    LedgerVerificationOut,
    SyncOut,
)
from cashback_engine.services import cashback_service, ledger_service, membership_service
from cashback_engine.services.customer_service import get_customer, get_or_create_customer


router = APIRouter(prefix="/customers", tags=["customers"])


def _require_client(client):
    if client is None:
        raise ValidationError("Store credit platform is not configured")
    return client


@router.post("", response_model=CustomerOut)
def upsert_customer(payload: CustomerCreate, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    customer = get_or_create_customer(
        db,
        merchant,
        payload.externalCustomerId,
        email=payload.email,
        currency=payload.currency,
    )
    db.refresh(customer)
    return customer


@router.get("/{customer_id}", response_model=CustomerTierInfoOut)
def get_customer_tier_info(customer_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    info = membership_service.get_tier_info(db, merchant, customer_id)
    membership = info["membership"]
    spending = info["spending"]
    return {
        "customer": info["customer"],
        "membership": membership,
        "tier_name": membership.tier.name if membership else None,
        "cashback_percent": membership.tier.cashback_percent if membership else None,
        "spending": {
            "lifetime_spending": spending.lifetime_spending,
            "trailing_year_spending": spending.trailing_year_spending,
        },
        "progress": info["progress"],
        "recent_changes": info["recent_changes"],
    }


@router.post("/{customer_id}/evaluate", response_model=EvaluationOut)
def evaluate_customer(customer_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    """Re-resolve the tier from spending. An unexpired manual assignment is kept as is."""
    get_customer(db, merchant, customer_id)
    result = membership_service.evaluate(db, customer_id)
    return {
        "customer_id": result.customer_id,
        "changed": result.changed,
        "change_type": result.change_type,
        "tier_id": result.membership.tier_id if result.membership else None,
    }


@router.post("/{customer_id}/tier", response_model=MembershipOut)
def assign_tier(
    customer_id: UUID,
    payload: ManualTierAssign,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    get_customer(db, merchant, customer_id)
    return membership_service.assign_manually(
        db,
        customer_id,
        payload.tier_id,
        actor=payload.actor,
        reason=payload.reason,
        end_date=payload.end_date,
    )


@router.get("/{customer_id}/transactions", response_model=list[CashbackTransactionOut])
def list_cashback_transactions(
    customer_id: UUID,
    limit: int = 50,
    offset: int = 0,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    get_customer(db, merchant, customer_id)
    return cashback_service.list_transactions(db, customer_id, limit=limit, offset=offset)


@router.get("/{customer_id}/ledger", response_model=list[LedgerEntryOut])
def list_ledger_entries(
    customer_id: UUID,
    limit: int = 100,
    offset: int = 0,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    get_customer(db, merchant, customer_id)
    return ledger_service.list_entries(db, customer_id, limit=limit, offset=offset)


@router.get("/{customer_id}/ledger/verify", response_model=LedgerVerificationOut)
def verify_ledger(customer_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    get_customer(db, merchant, customer_id)
    return ledger_service.verify_ledger(db, customer_id)


@router.post("/{customer_id}/store-credit/adjust", response_model=CreditAdjustmentOut)
def adjust_store_credit(
    customer_id: UUID,
    payload: CreditAdjustment,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    result = ledger_service.adjust_credit(
        db,
        customer_id,
        amount=payload.amount,
        direction=payload.direction,
        actor=payload.actor,
        merchant_id=merchant,
        description=payload.description,
        client=client,
    )
    return {"entry": result.entry, "synced": result.synced, "sync_error": result.sync_error}


@router.post("/{customer_id}/store-credit/import", response_model=LedgerEntryOut)
def import_store_credit(
    customer_id: UUID,
    payload: InitialBalanceImport,
    merchant: str = Depends(get_active_merchant),
    db: Session = Depends(get_db),
):
    get_customer(db, merchant, customer_id)
    return ledger_service.import_initial_balance(db, customer_id, payload.amount, reference=payload.reference)


@router.post("/{customer_id}/store-credit/sync", response_model=SyncOut)
def sync_store_credit(
    customer_id: UUID,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    outcome = ledger_service.sync_customer(db, customer_id, _require_client(client), merchant_id=merchant)
    return {
        "customer_id": outcome.customer_id,
        "previous_balance": outcome.previous_balance,
        "external_balance": outcome.external_balance,
        "delta": outcome.delta,
        "updated": outcome.updated,
        "entry": outcome.entry,
        "unsynced_amount": outcome.unsynced_amount,
    }
