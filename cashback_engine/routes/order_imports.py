from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from cashback_engine.db import get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.deps.store_credit import get_store_credit_client
from cashback_engine.errors import ValidationError
from cashback_engine.schemas.order_import import OrderImportOut, OrderImportRequest
from cashback_engine.services import order_import_service


router = APIRouter(prefix="/admin/order-imports", tags=["admin-order-imports"])


@router.post("", response_model=OrderImportOut)
def create_order_import(
    payload: OrderImportRequest,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    if payload.orders is not None:
        orders = payload.orders
    elif client is None:
        raise ValidationError("Store credit platform is not configured; pass the orders in the request")
    else:
        orders = client.iter_orders(created_from=payload.startDate, created_to=payload.endDate)

    return order_import_service.import_orders(
        db,
        merchant,
        orders,
        start_date=payload.startDate,
        end_date=payload.endDate,
        update_tiers=payload.updateTiers,
    )


@router.get("", response_model=list[OrderImportOut])
def list_order_imports(limit: int = 20, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return order_import_service.list_imports(db, merchant, limit=limit)


@router.get("/{import_id}", response_model=OrderImportOut)
def get_order_import(import_id: UUID, merchant: str = Depends(get_active_merchant), db: Session = Depends(get_db)):
    return order_import_service.get_import(db, merchant, import_id)
