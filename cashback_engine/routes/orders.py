from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from cashback_engine.db import get_db
from cashback_engine.deps.merchant import get_active_merchant
from cashback_engine.deps.store_credit import get_store_credit_client
from cashback_engine.schemas.order_event import OrderPaidEvent, OrderPaidResult
from cashback_engine.services.cashback_service import process_order_paid


router = APIRouter(prefix="/events", tags=["events"])


@router.post("/orders-paid", response_model=OrderPaidResult)
def receive_order_paid(
    event: OrderPaidEvent,
    merchant: str = Depends(get_active_merchant),
    client=Depends(get_store_credit_client),
    db: Session = Depends(get_db),
):
    result = process_order_paid(db, merchant, event, client=client)
    tx = result.transaction
    return OrderPaidResult(
        outcome=result.outcome.value,
        reason=result.reason,
        transactionId=str(tx.id) if tx else None,
        eligibleAmount=tx.eligible_amount if tx else None,
        cashbackAmount=tx.cashback_amount if tx else None,
        cashbackPercent=tx.cashback_percent_snapshot if tx else None,
        status=tx.status if tx else None,
        tierChanged=bool(result.evaluation and result.evaluation.changed),
    )
