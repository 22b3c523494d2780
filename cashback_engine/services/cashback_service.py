"""
Order-paid intake: decide how much of an order earns cashback, credit it
once per order, then re-evaluate the customer's tier and push the credit
to the external platform.

Only money that actually moved through an external gateway earns
cashback. Gift cards and store credit are the merchant's own liabilities
and are excluded.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashback_engine.clock import utcnow
from cashback_engine.config import DEFAULT_CASHBACK_PERCENT
from cashback_engine.errors import EngineError, ExternalSyncError
from cashback_engine.models.cashback_transaction import CashbackStatus, CashbackTransaction
from cashback_engine.models.customer import Customer
from cashback_engine.models.store_credit_ledger_entry import (
    LedgerEntryType,
    LedgerSource,
    LedgerSyncStatus,
    StoreCreditLedgerEntry,
)
from cashback_engine.money import ZERO, percent_of, to_money
from cashback_engine.schemas.order_event import GatewayClass, OrderPaidEvent, PaymentStatus, parse_payment_legs
from cashback_engine.services.analytics_service import refresh_customer_analytics
from cashback_engine.services.atomic import lock_customer, run_atomic
from cashback_engine.services.customer_service import get_or_create_customer
from cashback_engine.services.ledger_service import append_entry, retry_unsynced_adjustments
from cashback_engine.services.membership_service import EvaluationResult, evaluate, get_active_membership


logger = logging.getLogger(__name__)

COUNTED_KINDS = ("SALE", "CAPTURE")
SKIPPED_FINANCIAL_STATUSES = ("voided", "refunded")


class OrderOutcome(str, Enum):
    CREDITED = "CREDITED"
    DUPLICATE = "DUPLICATE"
    SKIPPED = "SKIPPED"


@dataclass
class PaymentBreakdown:
    external_amount: Decimal = ZERO
    gift_card_amount: Decimal = ZERO
    store_credit_amount: Decimal = ZERO
    counted_leg_ids: list = field(default_factory=list)

    @property
    def eligible_amount(self) -> Decimal:
        return self.external_amount


@dataclass
class OrderProcessingResult:
    outcome: OrderOutcome
    transaction: CashbackTransaction | None = None
    reason: str | None = None
    breakdown: PaymentBreakdown | None = None
    evaluation: EvaluationResult | None = None


def compute_payment_breakdown(legs) -> PaymentBreakdown:
    """Split successful money movements by gateway class.

    Only SALE and CAPTURE legs move money. An AUTHORIZATION only reserves
    it, so an authorize-then-capture pair is counted once, via the capture.
    Legs repeated with the same id are counted once.
    """
    breakdown = PaymentBreakdown()
    seen_ids = set()

    for leg in legs:
        if leg.kind not in COUNTED_KINDS or leg.status != PaymentStatus.SUCCESS:
            continue
        if leg.id:
            if leg.id in seen_ids:
                continue
            seen_ids.add(leg.id)

        amount = to_money(leg.amount)
        gateway_class = leg.gateway_class
        if gateway_class == GatewayClass.GIFT_CARD:
            breakdown.gift_card_amount += amount
        elif gateway_class == GatewayClass.STORE_CREDIT:
            breakdown.store_credit_amount += amount
        else:
            breakdown.external_amount += amount
            breakdown.counted_leg_ids.append(leg.id)

    return breakdown


def compute_eligible_amount(legs) -> Decimal:
    return compute_payment_breakdown(legs).eligible_amount


def order_breakdown(event: OrderPaidEvent) -> PaymentBreakdown:
    if event.paymentLegs:
        return compute_payment_breakdown(parse_payment_legs(event.paymentLegs))
    # no leg detail: the order total is taken as paid externally
    return PaymentBreakdown(external_amount=to_money(event.totalPrice))


def _find_transaction(db: Session, merchant_id: str, order_id: str) -> CashbackTransaction | None:
    return (
        db.query(CashbackTransaction)
        .filter(CashbackTransaction.merchant_id == merchant_id)
        .filter(CashbackTransaction.order_id == order_id)
        .first()
    )


def order_skip_reason(event: OrderPaidEvent) -> str | None:
    if not event.customerId:
        return "Guest checkout"
    if event.cancelled:
        return "Order cancelled"
    if (event.financialStatus or "").strip().lower() in SKIPPED_FINANCIAL_STATUSES:
        return f"Order financial status is {event.financialStatus.strip().lower()}"
    return None


def process_order_paid(
    db: Session,
    merchant_id: str,
    event: OrderPaidEvent,
    *,
    client=None,
    now: datetime | None = None,
) -> OrderProcessingResult:
    now = now or utcnow()
    log_extra = {"merchant_id": merchant_id, "order_id": event.orderId}

    reason = order_skip_reason(event)
    if reason:
        logger.info("order skipped", extra={**log_extra, "reason": reason})
        return OrderProcessingResult(OrderOutcome.SKIPPED, reason=reason)

    existing = _find_transaction(db, merchant_id, event.orderId)
    if existing is not None:
        logger.info("duplicate order delivery", extra=log_extra)
        return OrderProcessingResult(OrderOutcome.DUPLICATE, transaction=existing)

    breakdown = order_breakdown(event)
    eligible = breakdown.eligible_amount
    if eligible <= 0:
        reason = "No cashback-eligible payment"
        logger.info("order skipped", extra={**log_extra, "reason": reason})
        return OrderProcessingResult(OrderOutcome.SKIPPED, reason=reason, breakdown=breakdown)

    customer = get_or_create_customer(
        db,
        merchant_id,
        event.customerId,
        email=event.customerEmail,
        currency=event.currency,
        now=now,
    )
    customer_id = customer.id

    def unit():
        locked = lock_customer(db, customer_id)
        # re-checked under the lock; a concurrent delivery may have won
        duplicate = _find_transaction(db, merchant_id, event.orderId)
        if duplicate is not None:
            return duplicate, False

        membership = get_active_membership(db, locked.id)
        percent = Decimal(membership.tier.cashback_percent) if membership else DEFAULT_CASHBACK_PERCENT
        cashback = percent_of(eligible, percent)

        tx = CashbackTransaction(
            merchant_id=merchant_id,
            customer_id=locked.id,
            order_id=event.orderId,
            currency=event.currency,
            eligible_amount=eligible,
            cashback_amount=cashback,
            cashback_percent_snapshot=percent,
            status=CashbackStatus.COMPLETED.value,
            created_at=now,
        )
        db.add(tx)
        db.flush()

        if cashback > 0:
            append_cashback_entry(db, locked, tx, now=now)

        locked.total_earned = to_money(locked.total_earned) + cashback
        refresh_customer_analytics(db, locked, now=now)
        return tx, True

    tx, created = run_atomic(db, unit, label="credit_cashback")
    if not created:
        logger.info("duplicate order delivery", extra=log_extra)
        return OrderProcessingResult(OrderOutcome.DUPLICATE, transaction=tx)

    logger.info(
        "cashback credited",
        extra={
            **log_extra,
            "customer_id": str(customer_id),
            "eligible_amount": str(tx.eligible_amount),
            "cashback_amount": str(tx.cashback_amount),
            "cashback_percent": str(tx.cashback_percent_snapshot),
        },
    )

    evaluation = None
    try:
        evaluation = evaluate(db, customer_id, now=now)
    except (EngineError, SQLAlchemyError):
        # the credit is committed; the next evaluation pass picks this up
        logger.exception("post-credit tier evaluation failed", extra={**log_extra, "customer_id": str(customer_id)})

    if client is not None and to_money(tx.cashback_amount) > 0:
        push_cashback(db, tx, client, now=now)

    return OrderProcessingResult(OrderOutcome.CREDITED, transaction=tx, breakdown=breakdown, evaluation=evaluation)


def append_cashback_entry(db: Session, customer: Customer, tx: CashbackTransaction, *, now: datetime):
    return append_entry(
        db,
        customer,
        amount=tx.cashback_amount,
        entry_type=LedgerEntryType.CASHBACK_EARNED,
        source=LedgerSource.APP_CASHBACK,
        now=now,
        description=f"Cashback for order {tx.order_id} at {tx.cashback_percent_snapshot}%",
        external_reference=tx.order_id,
        sync_status=LedgerSyncStatus.PENDING,
    )


def push_cashback(db: Session, tx: CashbackTransaction, client, *, now: datetime | None = None) -> bool:
    """Credit the platform for a committed transaction and record the outcome.

    Never raises for platform failures; they are stored on the transaction
    as EXTERNAL_SYNC_FAILED for retry_failed_syncs to pick up.
    """
    now = now or utcnow()
    customer = db.query(Customer).filter(Customer.id == tx.customer_id).one()

    error = None
    result = None
    try:
        result = client.credit(customer.external_customer_id, to_money(tx.cashback_amount), tx.currency)
        if not result.ok:
            error = result.error_message()
    except ExternalSyncError as e:
        error = e.message

    try:
        entry = (
            db.query(StoreCreditLedgerEntry)
            .filter(StoreCreditLedgerEntry.customer_id == customer.id)
            .filter(StoreCreditLedgerEntry.type == LedgerEntryType.CASHBACK_EARNED.value)
            .filter(StoreCreditLedgerEntry.external_reference == tx.order_id)
            .first()
        )
        if error is None:
            tx.status = CashbackStatus.SYNCED_EXTERNAL.value
            tx.external_transaction_id = result.external_transaction_id
            tx.sync_error = None
            customer.last_synced_at = now
            if entry is not None:
                entry.reconciled_at = now
                entry.sync_status = LedgerSyncStatus.SYNCED.value
                entry.sync_error = None
        else:
            tx.status = CashbackStatus.EXTERNAL_SYNC_FAILED.value
            tx.sync_error = error[:2000]
            if entry is not None:
                entry.sync_status = LedgerSyncStatus.FAILED.value
                entry.sync_error = error[:2000]
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to record cashback sync outcome", extra={"transaction_id": str(tx.id)})
        return False

    if error is None:
        logger.info(
            "cashback pushed to platform",
            extra={"transaction_id": str(tx.id), "external_transaction_id": tx.external_transaction_id},
        )
        return True

    logger.warning(
        "cashback push to platform failed",
        extra={"transaction_id": str(tx.id), "order_id": tx.order_id, "error": error},
    )
    return False


def retry_failed_syncs(
    db: Session,
    merchant_id: str,
    client,
    *,
    limit: int = 100,
    now: datetime | None = None,
) -> dict:
    """Re-push failed cashback credits, then unsynced manual adjustments."""
    now = now or utcnow()
    failed_txs = (
        db.query(CashbackTransaction)
        .filter(CashbackTransaction.merchant_id == merchant_id)
        .filter(CashbackTransaction.status == CashbackStatus.EXTERNAL_SYNC_FAILED.value)
        .order_by(CashbackTransaction.created_at.asc())
        .limit(max(1, limit))
        .all()
    )

    synced = 0
    resynced_customers = set()
    for tx in failed_txs:
        if push_cashback(db, tx, client, now=now):
            synced += 1
            resynced_customers.add(tx.customer_id)

    # synced transactions count toward spending again
    for customer_id in resynced_customers:
        try:
            evaluate(db, customer_id, now=now)
        except (EngineError, SQLAlchemyError):
            logger.exception("tier evaluation after sync retry failed", extra={"customer_id": str(customer_id)})

    adjustments = retry_unsynced_adjustments(db, merchant_id, client, limit=limit, now=now)

    processed = len(failed_txs) + adjustments["processed"]
    synced += adjustments["synced"]
    return {"processed": processed, "synced": synced, "failed": processed - synced}


def list_transactions(db: Session, customer_id, *, limit: int = 50, offset: int = 0) -> list[CashbackTransaction]:
    return (
        db.query(CashbackTransaction)
        .filter(CashbackTransaction.customer_id == customer_id)
        .order_by(CashbackTransaction.created_at.desc())
        .offset(max(0, offset))
        .limit(max(1, min(limit, 500)))
        .all()
    )
