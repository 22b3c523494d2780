"""
Backfill of historical paid orders.

Imported orders become cashback transactions that count toward tier
qualification but earn nothing: the platform never credited them, and
granting store credit for past orders is left to a manual adjustment.
Each order is keyed on (merchant, order) exactly like a live delivery, so
re-running an import over an overlapping window only adds what is new,
and a live delivery for an imported order is a duplicate.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashback_engine.clock import as_naive_utc, utcnow
from cashback_engine.errors import EngineError, ExternalSyncError, NotFoundError, ValidationError
from cashback_engine.models.cashback_transaction import CashbackSource, CashbackStatus, CashbackTransaction
from cashback_engine.models.order_import import OrderImport, OrderImportStatus
from cashback_engine.money import ZERO
from cashback_engine.schemas.order_import import HistoricalOrder
from cashback_engine.services.analytics_service import refresh_customer_analytics
from cashback_engine.services.atomic import lock_customer, run_atomic
from cashback_engine.services.cashback_service import order_breakdown, order_skip_reason
from cashback_engine.services.customer_service import find_customer_by_external_id, get_or_create_customer
from cashback_engine.services.membership_service import evaluate
from cashback_engine.services.tier_catalog_service import list_active_tiers


logger = logging.getLogger(__name__)

MAX_RECORDED_ERRORS = 200


@dataclass
class _Tally:
    total_orders: int = 0
    processed_orders: int = 0
    new_transactions: int = 0
    skipped_transactions: int = 0
    new_customers: int = 0
    tiers_updated: int = 0
    errors: list = field(default_factory=list)
    touched_customers: set = field(default_factory=set)

    def error(self, message: str):
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(message)


def _parse_order(raw, tally: _Tally) -> HistoricalOrder | None:
    if isinstance(raw, HistoricalOrder):
        return raw
    try:
        return HistoricalOrder.model_validate(raw)
    except PydanticValidationError as e:
        ref = raw.get("orderId") if isinstance(raw, dict) else None
        tally.error(f"Order {ref or '?'}: invalid order data ({e.error_count()} errors)")
        return None


def _import_one(db: Session, merchant_id: str, order: HistoricalOrder, tally: _Tally, *, now: datetime):
    if not order.customerId or not order.customerId.strip():
        tally.error(f"Order {order.orderId} has no customer")
        return

    if order_skip_reason(order):
        tally.skipped_transactions += 1
        return

    eligible = order_breakdown(order).eligible_amount
    if eligible <= 0:
        tally.skipped_transactions += 1
        return

    created_at = as_naive_utc(order.createdAt)
    external_id = order.customerId.strip()

    is_new = find_customer_by_external_id(db, merchant_id, external_id) is None
    customer = get_or_create_customer(
        db,
        merchant_id,
        external_id,
        email=order.customerEmail,
        currency=order.currency,
        now=now,
    )
    customer_id = customer.id
    if is_new:
        tally.new_customers += 1
        tally.touched_customers.add(customer_id)

    def unit():
        lock_customer(db, customer_id)
        exists = (
            db.query(CashbackTransaction.id)
            .filter(CashbackTransaction.merchant_id == merchant_id)
            .filter(CashbackTransaction.order_id == order.orderId)
            .first()
        )
        if exists:
            return False

        db.add(
            CashbackTransaction(
                merchant_id=merchant_id,
                customer_id=customer_id,
                order_id=order.orderId,
                currency=order.currency,
                eligible_amount=eligible,
                cashback_amount=ZERO,
                cashback_percent_snapshot=ZERO,
                status=CashbackStatus.COMPLETED.value,
                source=CashbackSource.HISTORICAL_IMPORT.value,
                created_at=created_at,
            )
        )
        db.flush()
        return True

    created = run_atomic(db, unit, label="import_order")

    tally.processed_orders += 1
    if created:
        tally.new_transactions += 1
        tally.touched_customers.add(customer_id)
    else:
        tally.skipped_transactions += 1


def _refresh_customers(db: Session, tally: _Tally, *, update_tiers: bool, now: datetime):
    def refresh_unit(customer_id):
        return lambda: refresh_customer_analytics(db, lock_customer(db, customer_id), now=now)

    for customer_id in tally.touched_customers:
        try:
            run_atomic(db, refresh_unit(customer_id), label="import_refresh_analytics")
            if update_tiers and evaluate(db, customer_id, now=now).changed:
                tally.tiers_updated += 1
        except (EngineError, SQLAlchemyError) as e:
            logger.exception("customer refresh after import failed", extra={"customer_id": str(customer_id)})
            tally.error(f"Customer {customer_id}: {e}")


def import_orders(
    db: Session,
    merchant_id: str,
    orders,
    *,
    start_date: datetime,
    end_date: datetime,
    update_tiers: bool = True,
    now: datetime | None = None,
) -> OrderImport:
    """Record every paid order in ``orders`` created within the window.

    ``orders`` is any iterable of HistoricalOrder or raw dicts, typically
    ``StoreCreditClient.iter_orders``. Per-order problems are collected in
    the run's ``errors``; a platform failure while paging stops the run
    and marks it FAILED, keeping what was imported up to that point.
    """
    now = now or utcnow()
    start_date = as_naive_utc(start_date)
    end_date = as_naive_utc(end_date)
    if end_date < start_date:
        raise ValidationError("endDate must not be before startDate")
    if not list_active_tiers(db, merchant_id):
        raise ValidationError("No active tiers found; create at least one tier before importing")

    record = OrderImport(
        merchant_id=merchant_id,
        status=OrderImportStatus.PROCESSING.value,
        start_date=start_date,
        end_date=end_date,
        update_tiers=update_tiers,
        started_at=now,
    )
    db.add(record)
    db.commit()
    record_id = record.id

    tally = _Tally()
    status = OrderImportStatus.COMPLETED
    try:
        for raw in orders:
            order = _parse_order(raw, tally)
            if order is None:
                continue
            created_at = as_naive_utc(order.createdAt)
            if created_at < start_date or created_at > end_date:
                continue

            tally.total_orders += 1
            try:
                _import_one(db, merchant_id, order, tally, now=now)
            except (EngineError, SQLAlchemyError) as e:
                logger.exception(
                    "historical order import failed",
                    extra={"merchant_id": merchant_id, "order_id": order.orderId},
                )
                tally.error(f"Order {order.orderId}: {e}")
    except ExternalSyncError as e:
        logger.exception("order import stopped by platform error", extra={"merchant_id": merchant_id})
        tally.error(f"Platform error: {e.message}")
        status = OrderImportStatus.FAILED

    _refresh_customers(db, tally, update_tiers=update_tiers, now=now)

    record = db.query(OrderImport).filter(OrderImport.id == record_id).one()
    record.status = status.value
    record.total_orders = tally.total_orders
    record.processed_orders = tally.processed_orders
    record.new_transactions = tally.new_transactions
    record.skipped_transactions = tally.skipped_transactions
    record.new_customers = tally.new_customers
    record.tiers_updated = tally.tiers_updated
    record.errors = tally.errors or None
    record.completed_at = now
    db.commit()

    logger.info(
        "order import finished",
        extra={
            "merchant_id": merchant_id,
            "import_id": str(record_id),
            "status": status.value,
            "total_orders": tally.total_orders,
            "new_transactions": tally.new_transactions,
            "errors": len(tally.errors),
        },
    )
    return record


def list_imports(db: Session, merchant_id: str, *, limit: int = 20) -> list[OrderImport]:
    return (
        db.query(OrderImport)
        .filter(OrderImport.merchant_id == merchant_id)
        .order_by(OrderImport.started_at.desc())
        .limit(max(1, min(limit, 100)))
        .all()
    )


def get_import(db: Session, merchant_id: str, import_id) -> OrderImport:
    record = db.query(OrderImport).filter(OrderImport.id == import_id).first()
    if not record or record.merchant_id != merchant_id:
        raise NotFoundError("Order import not found")
    return record
