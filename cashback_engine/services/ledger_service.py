"""
Store-credit ledger and reconciliation with the external platform.

The ledger is what the app believes it owes; the platform is what the
customer can actually redeem. Every balance change appends exactly one
entry whose ``balance_after`` is derived from the previous entry, and the
customer's cached balance is rewritten from it in the same unit. Amounts
and balances are never edited after insertion; only reconciliation
metadata (``reconciled_at``, ``external_reference``, ``sync_status``) is
stamped later.

Entries the app originates (adjustments, cashback) carry a ``sync_status``
until the platform has applied them. Reconciliation discounts those
unsynced amounts, so a failed push is retried rather than reversed.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashback_engine.clock import utcnow
from cashback_engine.config import BATCH_SIZE, RECONCILIATION_EPSILON
from cashback_engine.errors import (
    EngineError,
    ExternalSyncError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from cashback_engine.models.customer import Customer
from cashback_engine.models.store_credit_ledger_entry import (
    UNSYNCED_STATUSES,
    LedgerEntryType,
    LedgerSource,
    LedgerSyncStatus,
    StoreCreditLedgerEntry,
)
from cashback_engine.money import ZERO, to_money
from cashback_engine.services.atomic import lock_customer, run_atomic


logger = logging.getLogger(__name__)


class AdjustmentDirection(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


@dataclass
class AdjustmentResult:
    entry: StoreCreditLedgerEntry
    synced: bool
    sync_error: str | None = None


@dataclass
class SyncOutcome:
    customer_id: object
    previous_balance: Decimal
    external_balance: Decimal
    delta: Decimal
    updated: bool
    entry: StoreCreditLedgerEntry | None = None
    unsynced_amount: Decimal = ZERO


def _latest_entry(db: Session, customer_id) -> StoreCreditLedgerEntry | None:
    return (
        db.query(StoreCreditLedgerEntry)
        .filter(StoreCreditLedgerEntry.customer_id == customer_id)
        .order_by(StoreCreditLedgerEntry.sequence.desc())
        .first()
    )


def get_ledger_balance(db: Session, customer_id) -> Decimal:
    latest = _latest_entry(db, customer_id)
    return to_money(latest.balance_after) if latest else ZERO


def get_unsynced_amount(db: Session, customer_id) -> Decimal:
    """Net amount of app-side entries the platform has not applied yet."""
    total = (
        db.query(func.coalesce(func.sum(StoreCreditLedgerEntry.amount), 0))
        .filter(StoreCreditLedgerEntry.customer_id == customer_id)
        .filter(StoreCreditLedgerEntry.sync_status.in_(UNSYNCED_STATUSES))
        .scalar()
    )
    return to_money(total)


def append_entry(
    db: Session,
    customer: Customer,
    *,
    amount: Decimal,
    entry_type: LedgerEntryType,
    source: LedgerSource,
    now: datetime,
    description: str | None = None,
    external_reference: str | None = None,
    reconciled_at: datetime | None = None,
    sync_status: LedgerSyncStatus | None = None,
) -> StoreCreditLedgerEntry:
    """Append one entry for a customer already locked by the caller."""
    amount = to_money(amount)
    latest = _latest_entry(db, customer.id)
    previous = to_money(latest.balance_after) if latest else ZERO
    balance_after = previous + amount

    if balance_after < 0:
        raise InsufficientBalanceError(
            "Insufficient store credit balance",
            balance=previous,
            requested=-amount,
        )

    entry = StoreCreditLedgerEntry(
        customer_id=customer.id,
        sequence=(latest.sequence + 1) if latest else 1,
        amount=amount,
        balance_after=balance_after,
        type=entry_type.value,
        source=source.value,
        external_reference=external_reference,
        description=description,
        reconciled_at=reconciled_at,
        sync_status=sync_status.value if sync_status else None,
        created_at=now,
    )
    db.add(entry)
    customer.store_credit_balance = balance_after
    db.flush()
    return entry


def _get_customer(db: Session, customer_id, merchant_id: str | None) -> Customer:
    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer or (merchant_id is not None and customer.merchant_id != merchant_id):
        raise NotFoundError("Customer not found")
    return customer


def adjust_credit(
    db: Session,
    customer_id,
    *,
    amount,
    direction: AdjustmentDirection,
    actor: str,
    merchant_id: str | None = None,
    description: str | None = None,
    client=None,
    now: datetime | None = None,
) -> AdjustmentResult:
    now = now or utcnow()
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationError("amount must be positive")
    direction = AdjustmentDirection(direction)
    _get_customer(db, customer_id, merchant_id)

    signed = amount if direction == AdjustmentDirection.CREDIT else -amount

    def unit():
        customer = lock_customer(db, customer_id)
        if direction == AdjustmentDirection.DEBIT:
            balance = get_ledger_balance(db, customer.id)
            if amount > balance:
                raise InsufficientBalanceError(
                    "Insufficient store credit balance",
                    balance=balance,
                    requested=amount,
                )
        return append_entry(
            db,
            customer,
            amount=signed,
            entry_type=LedgerEntryType.MANUAL_ADJUSTMENT,
            source=LedgerSource.APP_MANUAL,
            now=now,
            description=description or f"Manual {direction.value.lower()} by {actor}",
            sync_status=LedgerSyncStatus.PENDING,
        )

    entry = run_atomic(db, unit, label="adjust_credit")

    if client is None:
        return AdjustmentResult(entry=entry, synced=False)
    return push_adjustment(db, entry, client, now=now)


def push_adjustment(db: Session, entry: StoreCreditLedgerEntry, client, *, now: datetime | None = None) -> AdjustmentResult:
    """Apply a committed manual adjustment on the platform and record the outcome.

    A failure leaves the entry FAILED with its error; the local balance
    stands and retry_unsynced_adjustments pushes it again later.
    """
    now = now or utcnow()
    customer = db.query(Customer).filter(Customer.id == entry.customer_id).one()
    amount = to_money(entry.amount)
    push = client.credit if amount > 0 else client.debit

    error = None
    result = None
    try:
        result = push(customer.external_customer_id, abs(amount), customer.currency)
        if not result.ok:
            error = result.error_message()
    except ExternalSyncError as e:
        error = e.message

    try:
        if error is None:
            entry.sync_status = LedgerSyncStatus.SYNCED.value
            entry.sync_error = None
            entry.external_reference = result.external_transaction_id
            entry.reconciled_at = now
            customer.last_synced_at = now
        else:
            entry.sync_status = LedgerSyncStatus.FAILED.value
            entry.sync_error = error[:2000]
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("failed to record adjustment sync outcome", extra={"entry_id": str(entry.id)})
        return AdjustmentResult(entry=entry, synced=False, sync_error="Sync outcome could not be recorded")

    if error is not None:
        logger.warning(
            "manual adjustment not applied on platform",
            extra={"customer_id": str(customer.id), "entry_id": str(entry.id), "error": error},
        )
        return AdjustmentResult(entry=entry, synced=False, sync_error=error)

    return AdjustmentResult(entry=entry, synced=True)


def retry_unsynced_adjustments(
    db: Session,
    merchant_id: str,
    client,
    *,
    limit: int = 100,
    now: datetime | None = None,
) -> dict:
    """Push manual adjustments the platform has not applied, oldest first."""
    now = now or utcnow()
    entries = (
        db.query(StoreCreditLedgerEntry)
        .join(Customer, Customer.id == StoreCreditLedgerEntry.customer_id)
        .filter(Customer.merchant_id == merchant_id)
        .filter(StoreCreditLedgerEntry.type == LedgerEntryType.MANUAL_ADJUSTMENT.value)
        .filter(StoreCreditLedgerEntry.sync_status.in_(UNSYNCED_STATUSES))
        .order_by(StoreCreditLedgerEntry.customer_id.asc(), StoreCreditLedgerEntry.sequence.asc())
        .limit(max(1, limit))
        .all()
    )

    synced = sum(1 for entry in entries if push_adjustment(db, entry, client, now=now).synced)
    return {"processed": len(entries), "synced": synced, "failed": len(entries) - synced}


def import_initial_balance(
    db: Session,
    customer_id,
    amount,
    *,
    reference: str | None = None,
    now: datetime | None = None,
) -> StoreCreditLedgerEntry:
    """Seed the ledger of a customer migrated with an existing balance."""
    now = now or utcnow()
    amount = to_money(amount)
    if amount < 0:
        raise ValidationError("amount must not be negative")

    def unit():
        customer = lock_customer(db, customer_id)
        if _latest_entry(db, customer.id) is not None:
            raise ValidationError("Ledger already has entries; use an adjustment instead")
        return append_entry(
            db,
            customer,
            amount=amount,
            entry_type=LedgerEntryType.INITIAL_IMPORT,
            source=LedgerSource.EXTERNAL_ADMIN,
            now=now,
            description="Initial balance import",
            external_reference=reference,
            reconciled_at=now,
        )

    return run_atomic(db, unit, label="import_initial_balance")


def sync_customer(
    db: Session,
    customer_id,
    client,
    *,
    merchant_id: str | None = None,
    epsilon: Decimal = RECONCILIATION_EPSILON,
    now: datetime | None = None,
) -> SyncOutcome:
    """Bring the local balance in line with the platform's.

    The remote read happens outside the customer lock; the comparison and
    the correcting entry happen inside it, against the ledger as it is at
    that moment. Entries still waiting to be pushed are not on the platform
    yet, so the platform balance is compared to the local balance without
    them.
    """
    now = now or utcnow()
    customer = _get_customer(db, customer_id, merchant_id)
    external = client.get_balance(customer.external_customer_id, customer.currency)

    def unit():
        locked = lock_customer(db, customer_id)
        local = get_ledger_balance(db, locked.id)
        unsynced = get_unsynced_amount(db, locked.id)
        delta = external - (local - unsynced)
        locked.last_synced_at = now

        if abs(delta) <= epsilon:
            db.flush()
            return SyncOutcome(locked.id, local, external, delta, updated=False, unsynced_amount=unsynced)

        entry = append_entry(
            db,
            locked,
            amount=delta,
            entry_type=LedgerEntryType.EXTERNAL_SYNC,
            source=LedgerSource.RECONCILIATION,
            now=now,
            description="Store credit sync from external platform",
            reconciled_at=now,
        )
        return SyncOutcome(locked.id, local, external, delta, updated=True, entry=entry, unsynced_amount=unsynced)

    outcome = run_atomic(db, unit, label="sync_customer")
    if outcome.updated:
        logger.info(
            "store credit reconciled",
            extra={
                "customer_id": str(outcome.customer_id),
                "previous_balance": str(outcome.previous_balance),
                "external_balance": str(outcome.external_balance),
                "delta": str(outcome.delta),
                "unsynced_amount": str(outcome.unsynced_amount),
            },
        )
    return outcome


def _stale_customer_ids(db: Session, merchant_id: str, *, after_id, cutoff: datetime | None, limit: int):
    q = db.query(Customer.id).filter(Customer.merchant_id == merchant_id)
    if cutoff is not None:
        q = q.filter(or_(Customer.last_synced_at.is_(None), Customer.last_synced_at < cutoff))
    if after_id is not None:
        q = q.filter(Customer.id > after_id)
    return [row[0] for row in q.order_by(Customer.id.asc()).limit(limit).all()]


def bulk_sync(
    db: Session,
    merchant_id: str,
    client,
    *,
    stale_after: timedelta | None = None,
    batch_size: int | None = None,
    max_workers: int = 1,
    session_factory=None,
    now: datetime | None = None,
) -> dict:
    """Reconcile every customer of a merchant, one atomic unit each.

    With ``stale_after`` only customers not synced within that window are
    visited. ``max_workers > 1`` needs a ``session_factory``: each worker
    runs its unit in its own session.
    """
    now = now or utcnow()
    batch_size = max(1, batch_size or BATCH_SIZE)
    cutoff = now - stale_after if stale_after is not None else None

    processed = 0
    updated = 0
    errors = 0
    error_details = []

    def sync_one(customer_id):
        if session_factory is None:
            return sync_customer(db, customer_id, client, merchant_id=merchant_id, now=now)
        worker_db = session_factory()
        try:
            return sync_customer(worker_db, customer_id, client, merchant_id=merchant_id, now=now)
        finally:
            worker_db.close()

    def guarded(customer_id):
        try:
            return customer_id, sync_one(customer_id), None
        except (EngineError, SQLAlchemyError) as e:
            logger.exception(
                "customer store credit sync failed",
                extra={"merchant_id": merchant_id, "customer_id": str(customer_id)},
            )
            return customer_id, None, str(e)

    parallel = max_workers > 1 and session_factory is not None
    executor = ThreadPoolExecutor(max_workers=max_workers) if parallel else None

    try:
        after_id = None
        while True:
            ids = _stale_customer_ids(db, merchant_id, after_id=after_id, cutoff=cutoff, limit=batch_size)
            if not ids:
                break
            after_id = ids[-1]

            results = executor.map(guarded, ids) if executor else map(guarded, ids)
            for customer_id, outcome, error in results:
                processed += 1
                if error is not None:
                    errors += 1
                    error_details.append({"customer_id": str(customer_id), "error": error})
                elif outcome.updated:
                    updated += 1
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    logger.info(
        "bulk store credit sync finished",
        extra={"merchant_id": merchant_id, "processed": processed, "updated": updated, "errors": errors},
    )
    return {"processed": processed, "updated": updated, "errors": errors, "error_details": error_details}


def list_entries(db: Session, customer_id, *, limit: int = 100, offset: int = 0) -> list[StoreCreditLedgerEntry]:
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    return (
        db.query(StoreCreditLedgerEntry)
        .filter(StoreCreditLedgerEntry.customer_id == customer_id)
        .order_by(StoreCreditLedgerEntry.sequence.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def verify_ledger(db: Session, customer_id) -> dict:
    """Replay the ledger and compare it to the cached balance."""
    customer = _get_customer(db, customer_id, None)
    entries = (
        db.query(StoreCreditLedgerEntry)
        .filter(StoreCreditLedgerEntry.customer_id == customer.id)
        .order_by(StoreCreditLedgerEntry.sequence.asc())
        .all()
    )

    running = ZERO
    broken_at = None
    for entry in entries:
        running += to_money(entry.amount)
        if broken_at is None and running != to_money(entry.balance_after):
            broken_at = entry.sequence

    cached = to_money(customer.store_credit_balance)
    return {
        "ok": broken_at is None and running == cached,
        "entries": len(entries),
        "replayed_balance": running,
        "cached_balance": cached,
        "first_broken_sequence": broken_at,
        "unsynced_amount": get_unsynced_amount(db, customer.id),
    }
