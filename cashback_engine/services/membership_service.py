"""
Membership state machine.

Every transition runs as one atomic unit under the customer row lock:
close the active membership, open the replacement, append the audit log
entry and recompute analytics. Nothing is committed unless all of it is.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cashback_engine.clock import as_naive_utc, utcnow
from cashback_engine.config import BATCH_SIZE
from cashback_engine.errors import EngineError, NotFoundError, ValidationError
from cashback_engine.models.customer import Customer
from cashback_engine.models.customer_membership import AssignmentType, CustomerMembership
from cashback_engine.models.tier import Tier
from cashback_engine.models.tier_change_log import TierChangeLog, TierChangeType
from cashback_engine.services.analytics_service import compute_next_tier_progress, refresh_customer_analytics
from cashback_engine.services.atomic import lock_customer, run_atomic
from cashback_engine.services.spending_service import get_spending_snapshot
from cashback_engine.services.tier_catalog_service import get_tier, list_active_tiers
from cashback_engine.services.tier_resolver import fallback_tier, qualifying_spend_for, resolve_tier


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "System"


@dataclass
class EvaluationResult:
    customer_id: object
    membership: CustomerMembership | None
    changed: bool
    change_type: str | None = None


def get_active_membership(db: Session, customer_id) -> CustomerMembership | None:
    return (
        db.query(CustomerMembership)
        .filter(CustomerMembership.customer_id == customer_id)
        .filter(CustomerMembership.is_active.is_(True))
        .first()
    )


def _tier_snapshot(tier: Tier | None) -> dict | None:
    if tier is None:
        return None
    return {
        "tierId": str(tier.id),
        "name": tier.name,
        "cashbackPercent": str(tier.cashback_percent),
        "minSpend": str(tier.min_spend) if tier.min_spend is not None else None,
        "evaluationPeriod": tier.evaluation_period,
    }


def _transition(
    db: Session,
    customer: Customer,
    *,
    current: CustomerMembership | None,
    to_tier: Tier,
    assignment_type: AssignmentType,
    change_type: TierChangeType,
    reason: str,
    triggered_by: str,
    now: datetime,
    end_date: datetime | None = None,
    snapshot: dict | None = None,
) -> CustomerMembership:
    from_tier = current.tier if current else None

    if current is not None:
        current.is_active = False
        current.end_date = now
        # release the active slot before the replacement row is inserted
        db.flush()

    membership = CustomerMembership(
        customer_id=customer.id,
        tier_id=to_tier.id,
        is_active=True,
        start_date=now,
        end_date=end_date,
        assignment_type=assignment_type.value,
        assigned_by=triggered_by if assignment_type == AssignmentType.MANUAL else None,
        reason=reason if assignment_type == AssignmentType.MANUAL else None,
        previous_tier_id=current.tier_id if current else None,
    )
    db.add(membership)

    db.add(
        TierChangeLog(
            customer_id=customer.id,
            from_tier_id=current.tier_id if current else None,
            to_tier_id=to_tier.id,
            change_type=change_type.value,
            reason=reason,
            triggered_by=triggered_by,
            snapshot={
                "previousTier": _tier_snapshot(from_tier),
                "newTier": _tier_snapshot(to_tier),
                **(snapshot or {}),
            },
            created_at=now,
        )
    )
    db.flush()

    refresh_customer_analytics(db, customer, now=now)

    logger.info(
        "tier transition",
        extra={
            "customer_id": str(customer.id),
            "merchant_id": customer.merchant_id,
            "from_tier_id": str(from_tier.id) if from_tier else None,
            "to_tier_id": str(to_tier.id),
            "change_type": change_type.value,
        },
    )
    return membership


def assign_initial(db: Session, customer_id, *, now: datetime | None = None) -> CustomerMembership:
    """Give a new customer the catalog's fallback tier."""
    now = now or utcnow()

    def unit():
        customer = lock_customer(db, customer_id)
        current = get_active_membership(db, customer.id)
        if current is not None:
            return current

        tier = fallback_tier(list_active_tiers(db, customer.merchant_id))
        if tier is None:
            raise ValidationError("No active tiers found for merchant")

        return _transition(
            db,
            customer,
            current=None,
            to_tier=tier,
            assignment_type=AssignmentType.AUTOMATIC,
            change_type=TierChangeType.INITIAL_ASSIGNMENT,
            reason="New customer default tier assignment",
            triggered_by=SYSTEM_ACTOR,
            now=now,
        )

    return run_atomic(db, unit, label="assign_initial")


def _is_manual_hold(membership: CustomerMembership | None, now: datetime) -> bool:
    if membership is None or membership.assignment_type != AssignmentType.MANUAL.value:
        return False
    return membership.end_date is None or membership.end_date > now


def _evaluate_locked(db: Session, customer: Customer, now: datetime) -> EvaluationResult:
    current = get_active_membership(db, customer.id)

    # unexpired manual overrides are left alone; revert_expired ends them
    if _is_manual_hold(current, now):
        return EvaluationResult(customer.id, current, changed=False)

    tiers = list_active_tiers(db, customer.merchant_id)
    if not tiers:
        return EvaluationResult(customer.id, current, changed=False)

    spending = get_spending_snapshot(db, customer.id, now)
    resolved = resolve_tier(tiers, spending)

    if current is not None and current.tier_id == resolved.id:
        return EvaluationResult(customer.id, current, changed=False)

    if current is None:
        change_type = TierChangeType.INITIAL_ASSIGNMENT
    elif Decimal(resolved.cashback_percent) > Decimal(current.tier.cashback_percent):
        change_type = TierChangeType.AUTOMATIC_UPGRADE
    else:
        change_type = TierChangeType.AUTOMATIC_DOWNGRADE

    membership = _transition(
        db,
        customer,
        current=current,
        to_tier=resolved,
        assignment_type=AssignmentType.AUTOMATIC,
        change_type=change_type,
        reason="Automatic tier evaluation based on spending",
        triggered_by=SYSTEM_ACTOR,
        now=now,
        snapshot={
            "qualifyingSpending": str(qualifying_spend_for(resolved, spending)),
            "lifetimeSpending": str(spending.lifetime_spending),
            "annualSpending": str(spending.trailing_year_spending),
        },
    )
    return EvaluationResult(customer.id, membership, changed=True, change_type=change_type.value)


def evaluate(db: Session, customer_id, *, now: datetime | None = None) -> EvaluationResult:
    """Re-resolve the customer's tier; no-op when it is unchanged.

    Also a no-op while a MANUAL membership is active and unexpired: an
    operator's override holds until its end date, and revert_expired is
    what hands the customer back to automatic evaluation.
    """
    now = now or utcnow()

    def unit():
        customer = lock_customer(db, customer_id)
        return _evaluate_locked(db, customer, now)

    return run_atomic(db, unit, label="evaluate")


def assign_manually(
    db: Session,
    customer_id,
    tier_id,
    *,
    actor: str,
    reason: str | None = None,
    end_date: datetime | None = None,
    now: datetime | None = None,
) -> CustomerMembership:
    now = now or utcnow()
    if not actor or not actor.strip():
        raise ValidationError("actor is required for manual tier assignment")
    if end_date is not None:
        end_date = as_naive_utc(end_date)
        if end_date <= now:
            raise ValidationError("end_date must be in the future")

    def unit():
        customer = lock_customer(db, customer_id)
        tier = get_tier(db, customer.merchant_id, tier_id)
        if not tier.is_active:
            raise ValidationError("Cannot assign an inactive tier")

        current = get_active_membership(db, customer.id)
        return _transition(
            db,
            customer,
            current=current,
            to_tier=tier,
            assignment_type=AssignmentType.MANUAL,
            change_type=TierChangeType.MANUAL_OVERRIDE,
            reason=reason or "Manual tier assignment by admin",
            triggered_by=actor.strip(),
            now=now,
            end_date=end_date,
            snapshot={"endDate": end_date.isoformat() if end_date else None},
        )

    return run_atomic(db, unit, label="assign_manually")


def revert_expired(db: Session, merchant_id: str, *, now: datetime | None = None) -> dict:
    """End manual assignments whose end_date has passed.

    Each expired customer is re-resolved from spending and moved back to an
    automatic membership, logged as EXPIRATION_REVERT (even when the
    resolved tier is the one that expired).
    """
    now = now or utcnow()

    rows = (
        db.query(CustomerMembership.customer_id)
        .join(Customer, Customer.id == CustomerMembership.customer_id)
        .filter(Customer.merchant_id == merchant_id)
        .filter(CustomerMembership.is_active.is_(True))
        .filter(CustomerMembership.end_date.isnot(None))
        .filter(CustomerMembership.end_date <= now)
        .all()
    )

    processed = 0
    reverted = 0
    failed = 0

    for (customer_id,) in rows:
        processed += 1

        def unit():
            customer = lock_customer(db, customer_id)
            current = get_active_membership(db, customer.id)
            if current is None or current.end_date is None or current.end_date > now:
                return None

            tiers = list_active_tiers(db, customer.merchant_id)
            if not tiers:
                raise ValidationError("No active tiers found for merchant")

            spending = get_spending_snapshot(db, customer.id, now)
            resolved = resolve_tier(tiers, spending)
            return _transition(
                db,
                customer,
                current=current,
                to_tier=resolved,
                assignment_type=AssignmentType.AUTOMATIC,
                change_type=TierChangeType.EXPIRATION_REVERT,
                reason="Manual tier assignment expired",
                triggered_by=SYSTEM_ACTOR,
                now=now,
                snapshot={
                    "expiredAssignment": {
                        "tierId": str(current.tier_id),
                        "assignedBy": current.assigned_by,
                        "reason": current.reason,
                        "endDate": current.end_date.isoformat(),
                    },
                    "qualifyingSpending": str(qualifying_spend_for(resolved, spending)),
                },
            )

        try:
            if run_atomic(db, unit, label="revert_expired") is not None:
                reverted += 1
        except (EngineError, SQLAlchemyError):
            failed += 1
            logger.exception(
                "expired membership revert failed",
                extra={"merchant_id": merchant_id, "customer_id": str(customer_id)},
            )

    return {"processed": processed, "reverted": reverted, "failed": failed}


def batch_evaluate(db: Session, merchant_id: str, *, batch_size: int | None = None, now: datetime | None = None) -> dict:
    now = now or utcnow()
    batch_size = max(1, batch_size or BATCH_SIZE)

    processed = 0
    changed = 0
    failed = 0
    offset = 0

    while True:
        ids = [
            row[0]
            for row in db.query(Customer.id)
            .filter(Customer.merchant_id == merchant_id)
            .order_by(Customer.id.asc())
            .offset(offset)
            .limit(batch_size)
            .all()
        ]
        if not ids:
            break
        offset += len(ids)

        for customer_id in ids:
            processed += 1
            try:
                if evaluate(db, customer_id, now=now).changed:
                    changed += 1
            except (EngineError, SQLAlchemyError):
                failed += 1
                logger.exception(
                    "tier evaluation failed",
                    extra={"merchant_id": merchant_id, "customer_id": str(customer_id)},
                )

    logger.info(
        "batch tier evaluation finished",
        extra={"merchant_id": merchant_id, "processed": processed, "changed": changed, "failed": failed},
    )
    return {"processed": processed, "changed": changed, "failed": failed}


def get_tier_info(db: Session, merchant_id: str, customer_id, *, now: datetime | None = None) -> dict:
    now = now or utcnow()

    customer = db.query(Customer).filter(Customer.id == customer_id).first()
    if not customer or customer.merchant_id != merchant_id:
        raise NotFoundError("Customer not found")

    membership = get_active_membership(db, customer.id)
    spending = get_spending_snapshot(db, customer.id, now)

    progress = None
    if membership is not None:
        tiers = list_active_tiers(db, merchant_id)
        progress = compute_next_tier_progress(tiers, membership.tier, spending)

    recent_changes = (
        db.query(TierChangeLog)
        .filter(TierChangeLog.customer_id == customer.id)
        .order_by(TierChangeLog.created_at.desc())
        .limit(5)
        .all()
    )

    return {
        "customer": customer,
        "membership": membership,
        "spending": spending,
        "progress": progress,
        "recent_changes": recent_changes,
    }
