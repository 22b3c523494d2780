from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from cashback_engine.models.cashback_transaction import CashbackTransaction, QUALIFYING_STATUSES
from cashback_engine.models.customer_analytics import CustomerAnalytics
from cashback_engine.models.customer_membership import CustomerMembership
from cashback_engine.models.tier import Tier
from cashback_engine.models.tier_change_log import TierChangeLog, TierChangeType
from cashback_engine.money import ZERO, to_money
from cashback_engine.services.spending_service import get_spending_since, get_spending_snapshot
from cashback_engine.services.tier_resolver import SpendingSnapshot

QUARTER = timedelta(days=90)
MONTH = timedelta(days=30)

_UPGRADE_CHANGE_TYPES = (TierChangeType.AUTOMATIC_UPGRADE.value, TierChangeType.MANUAL_OVERRIDE.value)


def find_next_tier(tiers, current_tier):
    """Cheapest threshold tier paying more than the current one."""
    if current_tier is None:
        return None
    current_rate = Decimal(current_tier.cashback_percent)
    candidates = [t for t in tiers if t.min_spend is not None and Decimal(t.cashback_percent) > current_rate]
    if not candidates:
        return None
    return min(candidates, key=lambda t: (Decimal(t.cashback_percent), Decimal(t.min_spend), str(t.id)))


def compute_next_tier_progress(tiers, current_tier, spending: SpendingSnapshot) -> dict | None:
    next_tier = find_next_tier(tiers, current_tier)
    if next_tier is None:
        return None

    required = to_money(next_tier.min_spend)
    current = spending.for_period(next_tier.evaluation_period)
    if required <= 0:
        progress = Decimal(100)
    else:
        progress = min(Decimal(100), current * Decimal(100) / required)

    return {
        "next_tier_id": next_tier.id,
        "next_tier_name": next_tier.name,
        "next_tier_cashback_percent": next_tier.cashback_percent,
        "current_spending": current,
        "required_spending": required,
        "remaining_spending": max(ZERO, required - current),
        "progress_percentage": progress.quantize(Decimal("0.01")),
    }


def refresh_customer_analytics(db: Session, customer, *, now: datetime) -> CustomerAnalytics:
    """Recompute the analytics row for ``customer``; flushes, never commits."""
    spending = get_spending_snapshot(db, customer.id, now)

    order_count, last_order_date = (
        db.query(func.count(CashbackTransaction.id), func.max(CashbackTransaction.created_at))
        .filter(CashbackTransaction.customer_id == customer.id)
        .filter(CashbackTransaction.status.in_(QUALIFYING_STATUSES))
        .filter(CashbackTransaction.created_at <= now)
        .one()
    )
    order_count = int(order_count or 0)

    membership = (
        db.query(CustomerMembership)
        .filter(CustomerMembership.customer_id == customer.id)
        .filter(CustomerMembership.is_active.is_(True))
        .first()
    )

    last_change = (
        db.query(TierChangeLog.created_at)
        .filter(TierChangeLog.customer_id == customer.id)
        .order_by(TierChangeLog.created_at.desc())
        .first()
    )
    last_tier_change = last_change[0] if last_change else (membership.start_date if membership else None)

    upgrade_count = (
        db.query(func.count(TierChangeLog.id))
        .filter(TierChangeLog.customer_id == customer.id)
        .filter(TierChangeLog.change_type.in_(_UPGRADE_CHANGE_TYPES))
        .scalar()
    ) or 0

    progress = ZERO
    if membership is not None:
        tiers = (
            db.query(Tier)
            .filter(Tier.merchant_id == customer.merchant_id)
            .filter(Tier.is_active.is_(True))
            .all()
        )
        info = compute_next_tier_progress(tiers, membership.tier, spending)
        if info:
            progress = info["progress_percentage"]

    analytics = db.query(CustomerAnalytics).filter(CustomerAnalytics.customer_id == customer.id).first()
    if analytics is None:
        analytics = CustomerAnalytics(customer_id=customer.id, merchant_id=customer.merchant_id)
        db.add(analytics)

    analytics.lifetime_spending = spending.lifetime_spending
    analytics.yearly_spending = spending.trailing_year_spending
    analytics.quarterly_spending = get_spending_since(db, customer.id, now - QUARTER, now)
    analytics.monthly_spending = get_spending_since(db, customer.id, now - MONTH, now)
    analytics.order_count = order_count
    analytics.avg_order_value = to_money(spending.lifetime_spending / order_count) if order_count else ZERO
    analytics.last_order_date = last_order_date
    analytics.days_since_last_order = (now - last_order_date).days if last_order_date else None
    analytics.last_tier_change = last_tier_change
    analytics.current_tier_days = max(0, (now - last_tier_change).days) if last_tier_change else 0
    analytics.tier_upgrade_count = int(upgrade_count)
    analytics.next_tier_progress = progress
    analytics.calculated_at = now

    db.flush()
    return analytics
