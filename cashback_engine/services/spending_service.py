from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from cashback_engine.models.cashback_transaction import CashbackTransaction, QUALIFYING_STATUSES
from cashback_engine.money import to_money
from cashback_engine.services.tier_resolver import SpendingSnapshot

TRAILING_YEAR = timedelta(days=365)


def _sum_eligible(db: Session, customer_id, since: datetime | None, now: datetime):
    q = (
        db.query(func.coalesce(func.sum(CashbackTransaction.eligible_amount), 0))
        .filter(CashbackTransaction.customer_id == customer_id)
        .filter(CashbackTransaction.status.in_(QUALIFYING_STATUSES))
        .filter(CashbackTransaction.created_at <= now)
    )
    if since is not None:
        q = q.filter(CashbackTransaction.created_at >= since)
    return to_money(q.scalar())


def get_spending_snapshot(db: Session, customer_id, now: datetime) -> SpendingSnapshot:
    """Lifetime and trailing-365-day spend, relative to ``now``."""
    return SpendingSnapshot(
        lifetime_spending=_sum_eligible(db, customer_id, None, now),
        trailing_year_spending=_sum_eligible(db, customer_id, now - TRAILING_YEAR, now),
    )


def get_spending_since(db: Session, customer_id, since: datetime, now: datetime):
    return _sum_eligible(db, customer_id, since, now)
