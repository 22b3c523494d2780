import logging
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from cashback_engine.errors import NotFoundError, ValidationError
from cashback_engine.models.customer import Customer
from cashback_engine.models.customer_analytics import CustomerAnalytics
from cashback_engine.models.customer_membership import CustomerMembership
from cashback_engine.models.tier import EvaluationPeriod, Tier
from cashback_engine.models.tier_change_log import TierChangeLog
from cashback_engine.money import to_money
from cashback_engine.services.tier_resolver import fallback_tier, order_tiers


logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("name", "min_spend", "cashback_percent", "evaluation_period", "is_active", "sort_hint")


def list_tiers(db: Session, merchant_id: str, *, active: bool | None = None) -> list[Tier]:
    q = db.query(Tier).filter(Tier.merchant_id == merchant_id)
    if active is not None:
        q = q.filter(Tier.is_active.is_(active))
    return order_tiers(q.all())


def list_active_tiers(db: Session, merchant_id: str) -> list[Tier]:
    return list_tiers(db, merchant_id, active=True)


def get_tier(db: Session, merchant_id: str, tier_id) -> Tier:
    tier = db.query(Tier).filter(Tier.id == tier_id).first()
    if not tier or tier.merchant_id != merchant_id:
        raise NotFoundError("Tier not found")
    return tier


def get_fallback_tier(db: Session, merchant_id: str) -> Tier | None:
    return fallback_tier(list_active_tiers(db, merchant_id))


def _validate_tier_fields(
    db: Session,
    *,
    merchant_id: str,
    tier_id,
    name: str,
    min_spend,
    cashback_percent,
    evaluation_period: str,
):
    if not name or not name.strip():
        raise ValidationError("name is required")

    if cashback_percent is None:
        raise ValidationError("cashback_percent is required")
    if not (Decimal(0) <= Decimal(cashback_percent) <= Decimal(100)):
        raise ValidationError("cashback_percent must be between 0 and 100")

    if min_spend is not None and Decimal(min_spend) < 0:
        raise ValidationError("min_spend must be >= 0")

    if evaluation_period not in {p.value for p in EvaluationPeriod}:
        raise ValidationError("evaluation_period must be ANNUAL or LIFETIME")

    dup_q = db.query(Tier.id).filter(Tier.merchant_id == merchant_id).filter(Tier.name == name.strip())
    if tier_id is not None:
        dup_q = dup_q.filter(Tier.id != tier_id)
    if dup_q.first():
        raise ValidationError("A tier with this name already exists")


def create_tier(db: Session, merchant_id: str, data: dict) -> Tier:
    evaluation_period = data.get("evaluation_period") or EvaluationPeriod.ANNUAL.value
    _validate_tier_fields(
        db,
        merchant_id=merchant_id,
        tier_id=None,
        name=data.get("name"),
        min_spend=data.get("min_spend"),
        cashback_percent=data.get("cashback_percent"),
        evaluation_period=evaluation_period,
    )

    tier = Tier(
        merchant_id=merchant_id,
        name=data["name"].strip(),
        min_spend=data.get("min_spend"),
        cashback_percent=data["cashback_percent"],
        evaluation_period=evaluation_period,
        is_active=data.get("is_active", True),
        sort_hint=data.get("sort_hint") or 0,
    )
    db.add(tier)
    db.commit()
    db.refresh(tier)

    logger.info("tier created", extra={"merchant_id": merchant_id, "tier_id": str(tier.id), "tier_name": tier.name})
    return tier


def update_tier(db: Session, merchant_id: str, tier_id, data: dict) -> Tier:
    """Update mutable tier fields.

    Past cashback transactions keep their percent snapshot, so rate changes
    only affect orders credited afterwards.
    """
    tier = get_tier(db, merchant_id, tier_id)

    final = {f: data.get(f, getattr(tier, f)) for f in _EDITABLE_FIELDS}
    _validate_tier_fields(
        db,
        merchant_id=merchant_id,
        tier_id=tier.id,
        name=final["name"],
        min_spend=final["min_spend"],
        cashback_percent=final["cashback_percent"],
        evaluation_period=final["evaluation_period"],
    )

    for field in _EDITABLE_FIELDS:
        if field in data:
            value = data[field]
            if field == "name":
                value = value.strip()
            setattr(tier, field, value)

    db.commit()
    db.refresh(tier)
    return tier


def count_active_members(db: Session, tier_id) -> int:
    return (
        db.query(func.count(CustomerMembership.id))
        .filter(CustomerMembership.tier_id == tier_id)
        .filter(CustomerMembership.is_active.is_(True))
        .scalar()
    ) or 0


def delete_tier(db: Session, merchant_id: str, tier_id) -> dict:
    """Delete a tier without active members.

    A tier referenced by membership history or the change log is
    deactivated instead, so the audit trail keeps its foreign keys.
    """
    tier = get_tier(db, merchant_id, tier_id)

    if count_active_members(db, tier.id) > 0:
        raise ValidationError("Cannot delete tier with active members. Please reassign members first.")

    has_history = (
        db.query(CustomerMembership.id)
        .filter((CustomerMembership.tier_id == tier.id) | (CustomerMembership.previous_tier_id == tier.id))
        .first()
        or db.query(TierChangeLog.id)
        .filter((TierChangeLog.to_tier_id == tier.id) | (TierChangeLog.from_tier_id == tier.id))
        .first()
    )
    if has_history:
        tier.is_active = False
        db.commit()
        return {"deleted": False, "deactivated": True}

    db.delete(tier)
    db.commit()
    return {"deleted": True, "deactivated": False}


def tier_distribution(db: Session, merchant_id: str) -> list[dict]:
    tiers = list_tiers(db, merchant_id)
    total_customers = db.query(func.count(Customer.id)).filter(Customer.merchant_id == merchant_id).scalar() or 0

    distribution = []
    for tier in tiers:
        rows = (
            db.query(CustomerAnalytics.lifetime_spending, CustomerAnalytics.yearly_spending)
            .select_from(CustomerMembership)
            .outerjoin(CustomerAnalytics, CustomerAnalytics.customer_id == CustomerMembership.customer_id)
            .filter(CustomerMembership.tier_id == tier.id)
            .filter(CustomerMembership.is_active.is_(True))
            .all()
        )
        member_count = len(rows)
        divisor = member_count or 1
        distribution.append(
            {
                "tier_id": tier.id,
                "name": tier.name,
                "cashback_percent": tier.cashback_percent,
                "is_active": tier.is_active,
                "member_count": member_count,
                "percentage": round(member_count * 100.0 / total_customers, 2) if total_customers else 0.0,
                "avg_lifetime_spending": to_money(sum((to_money(r[0]) for r in rows), Decimal(0)) / divisor),
                "avg_yearly_spending": to_money(sum((to_money(r[1]) for r in rows), Decimal(0)) / divisor),
            }
        )
    return distribution
