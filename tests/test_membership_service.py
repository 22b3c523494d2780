from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func

from cashback_engine.errors import ConcurrencyConflict, NotFoundError, ValidationError
from cashback_engine.models.cashback_transaction import CashbackStatus, CashbackTransaction
from cashback_engine.models.customer_analytics import CustomerAnalytics
from cashback_engine.models.customer_membership import CustomerMembership
from cashback_engine.models.tier_change_log import TierChangeLog
from cashback_engine.services import membership_service
from cashback_engine.services.atomic import lock_customer, run_atomic

NOW = datetime(2026, 6, 1, 12, 0, 0)
MERCHANT = "demo.myshopify.com"


def _add_order(db, customer, amount, *, created_at=NOW, order_id=None, status=CashbackStatus.COMPLETED):
    tx = CashbackTransaction(
        merchant_id=customer.merchant_id,
        customer_id=customer.id,
        order_id=order_id or f"order-{amount}-{created_at.isoformat()}",
        currency="USD",
        eligible_amount=Decimal(amount),
        cashback_amount=Decimal("0"),
        cashback_percent_snapshot=Decimal("1"),
        status=status.value,
        created_at=created_at,
    )
    db.add(tx)
    db.commit()
    return tx


def _active_count(db, customer):
    return (
        db.query(func.count(CustomerMembership.id))
        .filter(CustomerMembership.customer_id == customer.id)
        .filter(CustomerMembership.is_active.is_(True))
        .scalar()
    )


def _change_types(db, customer):
    rows = (
        db.query(TierChangeLog.change_type)
        .filter(TierChangeLog.customer_id == customer.id)
        .order_by(TierChangeLog.created_at.asc())
        .all()
    )
    return [r[0] for r in rows]


def test_initial_assignment_uses_base_tier(db, bronze_gold, make_customer):
    bronze, _ = bronze_gold
    customer = make_customer()

    membership = membership_service.assign_initial(db, customer.id, now=NOW)

    assert membership.tier_id == bronze.id
    assert membership.assignment_type == "AUTOMATIC"
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT"]


def test_initial_assignment_is_idempotent(db, bronze_gold, make_customer):
    customer = make_customer()

    first = membership_service.assign_initial(db, customer.id, now=NOW)
    second = membership_service.assign_initial(db, customer.id, now=NOW + timedelta(minutes=1))

    assert first.id == second.id
    assert _active_count(db, customer) == 1
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT"]


def test_initial_assignment_without_tiers_is_rejected(db, make_customer):
    customer = make_customer()
    with pytest.raises(ValidationError):
        membership_service.assign_initial(db, customer.id, now=NOW)


def test_evaluate_upgrades_and_logs_snapshot(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "600")

    result = membership_service.evaluate(db, customer.id, now=NOW)

    assert result.changed is True
    assert result.change_type == "AUTOMATIC_UPGRADE"
    assert result.membership.tier_id == gold.id
    assert _active_count(db, customer) == 1

    log = (
        db.query(TierChangeLog)
        .filter(TierChangeLog.customer_id == customer.id)
        .filter(TierChangeLog.change_type == "AUTOMATIC_UPGRADE")
        .one()
    )
    assert log.snapshot["newTier"]["name"] == "Gold"
    assert log.snapshot["annualSpending"] == "600.00"

    closed = (
        db.query(CustomerMembership)
        .filter(CustomerMembership.customer_id == customer.id)
        .filter(CustomerMembership.is_active.is_(False))
        .one()
    )
    assert closed.end_date == NOW


def test_evaluate_is_noop_when_tier_unchanged(db, bronze_gold, make_customer):
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "100")

    result = membership_service.evaluate(db, customer.id, now=NOW)

    assert result.changed is False
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT"]


def test_evaluate_downgrades_when_spend_ages_out(db, bronze_gold, make_customer):
    bronze, _ = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "600")
    membership_service.evaluate(db, customer.id, now=NOW)

    later = NOW + timedelta(days=366)
    result = membership_service.evaluate(db, customer.id, now=later)

    assert result.change_type == "AUTOMATIC_DOWNGRADE"
    assert result.membership.tier_id == bronze.id


def test_sync_failed_transactions_do_not_qualify(db, bronze_gold, make_customer):
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "600", status=CashbackStatus.EXTERNAL_SYNC_FAILED)

    assert membership_service.evaluate(db, customer.id, now=NOW).changed is False


def test_evaluate_without_membership_assigns_initial(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    _add_order(db, customer, "700")

    result = membership_service.evaluate(db, customer.id, now=NOW)

    assert result.change_type == "INITIAL_ASSIGNMENT"
    assert result.membership.tier_id == gold.id


def test_manual_assignment_holds_until_expiry(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)

    end_date = NOW + timedelta(days=30)
    membership = membership_service.assign_manually(
        db,
        customer.id,
        gold.id,
        actor="admin@example.com",
        reason="VIP apology",
        end_date=end_date,
        now=NOW,
    )

    assert membership.assignment_type == "MANUAL"
    assert membership.assigned_by == "admin@example.com"
    assert membership.end_date == end_date

    # spending does not qualify for Gold, but the override stands until it expires
    result = membership_service.evaluate(db, customer.id, now=NOW + timedelta(days=1))
    assert result.changed is False
    assert result.membership.tier_id == gold.id


def test_manual_assignment_rejects_past_end_date(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    with pytest.raises(ValidationError):
        membership_service.assign_manually(
            db, customer.id, gold.id, actor="admin", end_date=NOW - timedelta(days=1), now=NOW
        )


def test_manual_assignment_unknown_tier(db, bronze_gold, make_customer):
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    with pytest.raises(NotFoundError):
        membership_service.assign_manually(db, customer.id, customer.id, actor="admin", now=NOW)
    assert _active_count(db, customer) == 1


def test_revert_expired_returns_to_spend_tier(db, bronze_gold, make_customer):
    bronze, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    end_date = NOW + timedelta(days=7)
    membership_service.assign_manually(db, customer.id, gold.id, actor="admin", end_date=end_date, now=NOW)

    early = membership_service.revert_expired(db, MERCHANT, now=end_date - timedelta(seconds=1))
    assert early == {"processed": 0, "reverted": 0, "failed": 0}

    summary = membership_service.revert_expired(db, MERCHANT, now=end_date)

    assert summary == {"processed": 1, "reverted": 1, "failed": 0}
    active = membership_service.get_active_membership(db, customer.id)
    assert active.tier_id == bronze.id
    assert active.assignment_type == "AUTOMATIC"
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT", "MANUAL_OVERRIDE", "EXPIRATION_REVERT"]
    assert _active_count(db, customer) == 1


def test_revert_expired_keeps_tier_when_spend_qualifies(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    end_date = NOW + timedelta(days=7)
    membership_service.assign_manually(db, customer.id, gold.id, actor="admin", end_date=end_date, now=NOW)
    _add_order(db, customer, "800", created_at=NOW + timedelta(days=1))

    membership_service.revert_expired(db, MERCHANT, now=end_date)

    active = membership_service.get_active_membership(db, customer.id)
    assert active.tier_id == gold.id
    assert active.assignment_type == "AUTOMATIC"
    assert _change_types(db, customer)[-1] == "EXPIRATION_REVERT"


def test_batch_evaluate_counts_changes(db, bronze_gold, make_customer):
    customers = [make_customer(str(2000 + i)) for i in range(3)]
    for c in customers:
        membership_service.assign_initial(db, c.id, now=NOW)
    _add_order(db, customers[1], "900")

    summary = membership_service.batch_evaluate(db, MERCHANT, batch_size=2, now=NOW)

    assert summary == {"processed": 3, "changed": 1, "failed": 0}


def test_analytics_refreshed_on_transition(db, bronze_gold, make_customer):
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "600")
    membership_service.evaluate(db, customer.id, now=NOW)

    analytics = db.query(CustomerAnalytics).filter(CustomerAnalytics.customer_id == customer.id).one()
    assert analytics.yearly_spending == Decimal("600.00")
    assert analytics.order_count == 1
    assert analytics.tier_upgrade_count == 1
    assert analytics.calculated_at == NOW


def test_tier_info_reports_progress(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "125")

    info = membership_service.get_tier_info(db, MERCHANT, customer.id, now=NOW)

    assert info["membership"].tier.name == "Bronze"
    assert info["progress"]["next_tier_id"] == gold.id
    assert info["progress"]["remaining_spending"] == Decimal("375.00")
    assert info["progress"]["progress_percentage"] == Decimal("25.00")


def test_tier_info_other_merchant_not_found(db, bronze_gold, make_customer):
    customer = make_customer()
    with pytest.raises(NotFoundError):
        membership_service.get_tier_info(db, "other.myshopify.com", customer.id, now=NOW)


def test_failed_transition_leaves_no_partial_state(db, bronze_gold, make_customer, monkeypatch):
    bronze, _ = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    _add_order(db, customer, "600")

    def broken_refresh(*args, **kwargs):
        raise RuntimeError("analytics store unavailable")

    monkeypatch.setattr(membership_service, "refresh_customer_analytics", broken_refresh)

    with pytest.raises(RuntimeError):
        membership_service.evaluate(db, customer.id, now=NOW)

    active = membership_service.get_active_membership(db, customer.id)
    assert active.tier_id == bronze.id
    assert active.end_date is None
    assert _active_count(db, customer) == 1
    assert db.query(CustomerMembership).filter(CustomerMembership.customer_id == customer.id).count() == 1
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT"]


def test_second_active_membership_conflicts_and_is_retried(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    attempts = []

    def insert_second_active():
        attempts.append(1)
        lock_customer(db, customer.id)
        db.add(CustomerMembership(customer_id=customer.id, tier_id=gold.id, is_active=True, start_date=NOW))
        db.flush()

    with pytest.raises(ConcurrencyConflict):
        run_atomic(db, insert_second_active, attempts=3, label="double_activate")

    assert len(attempts) == 3
    assert _active_count(db, customer) == 1


def test_conflict_resolves_when_retry_sees_the_winner(db, bronze_gold, make_customer):
    bronze, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    attempts = []

    def activate_unless_present():
        attempts.append(1)
        lock_customer(db, customer.id)
        if len(attempts) > 1:
            return membership_service.get_active_membership(db, customer.id)
        db.add(CustomerMembership(customer_id=customer.id, tier_id=gold.id, is_active=True, start_date=NOW))
        db.flush()

    winner = run_atomic(db, activate_unless_present, attempts=3)

    assert len(attempts) == 2
    assert winner.tier_id == bronze.id
    assert _active_count(db, customer) == 1


def test_open_ended_manual_hold_survives_evaluation(db, bronze_gold, make_customer):
    _, gold = bronze_gold
    customer = make_customer()
    membership_service.assign_initial(db, customer.id, now=NOW)
    membership_service.assign_manually(db, customer.id, gold.id, actor="admin", now=NOW)

    result = membership_service.evaluate(db, customer.id, now=NOW + timedelta(days=400))

    assert result.changed is False
    assert result.membership.assignment_type == "MANUAL"
    assert _change_types(db, customer) == ["INITIAL_ASSIGNMENT", "MANUAL_OVERRIDE"]
