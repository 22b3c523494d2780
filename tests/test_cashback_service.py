from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from cashback_engine.models.cashback_transaction import CashbackTransaction
from cashback_engine.models.customer import Customer
from cashback_engine.models.store_credit_ledger_entry import StoreCreditLedgerEntry
from cashback_engine.models.tier_change_log import TierChangeLog
from cashback_engine.schemas.order_event import GatewayClass, OrderPaidEvent, classify_gateway, parse_payment_legs
from cashback_engine.services import cashback_service, tier_catalog_service
from cashback_engine.services.cashback_service import (
    OrderOutcome,
    compute_eligible_amount,
    compute_payment_breakdown,
    process_order_paid,
    retry_failed_syncs,
)
from cashback_engine.services.ledger_service import sync_customer, verify_ledger
from cashback_engine.services.membership_service import get_active_membership

NOW = datetime(2026, 6, 1, 12, 0, 0)
MERCHANT = "demo.myshopify.com"


def _leg(gateway, kind, amount, status="SUCCESS", **extra):
    return {"gateway": gateway, "kind": kind, "status": status, "amount": amount, **extra}


def _event(order_id="5001", customer_id="1001", legs=None, **extra):
    return OrderPaidEvent(
        orderId=order_id,
        customerId=customer_id,
        customerEmail=f"{customer_id}@example.com" if customer_id else None,
        currency="USD",
        paymentLegs=legs if legs is not None else [],
        **extra,
    )


def _customer(db, external_id="1001"):
    return (
        db.query(Customer)
        .filter(Customer.merchant_id == MERCHANT, Customer.external_customer_id == external_id)
        .one()
    )


@pytest.mark.parametrize(
    "gateway,expected",
    [
        ("gift_card", GatewayClass.GIFT_CARD),
        ("Shopify_Gift_Card", GatewayClass.GIFT_CARD),
        ("shopify_store_credit", GatewayClass.STORE_CREDIT),
        ("shopify_payments", GatewayClass.EXTERNAL),
        ("paypal", GatewayClass.EXTERNAL),
    ],
)
def test_classify_gateway(gateway, expected):
    assert classify_gateway(gateway) == expected


def test_parse_payment_legs_skips_unknown_kinds_and_missing_gateways():
    legs = parse_payment_legs(
        [
            _leg("shopify_payments", "sale", "10.00"),
            _leg("shopify_payments", "TELEPORT", "5.00"),
            _leg("", "SALE", "5.00"),
            _leg("paypal", "CAPTURE", "7.50", id="c1", parentTransactionId="a1"),
            "not-a-leg",
        ]
    )

    assert [leg.kind for leg in legs] == ["SALE", "CAPTURE"]
    assert legs[1].parentTransactionId == "a1"


def test_breakdown_excludes_gift_card_and_store_credit():
    legs = parse_payment_legs(
        [
            _leg("gift_card", "SALE", "20.00"),
            _leg("shopify_store_credit", "SALE", "5.00"),
            _leg("shopify_payments", "CAPTURE", "30.00"),
        ]
    )
    breakdown = compute_payment_breakdown(legs)

    assert breakdown.eligible_amount == Decimal("30.00")
    assert breakdown.gift_card_amount == Decimal("20.00")
    assert breakdown.store_credit_amount == Decimal("5.00")


def test_authorize_then_capture_counts_once():
    legs = parse_payment_legs(
        [
            _leg("shopify_payments", "AUTHORIZATION", "80.00", id="a1"),
            _leg("shopify_payments", "CAPTURE", "80.00", id="c1", parentTransactionId="a1"),
        ]
    )
    assert compute_eligible_amount(legs) == Decimal("80.00")


def test_failed_pending_and_repeated_legs_are_ignored():
    legs = parse_payment_legs(
        [
            _leg("shopify_payments", "SALE", "40.00", status="FAILURE", id="s0"),
            _leg("shopify_payments", "SALE", "40.00", status="PENDING", id="s1"),
            _leg("shopify_payments", "SALE", "40.00", id="s2"),
            _leg("shopify_payments", "SALE", "40.00", id="s2"),
            _leg("shopify_payments", "REFUND", "10.00", id="r1", parentTransactionId="s2"),
        ]
    )
    assert compute_eligible_amount(legs) == Decimal("40.00")


def test_scenario_new_customer_earns_then_upgrades(db, bronze_gold):
    bronze, gold = bronze_gold

    result = process_order_paid(
        db, MERCHANT, _event(legs=[_leg("shopify_payments", "SALE", "600.00")]), now=NOW
    )

    assert result.outcome == OrderOutcome.CREDITED
    tx = result.transaction
    assert tx.eligible_amount == Decimal("600.00")
    assert tx.cashback_amount == Decimal("6.00")
    assert tx.cashback_percent_snapshot == Decimal("1.00")
    assert tx.status == "COMPLETED"

    customer = _customer(db)
    assert customer.store_credit_balance == Decimal("6.00")
    assert customer.total_earned == Decimal("6.00")
    assert get_active_membership(db, customer.id).tier_id == gold.id

    change_types = [
        r[0]
        for r in db.query(TierChangeLog.change_type)
        .filter(TierChangeLog.customer_id == customer.id)
        .order_by(TierChangeLog.created_at.asc(), TierChangeLog.change_type.desc())
        .all()
    ]
    assert change_types == ["INITIAL_ASSIGNMENT", "AUTOMATIC_UPGRADE"]
    assert result.evaluation.changed is True


def test_scenario_gift_card_is_not_eligible(db, bronze_gold):
    result = process_order_paid(
        db,
        MERCHANT,
        _event(legs=[_leg("gift_card", "SALE", "20.00"), _leg("shopify_payments", "CAPTURE", "30.00")]),
        now=NOW,
    )

    assert result.transaction.eligible_amount == Decimal("30.00")
    assert result.transaction.cashback_amount == Decimal("0.30")


def test_scenario_gift_card_only_order_creates_nothing(db, bronze_gold):
    result = process_order_paid(db, MERCHANT, _event(legs=[_leg("gift_card", "SALE", "50.00")]), now=NOW)

    assert result.outcome == OrderOutcome.SKIPPED
    assert db.query(CashbackTransaction).count() == 0


def test_cashback_rounds_down_to_the_cent(db, make_tier):
    make_tier("Base", None, "3")

    result = process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "19.99")]), now=NOW)

    # 19.99 * 3% = 0.5997
    assert result.transaction.cashback_amount == Decimal("0.59")


def test_duplicate_delivery_credits_once(db, bronze_gold):
    event = _event(legs=[_leg("shopify_payments", "SALE", "100.00")])

    first = process_order_paid(db, MERCHANT, event, now=NOW)
    second = process_order_paid(db, MERCHANT, event, now=NOW + timedelta(seconds=5))

    assert first.outcome == OrderOutcome.CREDITED
    assert second.outcome == OrderOutcome.DUPLICATE
    assert second.transaction.id == first.transaction.id
    assert db.query(CashbackTransaction).count() == 1

    customer = _customer(db)
    assert customer.store_credit_balance == Decimal("1.00")
    assert db.query(StoreCreditLedgerEntry).filter(StoreCreditLedgerEntry.customer_id == customer.id).count() == 1


def test_guest_and_cancelled_orders_are_skipped(db, bronze_gold):
    guest = process_order_paid(
        db, MERCHANT, _event(customer_id=None, legs=[_leg("paypal", "SALE", "10")]), now=NOW
    )
    cancelled = process_order_paid(
        db, MERCHANT, _event(order_id="5002", legs=[_leg("paypal", "SALE", "10")], cancelled=True), now=NOW
    )
    voided = process_order_paid(
        db, MERCHANT, _event(order_id="5003", legs=[_leg("paypal", "SALE", "10")], financialStatus="VOIDED"), now=NOW
    )

    assert [guest.outcome, cancelled.outcome, voided.outcome] == [OrderOutcome.SKIPPED] * 3
    assert db.query(Customer).count() == 0


def test_order_without_legs_uses_total(db, bronze_gold):
    result = process_order_paid(db, MERCHANT, _event(totalPrice=Decimal("45.00")), now=NOW)

    assert result.transaction.eligible_amount == Decimal("45.00")
    assert result.transaction.cashback_amount == Decimal("0.45")


def test_merchant_without_tiers_uses_default_rate(db):
    result = process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "200.00")]), now=NOW)

    assert result.outcome == OrderOutcome.CREDITED
    assert result.transaction.cashback_percent_snapshot == Decimal("1.00")
    assert result.transaction.cashback_amount == Decimal("2.00")


def test_rate_change_does_not_touch_recorded_transactions(db, bronze_gold):
    bronze, _ = bronze_gold
    result = process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), now=NOW)

    tier_catalog_service.update_tier(db, MERCHANT, bronze.id, {"cashback_percent": Decimal("2.5")})

    tx = db.query(CashbackTransaction).filter(CashbackTransaction.id == result.transaction.id).one()
    assert tx.cashback_percent_snapshot == Decimal("1.00")
    assert tx.cashback_amount == Decimal("1.00")


def test_platform_sync_success_marks_transaction(db, bronze_gold, platform):
    result = process_order_paid(
        db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW
    )

    tx = result.transaction
    assert tx.status == "SYNCED_EXTERNAL"
    assert tx.external_transaction_id.startswith("gid://shopify/")
    assert platform.calls == [("credit", "1001", Decimal("1.00"), "USD")]

    entry = db.query(StoreCreditLedgerEntry).one()
    assert entry.reconciled_at == NOW


def test_platform_failure_keeps_local_credit(db, bronze_gold, platform):
    platform.unavailable = True

    result = process_order_paid(
        db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW
    )

    assert result.outcome == OrderOutcome.CREDITED
    tx = result.transaction
    assert tx.status == "EXTERNAL_SYNC_FAILED"
    assert "connection refused" in tx.sync_error

    customer = _customer(db)
    assert customer.store_credit_balance == Decimal("1.00")
    assert verify_ledger(db, customer.id)["ok"] is True


def test_platform_user_errors_are_recorded(db, bronze_gold, platform):
    platform.user_errors = [{"field": ["id"], "message": "Customer does not exist"}]

    result = process_order_paid(
        db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW
    )

    assert result.transaction.status == "EXTERNAL_SYNC_FAILED"
    assert result.transaction.sync_error == "Customer does not exist"


def test_retry_failed_syncs_recovers(db, bronze_gold, platform):
    platform.unavailable = True
    process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW)

    platform.unavailable = False
    summary = retry_failed_syncs(db, MERCHANT, platform, now=NOW + timedelta(hours=1))

    assert summary == {"processed": 1, "synced": 1, "failed": 0}
    tx = db.query(CashbackTransaction).one()
    assert tx.status == "SYNCED_EXTERNAL"
    assert tx.sync_error is None


def test_ledger_stays_consistent_across_orders(db, bronze_gold):
    for i, amount in enumerate(["100.00", "250.00", "400.00", "100.00"]):
        process_order_paid(
            db,
            MERCHANT,
            _event(order_id=f"60{i}", legs=[_leg("paypal", "SALE", amount)]),
            now=NOW + timedelta(minutes=i),
        )

    customer = _customer(db)
    check = verify_ledger(db, customer.id)
    assert check["ok"] is True
    assert check["entries"] == 4
    # the first three orders earn at Bronze; the upgrade applies from the fourth
    assert check["cached_balance"] == Decimal("12.50")


def test_duplicate_detected_under_lock_after_unique_collision(db, session_factory, bronze_gold, monkeypatch):
    first = process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), now=NOW)
    first_id = first.transaction.id
    db.rollback()

    real_lookup = cashback_service._find_transaction
    lookups = []

    def lookup_missing_concurrent_writer(session, merchant_id, order_id):
        # the pre-check and the first locked check race the other delivery
        lookups.append(order_id)
        if len(lookups) <= 2:
            return None
        return real_lookup(session, merchant_id, order_id)

    monkeypatch.setattr(cashback_service, "_find_transaction", lookup_missing_concurrent_writer)

    other = session_factory()
    try:
        result = process_order_paid(
            other, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), now=NOW + timedelta(minutes=1)
        )
        assert result.outcome == OrderOutcome.DUPLICATE
        assert result.transaction.id == first_id
    finally:
        other.close()

    assert len(lookups) == 3
    db.expire_all()
    assert db.query(CashbackTransaction).count() == 1
    assert db.query(StoreCreditLedgerEntry).count() == 1
    assert _customer(db).store_credit_balance == Decimal("1.00")


def test_sync_before_retry_does_not_reverse_cashback(db, bronze_gold, platform):
    platform.unavailable = True
    process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW)

    entry = db.query(StoreCreditLedgerEntry).one()
    assert entry.sync_status == "FAILED"
    assert "connection refused" in entry.sync_error

    platform.unavailable = False
    customer = _customer(db)
    outcome = sync_customer(db, customer.id, platform, now=NOW + timedelta(minutes=5))

    assert outcome.updated is False
    assert outcome.unsynced_amount == Decimal("1.00")
    db.refresh(customer)
    assert customer.store_credit_balance == Decimal("1.00")

    retry_failed_syncs(db, MERCHANT, platform, now=NOW + timedelta(hours=1))

    assert platform.balances["1001"] == Decimal("1.00")
    db.refresh(entry)
    assert entry.sync_status == "SYNCED"
    assert sync_customer(db, customer.id, platform, now=NOW + timedelta(hours=2)).unsynced_amount == Decimal("0.00")


def test_pushed_cashback_entry_is_marked_synced(db, bronze_gold, platform):
    process_order_paid(db, MERCHANT, _event(legs=[_leg("paypal", "SALE", "100.00")]), client=platform, now=NOW)

    entry = db.query(StoreCreditLedgerEntry).one()
    assert entry.sync_status == "SYNCED"
    assert entry.reconciled_at == NOW
