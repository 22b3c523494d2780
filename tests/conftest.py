import os

# must be set before cashback_engine.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORE_CREDIT_API_URL_TEMPLATE"] = ""

from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cashback_engine.db import Base, get_db
from cashback_engine.deps.store_credit import get_store_credit_client
from cashback_engine.errors import ExternalSyncError
from cashback_engine.main import app
from cashback_engine.models.customer import Customer
from cashback_engine.models.tier import Tier
from cashback_engine.services.store_credit_client import StoreCreditMutationResult

NOW = datetime(2026, 6, 1, 12, 0, 0)
MERCHANT = "demo.myshopify.com"


class FakeStoreCreditPlatform:
    """In-memory stand-in for the external store-credit API."""

    def __init__(self):
        self.balances: dict[str, Decimal] = {}
        self.calls: list[tuple] = []
        self.user_errors: list[dict] | None = None
        self.unavailable = False
        self.failing_refs: set[str] = set()
        self.orders: list[dict] = []
        self._seq = 0

    def _check(self, customer_ref):
        if self.unavailable or str(customer_ref) in self.failing_refs:
            raise ExternalSyncError("Store credit API request failed: connection refused")

    def _mutate(self, op, customer_ref, amount, currency):
        self.calls.append((op, str(customer_ref), Decimal(amount), currency))
        self._check(customer_ref)
        if self.user_errors:
            return StoreCreditMutationResult(user_errors=list(self.user_errors))

        signed = Decimal(amount) if op == "credit" else -Decimal(amount)
        balance = self.balances.get(str(customer_ref), Decimal("0.00")) + signed
        self.balances[str(customer_ref)] = balance
        self._seq += 1
        return StoreCreditMutationResult(
            external_transaction_id=f"gid://shopify/StoreCreditAccountTransaction/{self._seq}",
            new_balance=balance,
            currency=currency,
        )

    def credit(self, customer_ref, amount, currency):
        return self._mutate("credit", customer_ref, amount, currency)

    def debit(self, customer_ref, amount, currency):
        return self._mutate("debit", customer_ref, amount, currency)

    def get_balance(self, customer_ref, currency=None):
        self.calls.append(("balance", str(customer_ref), None, currency))
        self._check(customer_ref)
        return self.balances.get(str(customer_ref), Decimal("0.00"))

    def iter_orders(self, *, created_from, created_to, page_size=50):
        self.calls.append(("orders", None, None, None))
        self._check(None)
        yield from self.orders

    def close(self):
        pass


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def platform():
    return FakeStoreCreditPlatform()


@pytest.fixture
def client(session_factory, platform):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store_credit_client] = lambda: platform

    try:
        yield TestClient(app, headers={"X-Merchant": MERCHANT})
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def make_tier(db):
    def _make_tier(name, min_spend, cashback_percent, *, evaluation_period="ANNUAL", merchant_id=MERCHANT, sort_hint=0):
        tier = Tier(
            merchant_id=merchant_id,
            name=name,
            min_spend=Decimal(min_spend) if min_spend is not None else None,
            cashback_percent=Decimal(cashback_percent),
            evaluation_period=evaluation_period,
            is_active=True,
            sort_hint=sort_hint,
        )
        db.add(tier)
        db.commit()
        db.refresh(tier)
        return tier

    return _make_tier


@pytest.fixture
def bronze_gold(make_tier):
    bronze = make_tier("Bronze", None, "1")
    gold = make_tier("Gold", "500", "5")
    return bronze, gold


@pytest.fixture
def make_customer(db):
    def _make_customer(external_customer_id="1001", *, merchant_id=MERCHANT, currency="USD"):
        customer = Customer(
            merchant_id=merchant_id,
            external_customer_id=external_customer_id,
            email=f"{external_customer_id}@example.com",
            currency=currency,
            store_credit_balance=Decimal("0"),
            total_earned=Decimal("0"),
        )
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer

    return _make_customer
