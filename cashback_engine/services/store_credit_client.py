"""
Client for the commerce platform's store-credit GraphQL API.

The platform is the system of record for what a customer can actually
redeem. Transport failures and top-level GraphQL errors raise
``ExternalSyncError``; mutation ``userErrors`` come back as data so the
caller can record them. The same API pages historical orders for backfills.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

import httpx

from cashback_engine.clock import as_naive_utc
from cashback_engine.config import (
    STORE_CREDIT_API_TIMEOUT_SECONDS,
    STORE_CREDIT_API_TOKEN,
    STORE_CREDIT_API_URL_TEMPLATE,
)
from cashback_engine.errors import ExternalSyncError
from cashback_engine.money import format_amount, to_money


logger = logging.getLogger(__name__)

CUSTOMER_GID_PREFIX = "gid://shopify/Customer/"

_CREDIT_MUTATION = """
mutation StoreCreditCredit($id: ID!, $creditInput: StoreCreditAccountCreditInput!) {
  storeCreditAccountCredit(id: $id, creditInput: $creditInput) {
    storeCreditAccountTransaction {
      id
      amount { amount currencyCode }
      balanceAfterTransaction { amount currencyCode }
    }
    userErrors { field message code }
  }
}
"""

_DEBIT_MUTATION = """
mutation StoreCreditDebit($id: ID!, $debitInput: StoreCreditAccountDebitInput!) {
  storeCreditAccountDebit(id: $id, debitInput: $debitInput) {
    storeCreditAccountTransaction {
      id
      amount { amount currencyCode }
      balanceAfterTransaction { amount currencyCode }
    }
    userErrors { field message code }
  }
}
"""

_BALANCE_QUERY = """
query CustomerStoreCredit($id: ID!) {
  customer(id: $id) {
    id
    storeCreditAccounts(first: 10) {
      nodes {
        id
        balance { amount currencyCode }
      }
    }
  }
}
"""

_ORDERS_QUERY = """
query OrdersForImport($first: Int!, $after: String, $query: String!) {
  orders(first: $first, after: $after, query: $query, sortKey: CREATED_AT) {
    edges {
      node {
        id
        createdAt
        cancelledAt
        displayFinancialStatus
        totalPriceSet { shopMoney { amount currencyCode } }
        customer { id email }
        transactions(first: 50) {
          id
          gateway
          kind
          status
          amountSet { shopMoney { amount } }
          parentTransaction { id }
        }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""


@dataclass
class StoreCreditMutationResult:
    external_transaction_id: str | None = None
    new_balance: Decimal | None = None
    currency: str | None = None
    user_errors: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.user_errors and self.external_transaction_id is not None

    def error_message(self) -> str:
        if self.user_errors:
            return ", ".join(str(e.get("message") or e) for e in self.user_errors)
        if self.external_transaction_id is None:
            return "No transaction returned"
        return ""


@dataclass
class StoreCreditAccountBalance:
    account_id: str | None
    amount: Decimal
    currency: str


def customer_gid(customer_ref: str) -> str:
    ref = str(customer_ref)
    if ref.startswith("gid://"):
        return ref
    return f"{CUSTOMER_GID_PREFIX}{ref}"


def _gid_tail(gid: str | None) -> str | None:
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1]


def _search_timestamp(value: datetime) -> str:
    return as_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def order_from_node(node: dict) -> dict:
    """Map an orders-query node to the HistoricalOrder shape."""
    customer = node.get("customer") or {}
    total = (node.get("totalPriceSet") or {}).get("shopMoney") or {}

    legs = []
    for t in node.get("transactions") or []:
        leg = {
            "id": t.get("id"),
            "gateway": t.get("gateway"),
            "kind": t.get("kind"),
            "status": t.get("status"),
            "amount": ((t.get("amountSet") or {}).get("shopMoney") or {}).get("amount"),
        }
        parent = (t.get("parentTransaction") or {}).get("id")
        if parent:
            leg["parentTransactionId"] = parent
        legs.append(leg)

    return {
        "orderId": _gid_tail(node.get("id")),
        "customerId": _gid_tail(customer.get("id")),
        "customerEmail": customer.get("email"),
        "currency": total.get("currencyCode") or "USD",
        "totalPrice": total.get("amount"),
        "financialStatus": node.get("displayFinancialStatus"),
        "cancelled": node.get("cancelledAt") is not None,
        "createdAt": node.get("createdAt"),
        "paymentLegs": legs,
    }


class StoreCreditClient:
    def __init__(
        self,
        *,
        endpoint: str,
        access_token: str | None = None,
        timeout_seconds: float = STORE_CREDIT_API_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ):
        self.endpoint = endpoint
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout_seconds)
        self._headers = {"Content-Type": "application/json"}
        if access_token:
            self._headers["X-Shopify-Access-Token"] = access_token

    def close(self):
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _execute(self, query: str, variables: dict) -> dict:
        try:
            response = self._client.post(
                self.endpoint,
                json={"query": query, "variables": variables},
                headers=self._headers,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise ExternalSyncError(f"Store credit API request failed: {e}") from e
        except ValueError as e:
            raise ExternalSyncError("Store credit API returned invalid JSON") from e

        if body.get("errors"):
            messages = ", ".join(str(err.get("message") or err) for err in body["errors"])
            raise ExternalSyncError(f"Store credit API error: {messages}")

        return body.get("data") or {}

    def _mutate(self, mutation: str, field_name: str, input_name: str, amount_key: str, customer_ref, amount, currency):
        variables = {
            "id": customer_gid(customer_ref),
            input_name: {amount_key: {"amount": format_amount(amount), "currencyCode": currency}},
        }
        payload = self._execute(mutation, variables).get(field_name) or {}

        user_errors = payload.get("userErrors") or []
        tx = payload.get("storeCreditAccountTransaction")
        if user_errors or not tx:
            logger.warning(
                "store credit mutation rejected",
                extra={"mutation": field_name, "customer_ref": str(customer_ref), "user_errors": user_errors},
            )
            return StoreCreditMutationResult(user_errors=user_errors)

        balance = tx.get("balanceAfterTransaction") or {}
        return StoreCreditMutationResult(
            external_transaction_id=tx.get("id"),
            new_balance=to_money(balance["amount"]) if balance.get("amount") is not None else None,
            currency=balance.get("currencyCode") or currency,
        )

    def credit(self, customer_ref, amount, currency: str) -> StoreCreditMutationResult:
        return self._mutate(
            _CREDIT_MUTATION, "storeCreditAccountCredit", "creditInput", "creditAmount", customer_ref, amount, currency
        )

    def debit(self, customer_ref, amount, currency: str) -> StoreCreditMutationResult:
        return self._mutate(
            _DEBIT_MUTATION, "storeCreditAccountDebit", "debitInput", "debitAmount", customer_ref, amount, currency
        )

    def get_balances(self, customer_ref) -> list[StoreCreditAccountBalance]:
        data = self._execute(_BALANCE_QUERY, {"id": customer_gid(customer_ref)})
        customer = data.get("customer")
        if customer is None:
            raise ExternalSyncError(f"Customer {customer_ref} not found on platform")

        accounts = ((customer.get("storeCreditAccounts") or {}).get("nodes")) or []
        balances = []
        for node in accounts:
            balance = node.get("balance") or {}
            if balance.get("amount") is None:
                continue
            balances.append(
                StoreCreditAccountBalance(
                    account_id=node.get("id"),
                    amount=to_money(balance["amount"]),
                    currency=(balance.get("currencyCode") or "").upper(),
                )
            )
        return balances

    def get_balance(self, customer_ref, currency: str | None = None) -> Decimal:
        """Total redeemable balance, restricted to ``currency`` when given."""
        balances = self.get_balances(customer_ref)
        if currency:
            balances = [b for b in balances if b.currency == currency.upper()]
        return to_money(sum((b.amount for b in balances), Decimal(0)))

    def iter_orders(self, *, created_from: datetime, created_to: datetime, page_size: int = 50):
        """Yield paid orders created in the window, oldest first, one page at a time."""
        search = (
            f"financial_status:paid created_at:>='{_search_timestamp(created_from)}' "
            f"created_at:<='{_search_timestamp(created_to)}'"
        )
        cursor = None
        while True:
            data = self._execute(_ORDERS_QUERY, {"first": page_size, "after": cursor, "query": search})
            orders = data.get("orders") or {}
            for edge in orders.get("edges") or []:
                yield order_from_node(edge.get("node") or {})

            page_info = orders.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                return


def build_store_credit_client(merchant_id: str) -> StoreCreditClient | None:
    """Client for ``merchant_id``, or None when no platform is configured."""
    if not STORE_CREDIT_API_URL_TEMPLATE:
        return None
    return StoreCreditClient(
        endpoint=STORE_CREDIT_API_URL_TEMPLATE.format(merchant=merchant_id),
        access_token=STORE_CREDIT_API_TOKEN,
    )
