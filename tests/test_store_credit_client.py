import json
from datetime import datetime
from decimal import Decimal

import httpx
import pytest

from cashback_engine.errors import ExternalSyncError
from cashback_engine.services.store_credit_client import StoreCreditClient, customer_gid

ENDPOINT = "https://demo.myshopify.com/admin/api/2025-01/graphql.json"


def _client(handler, token="shpat_test"):
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return StoreCreditClient(endpoint=ENDPOINT, access_token=token, http_client=http_client)


def test_customer_gid_prefixes_plain_ids():
    assert customer_gid("1001") == "gid://shopify/Customer/1001"
    assert customer_gid("gid://shopify/Customer/7") == "gid://shopify/Customer/7"


def test_credit_sends_mutation_and_parses_transaction():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["token"] = request.headers.get("X-Shopify-Access-Token")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": {
                    "storeCreditAccountCredit": {
                        "storeCreditAccountTransaction": {
                            "id": "gid://shopify/StoreCreditAccountCreditTransaction/55",
                            "amount": {"amount": "6.0", "currencyCode": "USD"},
                            "balanceAfterTransaction": {"amount": "48.0", "currencyCode": "USD"},
                        },
                        "userErrors": [],
                    }
                }
            },
        )

    result = _client(handler).credit("1001", Decimal("6"), "USD")

    assert result.ok
    assert result.external_transaction_id == "gid://shopify/StoreCreditAccountCreditTransaction/55"
    assert result.new_balance == Decimal("48.00")
    assert seen["token"] == "shpat_test"
    assert "storeCreditAccountCredit" in seen["body"]["query"]
    assert seen["body"]["variables"] == {
        "id": "gid://shopify/Customer/1001",
        "creditInput": {"creditAmount": {"amount": "6.00", "currencyCode": "USD"}},
    }


def test_debit_user_errors_are_returned_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "storeCreditAccountDebit": {
                        "storeCreditAccountTransaction": None,
                        "userErrors": [{"field": ["debitInput"], "message": "Insufficient funds", "code": "INSUFFICIENT_FUNDS"}],
                    }
                }
            },
        )

    result = _client(handler).debit("1001", Decimal("100"), "USD")

    assert not result.ok
    assert result.error_message() == "Insufficient funds"


def test_balance_sums_matching_currency_accounts():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "customer": {
                        "id": "gid://shopify/Customer/1001",
                        "storeCreditAccounts": {
                            "nodes": [
                                {"id": "a1", "balance": {"amount": "30.00", "currencyCode": "USD"}},
                                {"id": "a2", "balance": {"amount": "20.00", "currencyCode": "USD"}},
                                {"id": "a3", "balance": {"amount": "99.00", "currencyCode": "CAD"}},
                            ]
                        },
                    }
                }
            },
        )

    client = _client(handler)

    assert client.get_balance("1001", "USD") == Decimal("50.00")
    assert client.get_balance("1001") == Decimal("149.00")


def test_unknown_customer_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"customer": None}})

    with pytest.raises(ExternalSyncError):
        _client(handler).get_balance("404")


def test_graphql_errors_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Throttled"}]})

    with pytest.raises(ExternalSyncError) as exc_info:
        _client(handler).credit("1001", Decimal("1"), "USD")
    assert "Throttled" in exc_info.value.message


def test_http_failure_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(ExternalSyncError):
        _client(handler).get_balance("1001")


def test_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalSyncError):
        _client(handler).credit("1001", Decimal("1"), "USD")


def _order_node(number, created_at, *, transactions=None):
    return {
        "id": f"gid://shopify/Order/{number}",
        "createdAt": created_at,
        "cancelledAt": None,
        "displayFinancialStatus": "PAID",
        "totalPriceSet": {"shopMoney": {"amount": "120.0", "currencyCode": "EUR"}},
        "customer": {"id": "gid://shopify/Customer/1001", "email": "a@example.com"},
        "transactions": transactions or [],
    }


def test_iter_orders_follows_cursor_across_pages():
    requests = []
    pages = [
        {
            "edges": [
                {
                    "node": _order_node(
                        9001,
                        "2026-05-02T12:00:00Z",
                        transactions=[
                            {
                                "id": "gid://shopify/OrderTransaction/1",
                                "gateway": "shopify_payments",
                                "kind": "CAPTURE",
                                "status": "SUCCESS",
                                "amountSet": {"shopMoney": {"amount": "120.0"}},
                                "parentTransaction": {"id": "gid://shopify/OrderTransaction/0"},
                            }
                        ],
                    )
                }
            ],
            "pageInfo": {"hasNextPage": True, "endCursor": "c1"},
        },
        {
            "edges": [{"node": _order_node(9002, "2026-05-03T08:30:00Z")}],
            "pageInfo": {"hasNextPage": False, "endCursor": "c2"},
        },
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body["variables"])
        return httpx.Response(200, json={"data": {"orders": pages[len(requests) - 1]}})

    orders = list(
        _client(handler).iter_orders(
            created_from=datetime(2026, 5, 1),
            created_to=datetime(2026, 6, 1),
            page_size=1,
        )
    )

    assert [o["orderId"] for o in orders] == ["9001", "9002"]
    assert [r["after"] for r in requests] == [None, "c1"]
    assert requests[0]["first"] == 1
    assert requests[0]["query"] == (
        "financial_status:paid created_at:>='2026-05-01T00:00:00Z' created_at:<='2026-06-01T00:00:00Z'"
    )

    first = orders[0]
    assert first["customerId"] == "1001"
    assert first["currency"] == "EUR"
    assert first["financialStatus"] == "PAID"
    assert first["cancelled"] is False
    assert first["paymentLegs"] == [
        {
            "id": "gid://shopify/OrderTransaction/1",
            "gateway": "shopify_payments",
            "kind": "CAPTURE",
            "status": "SUCCESS",
            "amount": "120.0",
            "parentTransactionId": "gid://shopify/OrderTransaction/0",
        }
    ]
    assert orders[1]["paymentLegs"] == []
