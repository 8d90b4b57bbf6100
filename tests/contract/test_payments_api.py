"""Contract tests for the card payment endpoints.

Tests verify:
- Command endpoints require an Idempotency-Key header
- Status codes and error bodies for each failure class
- Retries with the same key replay the first response and say so
- Money travels as decimal strings, never floats
- Read endpoints return transactions and order history
- A slow gateway call does not hold up unrelated requests
"""

import asyncio
import threading

import httpx
import pytest
from starlette.status import (
    HTTP_200_OK,
    HTTP_201_CREATED,
    HTTP_400_BAD_REQUEST,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_502_BAD_GATEWAY,
)

from paycore.models.payment import GatewayResult
from paycore.services.gateway import GatewayTransientError

# === Test Configuration ===

PURCHASE_BODY = {
    "order_id": "ORD-1001",
    "customer_id": "CUST-42",
    "amount": {"amount": "100.00", "currency": "USD"},
    "card_token": "pm_card_visa",
    "card_last_four": "4242",
    "card_brand": "visa",
}


# === Helper Functions ===


def usd(value: str) -> dict:
    return {"amount": value, "currency": "USD"}


def post(client, path: str, body: dict, key: str | None = "key-1"):
    headers = {"Idempotency-Key": key} if key else {}
    return client.post(f"/api/payments/{path}", json=body, headers=headers)


def authorize(client, key: str = "auth-key") -> dict:
    response = post(client, "authorize", PURCHASE_BODY, key)
    assert response.status_code == HTTP_201_CREATED
    return response.json()


# === Command Contract ===


class TestPurchaseContract:
    """POST /api/payments/purchase"""

    def test_purchase_created(self, client) -> None:
        response = post(client, "purchase", PURCHASE_BODY)

        assert response.status_code == HTTP_201_CREATED
        data = response.json()
        assert data["transaction_id"].startswith("TXN-")
        assert data["status"] == "captured"
        assert data["amount"] == usd("100.00")
        assert data["captured_amount"] == usd("100.00")
        assert data["can_refund"] is True
        assert "Idempotent-Replayed" not in response.headers

    def test_missing_idempotency_key(self, client, gateway) -> None:
        response = post(client, "purchase", PURCHASE_BODY, key=None)

        assert response.status_code == HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "ERR_PAY_007"
        assert gateway.count("purchase") == 0

    def test_float_amount_rejected(self, client) -> None:
        body = {**PURCHASE_BODY, "amount": {"amount": 100.1, "currency": "USD"}}
        response = post(client, "purchase", body)

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_PAY_007"

    def test_sub_cent_amount_rejected(self, client, gateway) -> None:
        body = {**PURCHASE_BODY, "amount": usd("10.005")}
        response = post(client, "purchase", body)

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_PAY_007"
        assert gateway.count("purchase") == 0

    def test_missing_field_reported(self, client) -> None:
        body = {key: value for key, value in PURCHASE_BODY.items() if key != "card_token"}
        response = post(client, "purchase", body)

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert "body.card_token" in response.json()["details"]

    def test_decline(self, client, gateway) -> None:
        gateway.script("purchase", GatewayResult.failure("card_declined", "Do not honor"))
        response = post(client, "purchase", PURCHASE_BODY)

        assert response.status_code == HTTP_402_PAYMENT_REQUIRED
        assert response.json()["error_code"] == "ERR_PAY_005"

    def test_gateway_unavailable(self, client, gateway, sleeps) -> None:
        gateway.script("purchase", *[GatewayTransientError("timeout")] * 3)
        response = post(client, "purchase", PURCHASE_BODY)

        assert response.status_code == HTTP_502_BAD_GATEWAY
        assert response.json()["error_code"] == "ERR_PAY_006"
        assert sleeps == [1, 2]

    def test_correlation_id_echoed(self, client) -> None:
        response = client.post(
            "/api/payments/purchase",
            json=PURCHASE_BODY,
            headers={"Idempotency-Key": "key-1", "X-Correlation-ID": "corr-123"},
        )
        assert response.headers["X-Correlation-ID"] == "corr-123"


class TestIdempotencyContract:
    """Replays and conflicts across all commands."""

    def test_replay_returns_first_response(self, client, gateway) -> None:
        first = post(client, "purchase", PURCHASE_BODY)
        second = post(client, "purchase", PURCHASE_BODY)

        assert second.status_code == HTTP_201_CREATED
        assert second.headers["Idempotent-Replayed"] == "true"
        assert second.json() == first.json()
        assert gateway.count("purchase") == 1

    def test_replayed_decline(self, client, gateway) -> None:
        gateway.script("purchase", GatewayResult.failure("card_declined", "Do not honor"))
        post(client, "purchase", PURCHASE_BODY)
        response = post(client, "purchase", PURCHASE_BODY)

        assert response.status_code == HTTP_402_PAYMENT_REQUIRED
        assert response.headers["Idempotent-Replayed"] == "true"
        assert gateway.count("purchase") == 1

    def test_key_reused_with_different_body(self, client) -> None:
        post(client, "purchase", PURCHASE_BODY)
        body = {**PURCHASE_BODY, "amount": usd("200.00")}
        response = post(client, "purchase", body)

        assert response.status_code == HTTP_409_CONFLICT
        data = response.json()
        assert data["error_code"] == "ERR_PAY_001"
        assert data["details"]["reason"] == "fingerprint_mismatch"

    def test_key_reused_on_different_endpoint(self, client) -> None:
        post(client, "purchase", PURCHASE_BODY)
        response = post(client, "authorize", PURCHASE_BODY)
        assert response.status_code == HTTP_409_CONFLICT


class TestLifecycleContract:
    """Capture, void and refund."""

    def test_capture_partial(self, client) -> None:
        tx = authorize(client)
        response = post(
            client,
            "capture",
            {"transaction_id": tx["transaction_id"], "amount": usd("60.00")},
            key="cap-key",
        )

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["status"] == "captured"
        assert data["captured_amount"]["amount"] == "60.00"

    def test_capture_unknown_transaction(self, client) -> None:
        response = post(client, "capture", {"transaction_id": "TXN-UNKNOWN"}, key="cap-key")

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_PAY_003"

    def test_capture_purchase_is_invalid_state(self, client) -> None:
        tx = post(client, "purchase", PURCHASE_BODY).json()
        response = post(client, "capture", {"transaction_id": tx["transaction_id"]}, key="cap-key")

        assert response.status_code == HTTP_409_CONFLICT
        assert response.json()["error_code"] == "ERR_PAY_002"

    def test_void(self, client) -> None:
        tx = authorize(client)
        response = post(
            client, "void", {"transaction_id": tx["transaction_id"], "reason": "ordered twice"},
            key="void-key",
        )

        assert response.status_code == HTTP_200_OK
        assert response.json()["status"] == "voided"

    def test_partial_refund(self, client) -> None:
        tx = post(client, "purchase", PURCHASE_BODY).json()
        response = post(
            client,
            "refund",
            {"transaction_id": tx["transaction_id"], "amount": usd("30.00")},
            key="refund-key",
        )

        assert response.status_code == HTTP_201_CREATED
        data = response.json()
        assert data["type"] == "refund"
        assert data["status"] == "refunded"
        assert data["parent_transaction_id"] == tx["transaction_id"]

        parent = client.get(f"/api/transactions/{tx['transaction_id']}").json()
        assert parent["status"] == "partially_refunded"
        assert parent["refundable_amount"] == usd("70.00")

    def test_over_refund_rejected(self, client, gateway) -> None:
        tx = post(client, "purchase", PURCHASE_BODY).json()
        response = post(
            client,
            "refund",
            {"transaction_id": tx["transaction_id"], "amount": usd("150.00")},
            key="refund-key",
        )

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert gateway.count("refund") == 0

    @pytest.mark.parametrize("path", ["capture", "void", "refund"])
    def test_missing_transaction_id(self, client, path) -> None:
        response = post(client, path, {})
        assert response.status_code == HTTP_400_BAD_REQUEST


# === Read Contract ===


class TestReadContract:
    """GET endpoints."""

    def test_get_transaction(self, client) -> None:
        tx = authorize(client)
        response = client.get(f"/api/transactions/{tx['transaction_id']}")

        assert response.status_code == HTTP_200_OK
        data = response.json()
        assert data["status"] == "authorized"
        assert data["can_capture"] is True
        assert data["can_void"] is True
        assert data["can_refund"] is False

    def test_get_unknown_transaction(self, client) -> None:
        response = client.get("/api/transactions/TXN-UNKNOWN")

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_PAY_003"

    def test_order_history(self, client, clock) -> None:
        tx = authorize(client)
        clock.advance(minutes=1)
        post(client, "capture", {"transaction_id": tx["transaction_id"]}, key="cap-key")
        clock.advance(minutes=1)
        post(client, "refund", {"transaction_id": tx["transaction_id"]}, key="refund-key")

        response = client.get("/api/orders/ORD-1001/transactions")

        assert response.status_code == HTTP_200_OK
        types = [item["type"] for item in response.json()]
        assert types[0] == "authorize"
        assert "refund" in types

    def test_unknown_order_is_empty(self, client) -> None:
        response = client.get("/api/orders/ORD-NONE/transactions")
        assert response.status_code == HTTP_200_OK
        assert response.json() == []

    def test_customer_history(self, client, clock) -> None:
        post(client, "purchase", PURCHASE_BODY)
        clock.advance(minutes=1)
        post(client, "authorize", {**PURCHASE_BODY, "order_id": "ORD-1002"}, key="key-2")

        response = client.get("/api/customers/CUST-42/transactions")

        assert response.status_code == HTTP_200_OK
        assert [item["order_id"] for item in response.json()] == ["ORD-1001", "ORD-1002"]


# === Concurrency Contract ===


class TestConcurrencyContract:
    """Unrelated commands run side by side."""

    def test_slow_gateway_does_not_block_other_requests(self, client, gateway) -> None:
        """Four purchases are inside the gateway at the same time."""
        from paycore_api.main import app

        in_gateway = threading.Barrier(4, timeout=5)
        gateway.before_call = lambda operation: in_gateway.wait()

        async def send_all() -> list[httpx.Response]:
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                return await asyncio.gather(
                    *(
                        http.post(
                            "/api/payments/purchase",
                            json=PURCHASE_BODY,
                            headers={"Idempotency-Key": f"key-{n}"},
                        )
                        for n in range(4)
                    )
                )

        responses = asyncio.run(send_all())

        assert [response.status_code for response in responses] == [HTTP_201_CREATED] * 4
        assert gateway.count("purchase") == 4
