"""Unit tests for subscription commands.

Tests verify:
- Enrollment activates into ACTIVE or TRIAL with gateway profile IDs
- Start date defaults to tomorrow; bad date ranges are rejected
- Failed enrollment leaves the subscription FAILED
- Updates only touch supplied fields; cancel closes the agreement
- Gateway failures on update or cancel leave the subscription unchanged
"""

import datetime as dt

import pytest

from paycore.models.enums import BillingInterval, SubscriptionStatus
from paycore.models.errors import (
    ErrorCode,
    GatewayError,
    InvalidTransactionStateError,
    NotFoundError,
    PaymentValidationError,
)
from paycore.models.money import Money
from paycore.models.payment import GatewayResult, SubscriptionRequest
from paycore.models.subscription import SubscriptionUpdate
from paycore.services.dynamodb import AUDIT_LOG_TABLE
from paycore.services.gateway import GatewayTransientError
from paycore.services.idempotency import fingerprint

FP = fingerprint("POST", "/api/subscriptions", {"test": True})


@pytest.fixture
def subscription_request() -> SubscriptionRequest:
    return SubscriptionRequest(
        customer_id="CUST-42",
        name="Gold plan",
        amount=Money.of("19.99", "USD"),
        billing_interval=BillingInterval.MONTHLY,
        card_token="pm_card_visa",
        card_last_four="4242",
    )


def subscribe(service, request: SubscriptionRequest, key: str = "sub-key") -> str:
    return service.subscribe(request, key, FP).body["subscription_id"]


class TestSubscribe:
    """Enrollment."""

    def test_activates_subscription(
        self, subscription_service, subscriptions, gateway, subscription_request
    ) -> None:
        result = subscription_service.subscribe(subscription_request, "sub-key", FP, "corr-1")

        assert result.status_code == 201
        assert result.body["status"] == "active"
        assert result.body["start_date"] == "2024-03-16"
        assert result.body["can_cancel"] is True

        sub = subscriptions.get(result.body["subscription_id"])
        assert sub.gateway_subscription_id == "sub_1"
        assert sub.gateway_customer_profile_id == "cus_test"
        assert sub.next_billing_date == dt.date(2024, 3, 16)
        assert gateway.count("create_subscription") == 1

    def test_trial_subscription(self, subscription_service, subscription_request) -> None:
        request = subscription_request.model_copy(
            update={"trial_days": 7, "start_date": dt.date(2024, 4, 1)}
        )
        result = subscription_service.subscribe(request, "sub-key", FP)
        assert result.body["status"] == "trial"
        assert result.body["trial_end_date"] == "2024-04-08"
        assert result.body["next_billing_date"] == "2024-04-08"

    def test_end_before_start_rejected(
        self, subscription_service, gateway, subscription_request
    ) -> None:
        request = subscription_request.model_copy(
            update={"start_date": dt.date(2024, 4, 1), "end_date": dt.date(2024, 3, 1)}
        )
        with pytest.raises(PaymentValidationError):
            subscription_service.subscribe(request, "sub-key", FP)
        assert gateway.count("create_subscription") == 0

    def test_declined_enrollment_fails_subscription(
        self, subscription_service, subscriptions, gateway, subscription_request, db
    ) -> None:
        gateway.script("create_subscription", GatewayResult.failure("card_declined", "Declined"))

        with pytest.raises(GatewayError) as exc_info:
            subscription_service.subscribe(subscription_request, "sub-key", FP)

        assert exc_info.value.code is ErrorCode.GATEWAY_DECLINED
        [sub] = subscriptions.find_by_customer("CUST-42")
        assert sub.status is SubscriptionStatus.FAILED
        assert sub.error_code == "card_declined"
        actions = [item["action"] for item in db.scan(AUDIT_LOG_TABLE)]
        assert actions == ["SUBSCRIBE_FAILED"]

    def test_transient_enrollment_errors_are_retried(
        self, subscription_service, gateway, sleeps, subscription_request
    ) -> None:
        gateway.script("create_subscription", GatewayTransientError("timeout"))
        result = subscription_service.subscribe(subscription_request, "sub-key", FP)
        assert result.status_code == 201
        assert sleeps == [1]

    def test_replayed_for_same_key(
        self, subscription_service, gateway, subscription_request
    ) -> None:
        first = subscription_service.subscribe(subscription_request, "sub-key", FP)
        second = subscription_service.subscribe(subscription_request, "sub-key", FP)
        assert second.replayed is True
        assert second.body["subscription_id"] == first.body["subscription_id"]
        assert gateway.count("create_subscription") == 1


class TestUpdate:
    """Partial updates."""

    def test_updates_present_fields_only(
        self, subscription_service, subscription_request
    ) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        result = subscription_service.update(
            sub_id, SubscriptionUpdate(amount=Money.of("24.99", "USD")), "upd-1", FP
        )
        assert result.status_code == 200
        assert result.body["amount"] == {"amount": "24.99", "currency": "USD"}
        assert result.body["name"] == "Gold plan"

    def test_currency_change_rejected(
        self, subscription_service, gateway, subscription_request
    ) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        with pytest.raises(PaymentValidationError):
            subscription_service.update(
                sub_id, SubscriptionUpdate(amount=Money.of("5", "EUR")), "upd-1", FP
            )
        assert gateway.count("update_subscription") == 0

    def test_gateway_failure_leaves_subscription_unchanged(
        self, subscription_service, subscriptions, gateway, subscription_request
    ) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        gateway.script("update_subscription", GatewayResult.failure("invalid_request", "No"))

        with pytest.raises(GatewayError):
            subscription_service.update(sub_id, SubscriptionUpdate(name="Platinum"), "upd-1", FP)

        sub = subscriptions.get(sub_id)
        assert sub.name == "Gold plan"
        assert sub.status is SubscriptionStatus.ACTIVE

    def test_unknown_subscription(self, subscription_service) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            subscription_service.update("SUB-NOPE", SubscriptionUpdate(name="x"), "upd-1", FP)
        assert exc_info.value.code is ErrorCode.SUBSCRIPTION_NOT_FOUND
        assert exc_info.value.http_status == 404


class TestCancel:
    """Cancellation."""

    def test_cancel(self, subscription_service, subscriptions, subscription_request) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        result = subscription_service.cancel(sub_id, "cancel-1", FP)

        assert result.body["status"] == "canceled"
        assert result.body["end_date"] == "2024-03-15"
        assert subscriptions.get(sub_id).status is SubscriptionStatus.CANCELED

    def test_cancel_twice_rejected(self, subscription_service, subscription_request) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        subscription_service.cancel(sub_id, "cancel-1", FP)
        with pytest.raises(InvalidTransactionStateError):
            subscription_service.cancel(sub_id, "cancel-2", FP)

    def test_gateway_failure_keeps_subscription_active(
        self, subscription_service, subscriptions, gateway, subscription_request
    ) -> None:
        sub_id = subscribe(subscription_service, subscription_request)
        gateway.script("cancel_subscription", *[GatewayTransientError("down") for _ in range(3)])

        with pytest.raises(GatewayError) as exc_info:
            subscription_service.cancel(sub_id, "cancel-1", FP)

        assert exc_info.value.code is ErrorCode.GATEWAY_UNAVAILABLE
        assert subscriptions.get(sub_id).status is SubscriptionStatus.ACTIVE

    def test_list_for_customer(self, subscription_service, subscription_request) -> None:
        subscribe(subscription_service, subscription_request, "k-1")
        other = subscription_request.model_copy(update={"name": "B"})
        subscribe(subscription_service, other, "k-2")
        assert len(subscription_service.list_subscriptions_for_customer("CUST-42")) == 2
