"""Stripe implementation of the gateway interface.

Card payments use PaymentIntents: ``authorize`` confirms with
``capture_method=manual``, ``purchase`` confirms with automatic capture,
``void`` cancels the intent. Subscriptions create a Customer holding the
card and a Subscription priced inline.

Stripe exceptions are classified at this boundary: card and request
errors become ``GatewayResult.failure``; network, rate-limit and 5xx
errors raise ``GatewayTransientError``; credential errors raise
``GatewayTerminalError``.
"""

from typing import Any, Callable, Optional

import stripe
from stripe import StripeClient

from paycore.models.enums import BillingInterval
from paycore.models.errors import is_gateway_decline, is_gateway_error_retryable
from paycore.models.money import Money
from paycore.models.payment import GatewayResult
from paycore.models.subscription import Subscription, SubscriptionUpdate
from paycore.services.gateway import GatewayTerminalError, GatewayTransientError
from paycore.services.signature import WebhookSignatureVerifier
from paycore.services.ssm_service import SSMService, SSMServiceError
from paycore.utils.logging import get_logger

logger = get_logger(__name__)

STRIPE_INTERVALS: dict[BillingInterval, str] = {
    BillingInterval.DAILY: "day",
    BillingInterval.WEEKLY: "week",
    BillingInterval.MONTHLY: "month",
    BillingInterval.YEARLY: "year",
}

AUTHORIZED_INTENT_STATUSES = {"requires_capture"}
CAPTURED_INTENT_STATUSES = {"succeeded", "processing"}
SETTLED_REFUND_STATUSES = {"succeeded", "pending"}


def classify_stripe_error(error: stripe.StripeError) -> GatewayResult:
    """Map a Stripe exception to a failure result or a classified error.

    Returns:
        ``GatewayResult.failure`` for definitive rejections.

    Raises:
        GatewayTransientError: For faults worth retrying.
        GatewayTerminalError: For credential or permission faults.
    """
    code = getattr(error, "code", None)
    message = getattr(error, "user_message", None) or str(error)

    if isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)):
        raise GatewayTransientError(str(error), code=code or "api_connection_error") from error
    if is_gateway_error_retryable(code):
        raise GatewayTransientError(str(error), code=code) from error
    if isinstance(error, stripe.CardError) or is_gateway_decline(code):
        decline_code = getattr(error, "decline_code", None)
        return GatewayResult.failure(decline_code or code or "card_declined", message)
    if isinstance(error, stripe.InvalidRequestError):
        return GatewayResult.failure(code or "invalid_request", message)
    if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
        raise GatewayTerminalError(str(error), code=code or "authentication_error") from error

    http_status = getattr(error, "http_status", None)
    if http_status is None or http_status >= 500:
        raise GatewayTransientError(str(error), code=code or "api_error") from error
    raise GatewayTerminalError(str(error), code=code) from error


def _reference_metadata(order_id: str, reference: Optional[str]) -> dict[str, str]:
    metadata = {"order_id": order_id}
    if reference:
        metadata["merchant_reference_id"] = reference
    return metadata


class StripeGateway:
    """Gateway client backed by the Stripe API.

    The secret key is read from SSM on first use. Stripe's own network
    retries are disabled; retrying is the caller's policy.

    Usage:
        gateway = StripeGateway(get_ssm_service(), environment="prod")
        result = gateway.authorize(Money.of("25.00", "USD"), "pm_card_visa", order_id="ORD-1")
    """

    def __init__(
        self,
        ssm: SSMService,
        *,
        environment: str,
        timeout_seconds: float = 30.0,
        signature_verifier: Optional[WebhookSignatureVerifier] = None,
        client: Optional[StripeClient] = None,
    ) -> None:
        self._ssm = ssm
        self._environment = environment
        self._timeout = timeout_seconds
        self._client = client
        self._verifier = signature_verifier

    def _get_client(self) -> StripeClient:
        if self._client is None:
            try:
                secret_key = self._ssm.get_gateway_secret_key(self._environment)
            except SSMServiceError as e:
                raise GatewayTerminalError(
                    f"Failed to initialize Stripe client: {e}", code="configuration_error"
                ) from e
            self._client = StripeClient(
                secret_key,
                max_network_retries=0,
                http_client=stripe.RequestsClient(timeout=self._timeout),
            )
            logger.info("Stripe client initialized for environment: %s", self._environment)
        return self._client

    def _call(self, operation: str, fn: Callable[[StripeClient], GatewayResult]) -> GatewayResult:
        client = self._get_client()
        try:
            result = fn(client)
        except stripe.StripeError as e:
            logger.warning(
                "Stripe %s failed: %s (code: %s)", operation, e, getattr(e, "code", None)
            )
            return classify_stripe_error(e)
        if result.success:
            logger.info("Stripe %s succeeded: %s", operation, result.gateway_id)
        else:
            logger.warning("Stripe %s rejected: %s %s", operation, result.code, result.message)
        return result

    @staticmethod
    def _options(idempotency_key: Optional[str]) -> dict[str, Any]:
        return {"idempotency_key": idempotency_key} if idempotency_key else {}

    # Card payments

    def _confirm_intent(
        self,
        operation: str,
        amount: Money,
        card_token: str,
        *,
        capture_method: str,
        order_id: str,
        reference: Optional[str],
        description: Optional[str],
        idempotency_key: Optional[str],
        expected_statuses: set[str],
    ) -> GatewayResult:
        def create(client: StripeClient) -> GatewayResult:
            intent = client.payment_intents.create(
                params={
                    "amount": amount.to_minor_units(),
                    "currency": amount.currency.lower(),
                    "payment_method": card_token,
                    "payment_method_types": ["card"],
                    "capture_method": capture_method,
                    "confirm": True,
                    "description": description or f"Order {order_id}",
                    "metadata": _reference_metadata(order_id, reference),
                },
                options=self._options(idempotency_key),
            )
            if intent.status in expected_statuses:
                return GatewayResult.ok(intent.id)
            return GatewayResult.failure(
                "authentication_required"
                if intent.status == "requires_action"
                else f"intent_{intent.status}",
                f"PaymentIntent {intent.id} ended in status {intent.status}",
            )

        return self._call(operation, create)

    def authorize(
        self,
        amount: Money,
        card_token: str,
        *,
        order_id: str,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        return self._confirm_intent(
            "authorize",
            amount,
            card_token,
            capture_method="manual",
            order_id=order_id,
            reference=reference,
            description=description,
            idempotency_key=idempotency_key,
            expected_statuses=AUTHORIZED_INTENT_STATUSES,
        )

    def purchase(
        self,
        amount: Money,
        card_token: str,
        *,
        order_id: str,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        return self._confirm_intent(
            "purchase",
            amount,
            card_token,
            capture_method="automatic",
            order_id=order_id,
            reference=reference,
            description=description,
            idempotency_key=idempotency_key,
            expected_statuses=CAPTURED_INTENT_STATUSES,
        )

    def capture(
        self,
        gateway_transaction_id: str,
        amount: Money,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        def capture_intent(client: StripeClient) -> GatewayResult:
            intent = client.payment_intents.capture(
                gateway_transaction_id,
                params={"amount_to_capture": amount.to_minor_units()},
                options=self._options(idempotency_key),
            )
            if intent.status in CAPTURED_INTENT_STATUSES:
                return GatewayResult.ok(intent.id)
            return GatewayResult.failure(
                f"intent_{intent.status}",
                f"PaymentIntent {intent.id} not captured (status {intent.status})",
            )

        return self._call("capture", capture_intent)

    def void(
        self,
        gateway_transaction_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        def cancel_intent(client: StripeClient) -> GatewayResult:
            intent = client.payment_intents.cancel(
                gateway_transaction_id,
                params={"cancellation_reason": "requested_by_customer"},
                options=self._options(idempotency_key),
            )
            if intent.status == "canceled":
                return GatewayResult.ok(intent.id)
            return GatewayResult.failure(
                f"intent_{intent.status}",
                f"PaymentIntent {intent.id} not canceled (status {intent.status})",
            )

        return self._call("void", cancel_intent)

    def refund(
        self,
        gateway_transaction_id: str,
        amount: Money,
        card_ref: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        # Stripe refunds against the PaymentIntent; card_ref is not needed.
        def create_refund(client: StripeClient) -> GatewayResult:
            refund = client.refunds.create(
                params={
                    "payment_intent": gateway_transaction_id,
                    "amount": amount.to_minor_units(),
                },
                options=self._options(idempotency_key),
            )
            if refund.status in SETTLED_REFUND_STATUSES:
                return GatewayResult.ok(refund.id)
            return GatewayResult.failure(
                f"refund_{refund.status}",
                getattr(refund, "failure_reason", None) or f"Refund {refund.id} {refund.status}",
            )

        return self._call("refund", create_refund)

    # Subscriptions

    @staticmethod
    def _price_data(
        amount: Money, interval: BillingInterval, count: int, product: str
    ) -> dict[str, Any]:
        return {
            "currency": amount.currency.lower(),
            "product": product,
            "unit_amount": amount.to_minor_units(),
            "recurring": {
                "interval": STRIPE_INTERVALS[interval],
                "interval_count": count,
            },
        }

    def create_subscription(
        self,
        subscription: Subscription,
        card_token: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        def create(client: StripeClient) -> GatewayResult:
            key = idempotency_key or subscription.subscription_id
            customer = client.customers.create(
                params={
                    "payment_method": card_token,
                    "invoice_settings": {"default_payment_method": card_token},
                    "metadata": {"customer_id": subscription.customer_id},
                },
                options={"idempotency_key": f"{key}-customer"},
            )
            product = client.products.create(
                params={"name": subscription.name},
                options={"idempotency_key": f"{key}-product"},
            )
            params: dict[str, Any] = {
                "customer": customer.id,
                "items": [
                    {
                        "price_data": self._price_data(
                            subscription.amount,
                            subscription.billing_interval,
                            subscription.interval_count,
                            product.id,
                        )
                    }
                ],
                "metadata": {"subscription_id": subscription.subscription_id},
            }
            if subscription.trial_days > 0:
                params["trial_period_days"] = subscription.trial_days
            sub = client.subscriptions.create(
                params=params, options={"idempotency_key": f"{key}-subscription"}
            )
            if sub.status in ("active", "trialing"):
                return GatewayResult.ok(
                    sub.id,
                    customer_profile_id=customer.id,
                    payment_profile_id=card_token,
                )
            return GatewayResult.failure(
                f"subscription_{sub.status}",
                f"Subscription {sub.id} created in status {sub.status}",
            )

        return self._call("create_subscription", create)

    def update_subscription(
        self,
        gateway_subscription_id: str,
        changes: SubscriptionUpdate,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        def update(client: StripeClient) -> GatewayResult:
            params: dict[str, Any] = {"proration_behavior": "none"}
            metadata = {
                name: value
                for name, value in (("name", changes.name), ("description", changes.description))
                if value is not None
            }
            if metadata:
                params["metadata"] = metadata
            if changes.card_token:
                params["default_payment_method"] = changes.card_token
            reprice = (
                changes.amount is not None
                or changes.billing_interval is not None
                or changes.interval_count is not None
            )
            if reprice:
                current = client.subscriptions.retrieve(gateway_subscription_id)
                item = current["items"]["data"][0]
                price = item["price"]
                recurring = price["recurring"]
                interval = changes.billing_interval or next(
                    k for k, v in STRIPE_INTERVALS.items() if v == recurring["interval"]
                )
                amount = changes.amount or Money.from_minor_units(
                    price["unit_amount"], price["currency"]
                )
                params["items"] = [
                    {
                        "id": item["id"],
                        "price_data": self._price_data(
                            amount,
                            interval,
                            changes.interval_count or recurring["interval_count"],
                            price["product"],
                        ),
                    }
                ]
            sub = client.subscriptions.update(
                gateway_subscription_id,
                params=params,
                options=self._options(idempotency_key),
            )
            return GatewayResult.ok(sub.id)

        return self._call("update_subscription", update)

    def cancel_subscription(
        self,
        gateway_subscription_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        def cancel(client: StripeClient) -> GatewayResult:
            sub = client.subscriptions.cancel(
                gateway_subscription_id, options=self._options(idempotency_key)
            )
            return GatewayResult.ok(sub.id)

        return self._call("cancel_subscription", cancel)

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        if self._verifier is None:
            raise GatewayTerminalError(
                "Webhook signature verifier not configured", code="configuration_error"
            )
        return self._verifier.verify(payload, signature)
