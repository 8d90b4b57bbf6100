"""Payment gateway interface.

Every call returns a normalized ``GatewayResult`` or raises one of the
classified errors below. ``GatewayResult(success=False)`` is a definitive
answer (decline, validation rejection) and is never retried.
"""

from typing import Optional, Protocol

from paycore.models.money import Money
from paycore.models.payment import GatewayResult
from paycore.models.subscription import Subscription, SubscriptionUpdate


class GatewayTransientError(Exception):
    """Network fault, timeout, rate limit or 5xx. Eligible for retry."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or "gateway_unavailable"


class GatewayTerminalError(Exception):
    """The gateway refused the call outright (bad credentials, bad request).

    Not retried; surfaced as a gateway failure.
    """

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or "gateway_error"


def is_transient(error: BaseException) -> bool:
    """Retry predicate for gateway calls."""
    return isinstance(error, GatewayTransientError)


class GatewayClient(Protocol):
    """Operations the core needs from a card gateway.

    ``idempotency_key`` is forwarded to gateways that support request
    deduplication on their side.
    ``reference`` is the local transaction ID, echoed back in webhooks as
    ``merchantReferenceId``.
    """

    def authorize(
        self,
        amount: Money,
        card_token: str,
        *,
        order_id: str,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def purchase(
        self,
        amount: Money,
        card_token: str,
        *,
        order_id: str,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def capture(
        self,
        gateway_transaction_id: str,
        amount: Money,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def void(
        self,
        gateway_transaction_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def refund(
        self,
        gateway_transaction_id: str,
        amount: Money,
        card_ref: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def create_subscription(
        self,
        subscription: Subscription,
        card_token: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def update_subscription(
        self,
        gateway_subscription_id: str,
        changes: SubscriptionUpdate,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def cancel_subscription(
        self,
        gateway_subscription_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult: ...

    def validate_webhook_signature(
        self, payload: bytes, signature: Optional[str]
    ) -> bool: ...
