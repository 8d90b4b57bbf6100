"""Subscription commands: subscribe, update, cancel.

Same shape as the payment orchestrator: idempotency guard around each
command, gateway under the retry policy, lifecycle mutator on success,
audit on both outcomes. A failed enrollment leaves the subscription
FAILED. A failed update or cancel leaves it as it was, since the
agreement with the gateway still stands.
"""

import datetime as dt
import time
from typing import Any, Callable, Optional

from paycore.models.enums import SubscriptionStatus
from paycore.models.errors import (
    ErrorCode,
    GatewayError,
    InternalError,
    InvalidTransactionStateError,
    InvalidTransition,
    NotFoundError,
    PaymentValidationError,
)
from paycore.models.payment import GatewayResult, SubscriptionRequest, SubscriptionResponse
from paycore.models.subscription import Subscription, SubscriptionUpdate, generate_subscription_id
from paycore.services import subscription_lifecycle as lifecycle
from paycore.services.audit import AuditSink
from paycore.services.gateway import (
    GatewayClient,
    GatewayTerminalError,
    GatewayTransientError,
    is_transient,
)
from paycore.services.idempotency import IdempotencyGuard
from paycore.services.payment_orchestrator import OperationResult, run_guarded
from paycore.services.repositories import SubscriptionRepository
from paycore.utils.logging import get_correlation_id, get_logger, log_payment_operation
from paycore.utils.retry import retry_call

logger = get_logger(__name__)

ENTITY_SUBSCRIPTION = "subscription"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class SubscriptionService:
    """Coordinates guard, lifecycle, gateway, store and audit for subscriptions."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        guard: IdempotencyGuard,
        gateway: GatewayClient,
        audit: AuditSink,
        *,
        max_attempts: int = 3,
        initial_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._subscriptions = subscriptions
        self._guard = guard
        self._gateway = gateway
        self._audit = audit
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._sleep = sleep
        self._clock = clock

    def get_subscription(self, subscription_id: str) -> Subscription:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise NotFoundError(
                ErrorCode.SUBSCRIPTION_NOT_FOUND, details={"subscription_id": subscription_id}
            )
        return sub

    def list_subscriptions_for_customer(self, customer_id: str) -> list[Subscription]:
        return self._subscriptions.find_by_customer(customer_id)

    def subscribe(
        self,
        request: SubscriptionRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Create the subscription locally, enroll it with the gateway, activate."""
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            now = self._clock()
            start_date = request.start_date or (now.date() + dt.timedelta(days=1))
            if not request.amount.is_positive():
                raise PaymentValidationError(details={"amount": request.amount})
            if request.end_date is not None and request.end_date < start_date:
                raise PaymentValidationError(
                    details={"start_date": start_date, "end_date": request.end_date}
                )

            sub = Subscription(
                subscription_id=generate_subscription_id(),
                customer_id=request.customer_id,
                name=request.name,
                description=request.description,
                amount=request.amount,
                billing_interval=request.billing_interval,
                interval_count=request.interval_count,
                trial_days=request.trial_days,
                start_date=start_date,
                end_date=request.end_date,
                total_cycles=request.total_cycles,
                card_last_four=request.card_last_four,
                card_brand=request.card_brand,
                idempotency_key=idempotency_key,
                correlation_id=cid,
                created_at=now,
                updated_at=now,
            )
            if not self._subscriptions.insert_if_absent(sub):
                raise InternalError(details={"subscription_id": sub.subscription_id})

            try:
                result = self._call_gateway(
                    lambda: self._gateway.create_subscription(
                        sub, request.card_token, idempotency_key=idempotency_key
                    )
                )
            except (GatewayTransientError, GatewayTerminalError) as e:
                self._fail_enrollment(sub, e.code, cid)
                raise GatewayError(
                    ErrorCode.GATEWAY_UNAVAILABLE,
                    details={"subscription_id": sub.subscription_id, "gateway_code": e.code},
                ) from e
            if not result.success:
                code = result.code or "declined"
                self._fail_enrollment(sub, code, cid)
                raise GatewayError(
                    details={"subscription_id": sub.subscription_id, "gateway_code": code}
                )

            activated = self._subscriptions.update(
                sub.subscription_id,
                lambda s: lifecycle.activate(
                    s,
                    result.gateway_id or "",
                    result.customer_profile_id,
                    result.payment_profile_id,
                    self._clock(),
                )
                if s.status is SubscriptionStatus.PENDING
                else s,
            )
            self._record("subscribe", activated, cid, success=True)
            return 201, SubscriptionResponse.from_subscription(activated).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="subscribe",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    def update(
        self,
        subscription_id: str,
        changes: SubscriptionUpdate,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Apply the present fields of ``changes`` at the gateway, then locally."""
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            sub = self.get_subscription(subscription_id)
            if not lifecycle.can_update(sub):
                raise InvalidTransactionStateError(
                    details={"subscription_id": subscription_id, "status": sub.status.value}
                )
            try:
                lifecycle.update(sub, changes)
            except InvalidTransition as e:
                raise PaymentValidationError(details={"reason": e.event}) from e

            self._gateway_or_raise(
                "update_subscription",
                sub,
                lambda: self._gateway.update_subscription(
                    sub.gateway_subscription_id or "", changes, idempotency_key=idempotency_key
                ),
                cid,
            )
            now = self._clock()
            updated = self._subscriptions.update(
                subscription_id, lambda s: lifecycle.update(s, changes, now)
            )
            self._record("update_subscription", updated, cid, success=True)
            return 200, SubscriptionResponse.from_subscription(updated).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="update_subscription",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    def cancel(
        self,
        subscription_id: str,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Cancel at the gateway, then close the subscription as of today."""
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            sub = self.get_subscription(subscription_id)
            if not lifecycle.can_cancel(sub):
                raise InvalidTransactionStateError(
                    details={"subscription_id": subscription_id, "status": sub.status.value}
                )
            self._gateway_or_raise(
                "cancel_subscription",
                sub,
                lambda: self._gateway.cancel_subscription(
                    sub.gateway_subscription_id or "", idempotency_key=idempotency_key
                ),
                cid,
            )
            now = self._clock()
            canceled = self._subscriptions.update(
                subscription_id,
                lambda s: s
                if s.status is SubscriptionStatus.CANCELED
                else lifecycle.cancel(s, now.date(), now),
            )
            self._record("cancel_subscription", canceled, cid, success=True)
            return 200, SubscriptionResponse.from_subscription(canceled).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="cancel_subscription",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    # Internals

    def _call_gateway(self, fn: Callable[[], GatewayResult]) -> GatewayResult:
        return retry_call(
            fn,
            is_retryable=is_transient,
            max_attempts=self._max_attempts,
            initial_delay=self._initial_backoff,
            sleep=self._sleep,
        )

    def _gateway_or_raise(
        self,
        operation: str,
        sub: Subscription,
        fn: Callable[[], GatewayResult],
        correlation_id: Optional[str],
    ) -> GatewayResult:
        try:
            result = self._call_gateway(fn)
        except (GatewayTransientError, GatewayTerminalError) as e:
            self._record(operation, sub, correlation_id, success=False, error=e.code)
            raise GatewayError(
                ErrorCode.GATEWAY_UNAVAILABLE,
                details={"subscription_id": sub.subscription_id, "gateway_code": e.code},
            ) from e
        if not result.success:
            code = result.code or "declined"
            self._record(operation, sub, correlation_id, success=False, error=code)
            raise GatewayError(
                details={"subscription_id": sub.subscription_id, "gateway_code": code}
            )
        return result

    def _fail_enrollment(self, sub: Subscription, code: str, correlation_id: Optional[str]) -> None:
        now = self._clock()
        failed = self._subscriptions.update(
            sub.subscription_id,
            lambda s: lifecycle.fail(s, code, now) if s.status is SubscriptionStatus.PENDING else s,
        )
        self._record("subscribe", failed, correlation_id, success=False, error=code)

    def _record(
        self,
        operation: str,
        sub: Subscription,
        correlation_id: Optional[str],
        *,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        suffix = "SUCCESS" if success else "FAILED"
        self._audit.record(
            ENTITY_SUBSCRIPTION,
            sub.subscription_id,
            f"{operation.upper()}_{suffix}",
            correlation_id,
            sub.status.value,
            {"error_code": error} if error else None,
        )
        log_payment_operation(
            logger,
            operation,
            subscription_id=sub.subscription_id,
            amount=sub.amount,
            status=sub.status.value,
            error=error,
        )
