"""Webhook reconciler.

Applies recorded gateway notifications to local transactions and
subscriptions. Delivery is at-least-once, so every handler is monotonic:
it moves the entity forward only when the current state still matches the
event's precondition. Anything else is stale and leaves the row alone.

``processed`` on the WebhookEvent row is the dedup boundary. It flips to
true exactly once, after the entity write has succeeded.
"""

import datetime as dt
from typing import Any, Callable, Optional, TypeVar

from paycore.models.enums import (
    ReconcileResult,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    WebhookEventType,
)
from paycore.models.money import Money
from paycore.models.subscription import Subscription
from paycore.models.transaction import Transaction
from paycore.models.webhook import WebhookEvent
from paycore.services import subscription_lifecycle as lifecycle
from paycore.services import transaction_state as state
from paycore.services.audit import AuditSink
from paycore.services.repositories import (
    SubscriptionRepository,
    TransactionRepository,
    VersionedRepository,
    WebhookEventRepository,
)
from paycore.utils.logging import correlation_scope, get_logger, log_webhook_event

logger = get_logger(__name__)

E = TypeVar("E", Transaction, Subscription)

T = TransactionStatus
ET = WebhookEventType


class WebhookEventNotFoundError(Exception):
    """The queue referenced an event that was never recorded."""


class ReconcileFailed(Exception):
    """Dispatch raised; the failure is recorded on the event row."""

    def __init__(self, external_event_id: str, attempts: int, cause: str) -> None:
        super().__init__(f"Webhook event {external_event_id} failed (attempt {attempts}): {cause}")
        self.external_event_id = external_event_id
        self.attempts = attempts


def _payload_data(event: WebhookEvent) -> dict[str, Any]:
    data = event.payload.get("payload")
    return data if isinstance(data, dict) else {}


def _payload_amount(event: WebhookEvent, currency: str) -> Optional[Money]:
    """Amount reported by the gateway, in major units, if any."""
    data = _payload_data(event)
    raw = data.get("authAmount", data.get("amount"))
    if raw is None:
        return None
    try:
        return Money.of(str(raw), currency)
    except ValueError:
        logger.warning("Ignoring unparseable amount %r in event %s", raw, event.external_event_id)
        return None


def _billing_date(event: WebhookEvent) -> dt.date:
    raw = _payload_data(event).get("billingDate")
    if raw:
        try:
            return dt.date.fromisoformat(str(raw)[:10])
        except ValueError:
            logger.warning("Ignoring unparseable billingDate %r", raw)
    return event.received_at.date()


def _gateway_id(tx: Transaction, event: WebhookEvent) -> str:
    return tx.gateway_transaction_id or event.related_transaction_id or ""


# Transaction handlers: (tx, event, now) -> updated tx, or tx itself when stale


def _on_payment_created(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.PENDING:
        return tx
    authorized = state.apply_authorized(tx, _gateway_id(tx, event), None, now)
    return state.apply_captured(authorized, authorized.authorized_amount or tx.amount, now)


def _on_payment_authorized(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.PENDING:
        return tx
    return state.apply_authorized(tx, _gateway_id(tx, event), None, now)


def _on_payment_captured(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.AUTHORIZED:
        return tx
    authorized = tx.authorized_amount or tx.amount
    amount = _payload_amount(event, tx.currency) or authorized
    if not amount.is_positive() or amount > authorized:
        logger.warning(
            "Capture of %s on %s does not fit authorization %s, discarding event %s",
            amount,
            tx.transaction_id,
            authorized,
            event.external_event_id,
        )
        return tx
    return state.apply_captured(tx, amount, now)


def _on_payment_voided(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if not state.can_void(tx):
        return tx
    return state.apply_voided(tx, now)


def _on_refund_created(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.type is not TransactionType.REFUND or tx.status is not T.PENDING:
        return tx
    return state.apply_refund_settled(tx, _gateway_id(tx, event), now)


def _on_fraud_held(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.CAPTURED:
        return tx
    return state.apply_fraud_hold(tx, now)


def _on_fraud_approved(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.PENDING_REVIEW:
        return tx
    return state.apply_fraud_approved(tx, now)


def _on_fraud_declined(tx: Transaction, event: WebhookEvent, now: dt.datetime) -> Transaction:
    if tx.status is not T.PENDING_REVIEW:
        return tx
    return state.apply_fraud_declined(tx, now)


TRANSACTION_HANDLERS: dict[
    WebhookEventType, Callable[[Transaction, WebhookEvent, dt.datetime], Transaction]
] = {
    ET.PAYMENT_CREATED: _on_payment_created,
    ET.PAYMENT_AUTHORIZED: _on_payment_authorized,
    ET.PAYMENT_CAPTURED: _on_payment_captured,
    ET.PAYMENT_VOIDED: _on_payment_voided,
    ET.REFUND_CREATED: _on_refund_created,
    ET.FRAUD_HELD: _on_fraud_held,
    ET.FRAUD_APPROVED: _on_fraud_approved,
    ET.FRAUD_DECLINED: _on_fraud_declined,
}


# Subscription handlers


def _on_subscription_created(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if sub.status is not SubscriptionStatus.PENDING:
        return sub
    return lifecycle.activate(
        sub,
        sub.gateway_subscription_id or event.related_subscription_id or "",
        sub.gateway_customer_profile_id,
        sub.gateway_payment_profile_id,
        now,
    )


def _on_subscription_cancelled(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if not lifecycle.can_cancel(sub):
        return sub
    return lifecycle.cancel(sub, now.date(), now)


def _on_subscription_suspended(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if sub.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL):
        return sub
    return lifecycle.suspend(sub, now)


def _on_subscription_terminated(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if sub.status.is_terminal() or sub.status is SubscriptionStatus.PENDING:
        return sub
    return lifecycle.terminate(sub, now)


def _on_subscription_payment_succeeded(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if sub.status not in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE):
        return sub
    billed_on = _billing_date(event)
    if sub.last_billing_date is not None and billed_on <= sub.last_billing_date:
        return sub
    return lifecycle.record_cycle_success(sub, billed_on, now)


def _on_subscription_payment_failed(
    sub: Subscription, event: WebhookEvent, now: dt.datetime
) -> Subscription:
    if sub.status.is_terminal():
        return sub
    return lifecycle.record_cycle_failure(sub, now)


SUBSCRIPTION_HANDLERS: dict[
    WebhookEventType, Callable[[Subscription, WebhookEvent, dt.datetime], Subscription]
] = {
    ET.SUBSCRIPTION_CREATED: _on_subscription_created,
    ET.SUBSCRIPTION_CANCELLED: _on_subscription_cancelled,
    ET.SUBSCRIPTION_SUSPENDED: _on_subscription_suspended,
    ET.SUBSCRIPTION_TERMINATED: _on_subscription_terminated,
    ET.SUBSCRIPTION_PAYMENT_SUCCEEDED: _on_subscription_payment_succeeded,
    ET.SUBSCRIPTION_PAYMENT_FAILED: _on_subscription_payment_failed,
}


class WebhookReconciler:
    """Applies one recorded webhook event at a time."""

    def __init__(
        self,
        events: WebhookEventRepository,
        transactions: TransactionRepository,
        subscriptions: SubscriptionRepository,
        audit: AuditSink,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._events = events
        self._transactions = transactions
        self._subscriptions = subscriptions
        self._audit = audit
        self._clock = clock

    def reconcile(self, external_event_id: str) -> ReconcileResult:
        """Dedup, dispatch and mark one event processed.

        Returns:
            APPLIED, STALE, IGNORED, or DUPLICATE when the event was already
            processed (by an earlier delivery or a concurrent consumer).

        Raises:
            WebhookEventNotFoundError: No row for ``external_event_id``.
            ReconcileFailed: Dispatch raised. The attempt is recorded and the
                event stays unprocessed.
        """
        event = self._events.get(external_event_id)
        if event is None:
            raise WebhookEventNotFoundError(external_event_id)

        with correlation_scope(event.correlation_id):
            if event.processed:
                log_webhook_event(
                    logger, event.event_type.value, external_event_id, result="duplicate"
                )
                return ReconcileResult.DUPLICATE

            try:
                result = self._dispatch(event)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                attempts = self._events.record_failure(external_event_id, error)
                log_webhook_event(
                    logger,
                    event.event_type.value,
                    external_event_id,
                    result="error",
                    error=error,
                    attempts=attempts,
                )
                raise ReconcileFailed(external_event_id, attempts, error) from e

            if not self._events.mark_processed(external_event_id, result, self._clock()):
                log_webhook_event(
                    logger, event.event_type.value, external_event_id, result="duplicate"
                )
                return ReconcileResult.DUPLICATE

            log_webhook_event(
                logger,
                event.event_type.value,
                external_event_id,
                transaction_id=event.related_transaction_id,
                subscription_id=event.related_subscription_id,
                result=result.value,
            )
            return result

    def _dispatch(self, event: WebhookEvent) -> ReconcileResult:
        if event.event_type in TRANSACTION_HANDLERS:
            if not event.related_transaction_id:
                return ReconcileResult.IGNORED
            tx = self._find_transaction(event)
            if tx is None:
                logger.info("No transaction for gateway ID %s", event.related_transaction_id)
                return ReconcileResult.IGNORED
            return self._apply(
                self._transactions,
                tx.transaction_id,
                TRANSACTION_HANDLERS[event.event_type],
                event,
                "transaction",
            )

        if event.event_type in SUBSCRIPTION_HANDLERS:
            if not event.related_subscription_id:
                return ReconcileResult.IGNORED
            sub = self._subscriptions.find_by_gateway_id(event.related_subscription_id)
            if sub is None:
                logger.info("No subscription for gateway ID %s", event.related_subscription_id)
                return ReconcileResult.IGNORED
            return self._apply(
                self._subscriptions,
                sub.subscription_id,
                SUBSCRIPTION_HANDLERS[event.event_type],
                event,
                "subscription",
            )

        # Informational (updated, expiring) and unknown events
        return ReconcileResult.IGNORED

    def _find_transaction(self, event: WebhookEvent) -> Optional[Transaction]:
        """Look up by gateway ID, then by the merchant reference we sent.

        A transaction still PENDING locally has no gateway ID yet, so events
        that race the command path are matched on ``merchantReferenceId``.
        """
        tx = self._transactions.find_by_gateway_id(event.related_transaction_id or "")
        if tx is not None:
            return tx
        reference = _payload_data(event).get("merchantReferenceId")
        return self._transactions.get(str(reference)) if reference else None

    def _apply(
        self,
        repo: VersionedRepository[E],
        entity_id: str,
        handler: Callable[[E, WebhookEvent, dt.datetime], E],
        event: WebhookEvent,
        entity_type: str,
    ) -> ReconcileResult:
        now = self._clock()
        applied = False

        def mutate(current: E) -> E:
            nonlocal applied
            updated = handler(current, event, now)
            applied = updated is not current
            return updated

        saved = repo.update(entity_id, mutate)
        if not applied:
            log_webhook_event(
                logger,
                event.event_type.value,
                event.external_event_id,
                result="stale",
                current_status=saved.status.value,
            )
            return ReconcileResult.STALE

        self._audit.record(
            entity_type,
            entity_id,
            f"WEBHOOK_{event.event_type.name}",
            event.correlation_id,
            saved.status.value,
            {"external_event_id": event.external_event_id},
        )
        return ReconcileResult.APPLIED
