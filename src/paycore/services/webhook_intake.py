"""Inbound webhook admission.

Checks the signature over the raw body, parses the notification envelope,
records the event and publishes its ID for the reconciler. Nothing here
touches transactions or subscriptions.

Envelope::

    {
        "notificationId": "evt-123",
        "eventType": "net.authorize.payment.capture.created",
        "payload": {"id": "<gateway transaction id>", "subscriptionId": "..."}
    }
"""

import datetime as dt
import json
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel

from paycore.models.enums import WebhookEventType
from paycore.models.errors import InvalidWebhookSignatureError, PaymentValidationError
from paycore.models.webhook import WebhookEvent
from paycore.services.gateway import GatewayClient
from paycore.services.queue import WEBHOOK_TOPIC, SQSQueue
from paycore.services.repositories import WebhookEventRepository
from paycore.utils.logging import get_correlation_id, get_logger, log_webhook_event

logger = get_logger(__name__)

VENDOR_PREFIXES = ("net.authorize.",)

# Vendor event names (prefix stripped, lower case)
EVENT_TYPE_NAMES: dict[str, WebhookEventType] = {
    "payment.authcapture.created": WebhookEventType.PAYMENT_CREATED,
    "payment.authorization.created": WebhookEventType.PAYMENT_AUTHORIZED,
    "payment.capture.created": WebhookEventType.PAYMENT_CAPTURED,
    "payment.void.created": WebhookEventType.PAYMENT_VOIDED,
    "payment.refund.created": WebhookEventType.REFUND_CREATED,
    "payment.fraud.held": WebhookEventType.FRAUD_HELD,
    "payment.fraud.approved": WebhookEventType.FRAUD_APPROVED,
    "payment.fraud.declined": WebhookEventType.FRAUD_DECLINED,
    "customer.subscription.created": WebhookEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": WebhookEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.cancelled": WebhookEventType.SUBSCRIPTION_CANCELLED,
    "customer.subscription.suspended": WebhookEventType.SUBSCRIPTION_SUSPENDED,
    "customer.subscription.terminated": WebhookEventType.SUBSCRIPTION_TERMINATED,
    "customer.subscription.expiring": WebhookEventType.SUBSCRIPTION_EXPIRING,
    "customer.subscription.payment.succeeded": WebhookEventType.SUBSCRIPTION_PAYMENT_SUCCEEDED,
    "customer.subscription.payment.failed": WebhookEventType.SUBSCRIPTION_PAYMENT_FAILED,
}


def parse_event_type(raw: Optional[str]) -> WebhookEventType:
    """Map a vendor event name to the internal vocabulary.

    Case-insensitive; a known vendor prefix is ignored, and internal names
    such as ``payment_captured`` are accepted as-is. Anything else is UNKNOWN.
    """
    if not raw:
        return WebhookEventType.UNKNOWN
    name = raw.strip().lower()
    for prefix in VENDOR_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    if name in EVENT_TYPE_NAMES:
        return EVENT_TYPE_NAMES[name]
    try:
        return WebhookEventType(name)
    except ValueError:
        return WebhookEventType.UNKNOWN


class IntakeStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class IntakeResult(BaseModel):
    external_event_id: str
    event_type: WebhookEventType
    status: IntakeStatus


class WebhookIntake:
    """Admits webhook notifications into the event log and the queue."""

    def __init__(
        self,
        events: WebhookEventRepository,
        gateway: GatewayClient,
        queue: SQSQueue,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._events = events
        self._gateway = gateway
        self._queue = queue
        self._clock = clock

    def receive(self, raw_body: bytes, signature: Optional[str]) -> IntakeResult:
        """Validate, record and publish one notification.

        Raises:
            InvalidWebhookSignatureError: Signature missing or wrong.
            PaymentValidationError: Body is not a usable envelope.
        """
        if not self._gateway.validate_webhook_signature(raw_body, signature):
            logger.warning("Invalid webhook signature")
            raise InvalidWebhookSignatureError()

        envelope = self._parse(raw_body)
        event = self._to_event(envelope, signature)

        if not self._events.insert_if_absent(event):
            existing = self._events.get(event.external_event_id)
            if existing is not None and existing.processed:
                log_webhook_event(
                    logger, event.event_type_raw, event.external_event_id, result="duplicate"
                )
                return IntakeResult(
                    external_event_id=event.external_event_id,
                    event_type=event.event_type,
                    status=IntakeStatus.DUPLICATE,
                )
            # Recorded but not yet processed: publish again in case the
            # first publish was lost. The reconciler deduplicates.
            logger.info("Re-publishing unprocessed webhook event %s", event.external_event_id)
            if existing is not None:
                event = existing

        self._queue.publish(
            WEBHOOK_TOPIC,
            {"external_event_id": event.external_event_id, "correlation_id": event.correlation_id},
        )
        log_webhook_event(
            logger,
            event.event_type_raw,
            event.external_event_id,
            transaction_id=event.related_transaction_id,
            subscription_id=event.related_subscription_id,
            result="accepted",
        )
        return IntakeResult(
            external_event_id=event.external_event_id,
            event_type=event.event_type,
            status=IntakeStatus.ACCEPTED,
        )

    @staticmethod
    def _parse(raw_body: bytes) -> dict[str, Any]:
        try:
            envelope = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PaymentValidationError(details={"body": "not valid JSON"}) from e
        if not isinstance(envelope, dict):
            raise PaymentValidationError(details={"body": "expected a JSON object"})
        if not envelope.get("notificationId"):
            raise PaymentValidationError(details={"notificationId": "missing"})
        return envelope

    def _to_event(self, envelope: dict[str, Any], signature: Optional[str]) -> WebhookEvent:
        raw_type = str(envelope.get("eventType") or "UNKNOWN")
        event_type = parse_event_type(raw_type)
        data = envelope.get("payload")
        data = data if isinstance(data, dict) else {}

        related_tx: Optional[str] = None
        related_sub = data.get("subscriptionId")
        if event_type.is_subscription_event():
            related_sub = related_sub or data.get("id")
        else:
            related_tx = data.get("id")

        return WebhookEvent(
            external_event_id=str(envelope["notificationId"]),
            event_type=event_type,
            event_type_raw=raw_type,
            payload=envelope,
            signature=signature,
            related_transaction_id=str(related_tx) if related_tx else None,
            related_subscription_id=str(related_sub) if related_sub else None,
            correlation_id=get_correlation_id(),
            received_at=self._clock(),
        )
