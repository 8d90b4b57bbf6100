"""Webhook queue consumer.

Drains the webhook queue with a pool of worker threads and hands each
event ID to the reconciler. Acknowledgement follows the event row: a
message is acked only after the reconciler has marked the event processed
(or found it already processed). Failed dispatches are requeued until the
attempt limit, then dead-lettered.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from paycore.config import Settings, get_settings
from paycore.services.queue import WEBHOOK_TOPIC, Delivery, SQSQueue
from paycore.services.webhook_reconciler import (
    ReconcileFailed,
    WebhookEventNotFoundError,
    WebhookReconciler,
)
from paycore.utils.logging import correlation_scope, get_logger

logger = get_logger(__name__)


class WebhookConsumer:
    """Pulls deliveries from SQS and settles each one exactly once."""

    def __init__(
        self,
        queue: SQSQueue,
        reconciler: WebhookReconciler,
        *,
        max_attempts: int = 3,
        workers: int = 4,
        wait_seconds: int = 10,
    ) -> None:
        self._queue = queue
        self._reconciler = reconciler
        self._max_attempts = max_attempts
        self._workers = workers
        self._wait_seconds = wait_seconds
        self._stopping = threading.Event()

    @classmethod
    def from_settings(
        cls,
        queue: SQSQueue,
        reconciler: WebhookReconciler,
        settings: Optional[Settings] = None,
    ) -> "WebhookConsumer":
        settings = settings or get_settings()
        return cls(
            queue,
            reconciler,
            max_attempts=settings.webhook_max_attempts,
            workers=settings.webhook_consumer_workers,
        )

    def handle(self, delivery: Delivery) -> None:
        """Reconcile one delivery and ack, requeue or dead-letter it."""
        event_id = delivery.message.get("external_event_id")
        if delivery.topic not in (None, WEBHOOK_TOPIC) or not event_id:
            logger.error("Malformed webhook delivery: %s", delivery.raw_body)
            delivery.reject(requeue=False)
            return

        with correlation_scope(delivery.message.get("correlation_id")):
            try:
                result = self._reconciler.reconcile(str(event_id))
            except ReconcileFailed as e:
                if e.attempts < self._max_attempts:
                    logger.warning(
                        "Requeueing webhook event %s (attempt %d/%d)",
                        event_id,
                        e.attempts,
                        self._max_attempts,
                    )
                    delivery.reject(requeue=True)
                else:
                    logger.error(
                        "Webhook event %s failed %d times; dead-lettering",
                        event_id,
                        e.attempts,
                    )
                    delivery.reject(requeue=False)
                return
            except WebhookEventNotFoundError:
                logger.error("Webhook event %s was never recorded", event_id)
                delivery.reject(requeue=False)
                return
            except Exception:
                logger.exception("Unhandled error reconciling webhook event %s", event_id)
                delivery.reject(requeue=False)
                return

            delivery.ack()
            logger.debug("Acked webhook event %s (%s)", event_id, result.value)

    def poll_once(self, executor: Optional[ThreadPoolExecutor] = None) -> int:
        """Receive one batch and process it. Returns the batch size."""
        deliveries = self._queue.receive(wait_seconds=self._wait_seconds)
        if not deliveries:
            return 0
        if executor is None:
            for delivery in deliveries:
                self.handle(delivery)
        else:
            # Surface errors from handle() itself (ack/reject failures)
            for future in [executor.submit(self.handle, d) for d in deliveries]:
                future.result()
        return len(deliveries)

    def run(self) -> None:
        """Consume until ``stop()`` is called."""
        logger.info("Webhook consumer starting with %d workers", self._workers)
        with ThreadPoolExecutor(
            max_workers=self._workers, thread_name_prefix="webhook-consumer"
        ) as executor:
            while not self._stopping.is_set():
                self.poll_once(executor)
        logger.info("Webhook consumer stopped")

    def stop(self) -> None:
        self._stopping.set()
