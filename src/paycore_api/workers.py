"""Background entry points wired from the same cached services as the API.

- ``run_webhook_consumer``: long-running process draining the webhook queue
  (console script ``paycore-webhook-consumer``).
- ``purge_idempotency_handler``: Lambda handler for a scheduled rule that
  sweeps expired idempotency records.
"""

import signal
from types import FrameType
from typing import Any, Optional

from paycore.config import get_settings
from paycore.utils.logging import configure_logging, get_logger
from paycore.workers.webhook_consumer import WebhookConsumer
from paycore_api.dependencies import (
    get_idempotency_guard,
    get_webhook_queue,
    get_webhook_reconciler,
)

logger = get_logger(__name__)


def build_webhook_consumer() -> WebhookConsumer:
    return WebhookConsumer.from_settings(
        get_webhook_queue(), get_webhook_reconciler(), get_settings()
    )


def run_webhook_consumer() -> None:
    """Consume webhook events until SIGINT or SIGTERM."""
    configure_logging(get_settings().log_level)
    consumer = build_webhook_consumer()

    def _stop(signum: int, frame: Optional[FrameType]) -> None:
        logger.info("Received signal %d, stopping after the current batch", signum)
        consumer.stop()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    consumer.run()


def purge_idempotency_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Scheduled sweep of idempotency records past their TTL."""
    removed = get_idempotency_guard().purge_expired()
    logger.info("Idempotency sweep removed %d records", removed)
    return {"purged": removed}


if __name__ == "__main__":
    run_webhook_consumer()
