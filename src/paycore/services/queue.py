"""SQS-backed work queue with manual acknowledgement.

A delivery stays invisible to other consumers until it is acked (deleted),
rejected with requeue (made visible again immediately), or rejected
without requeue (copied to the dead-letter queue, then deleted).
"""

import json
from typing import Any, Optional

import boto3

from paycore.utils.logging import get_logger

logger = get_logger(__name__)

TOPIC_ATTRIBUTE = "topic"
WEBHOOK_TOPIC = "webhook.events"


class Delivery:
    """One received message and its acknowledgement handle."""

    def __init__(
        self,
        queue: "SQSQueue",
        message: dict[str, Any],
        topic: Optional[str],
        receipt_handle: str,
        receive_count: int,
        raw_body: str,
    ) -> None:
        self.queue = queue
        self.message = message
        self.topic = topic
        self.receipt_handle = receipt_handle
        self.receive_count = receive_count
        self.raw_body = raw_body
        self.settled = False

    def ack(self) -> None:
        self.queue.delete(self.receipt_handle)
        self.settled = True

    def reject(self, requeue: bool) -> None:
        if requeue:
            self.queue.make_visible(self.receipt_handle)
        else:
            self.queue.dead_letter(self)
        self.settled = True


class SQSQueue:
    """Publisher and consumer for one SQS queue plus its dead-letter queue."""

    def __init__(
        self,
        queue_name: str,
        dlq_name: str,
        *,
        visibility_timeout: int = 60,
        client: Any = None,
    ) -> None:
        self._sqs = client or boto3.client("sqs")
        self._queue_url = self._sqs.get_queue_url(QueueName=queue_name)["QueueUrl"]
        self._dlq_url = self._sqs.get_queue_url(QueueName=dlq_name)["QueueUrl"]
        self._visibility_timeout = visibility_timeout

    def publish(self, topic: str, message: dict[str, Any]) -> str:
        """Send ``message`` as JSON. Returns the SQS message ID."""
        response = self._sqs.send_message(
            QueueUrl=self._queue_url,
            MessageBody=json.dumps(message, default=str),
            MessageAttributes={
                TOPIC_ATTRIBUTE: {"DataType": "String", "StringValue": topic}
            },
        )
        message_id: str = response["MessageId"]
        logger.debug("Published %s message %s", topic, message_id)
        return message_id

    def receive(self, max_messages: int = 10, wait_seconds: int = 0) -> list[Delivery]:
        response = self._sqs.receive_message(
            QueueUrl=self._queue_url,
            MaxNumberOfMessages=max(1, min(max_messages, 10)),
            WaitTimeSeconds=wait_seconds,
            VisibilityTimeout=self._visibility_timeout,
            MessageAttributeNames=["All"],
            AttributeNames=["ApproximateReceiveCount"],
        )
        deliveries = []
        for raw in response.get("Messages", []):
            attributes = raw.get("MessageAttributes", {})
            topic = attributes.get(TOPIC_ATTRIBUTE, {}).get("StringValue")
            try:
                message = json.loads(raw["Body"])
            except json.JSONDecodeError:
                logger.error("Undecodable message %s; dead-lettering", raw.get("MessageId"))
                message = {}
            deliveries.append(
                Delivery(
                    self,
                    message if isinstance(message, dict) else {},
                    topic,
                    raw["ReceiptHandle"],
                    int(raw.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
                    raw["Body"],
                )
            )
        return deliveries

    def delete(self, receipt_handle: str) -> None:
        self._sqs.delete_message(QueueUrl=self._queue_url, ReceiptHandle=receipt_handle)

    def make_visible(self, receipt_handle: str) -> None:
        self._sqs.change_message_visibility(
            QueueUrl=self._queue_url, ReceiptHandle=receipt_handle, VisibilityTimeout=0
        )

    def dead_letter(self, delivery: Delivery) -> None:
        attributes = {}
        if delivery.topic:
            attributes[TOPIC_ATTRIBUTE] = {"DataType": "String", "StringValue": delivery.topic}
        self._sqs.send_message(
            QueueUrl=self._dlq_url,
            MessageBody=delivery.raw_body,
            MessageAttributes=attributes,
        )
        self.delete(delivery.receipt_handle)
        logger.warning("Message moved to dead-letter queue: %s", delivery.message)
