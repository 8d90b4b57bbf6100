"""Repositories for transactions, subscriptions and webhook events.

Entities are stored as JSON-mode pydantic dumps (money amounts and dates
as strings). Versioned entities use optimistic concurrency: ``save`` only
succeeds if the stored ``version`` still matches the one that was read,
and bumps it.
"""

import datetime as dt
from decimal import Decimal
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

from paycore.models.enums import ReconcileResult
from paycore.models.subscription import Subscription
from paycore.models.transaction import Transaction
from paycore.models.webhook import WebhookEvent
from paycore.services.dynamodb import (
    SUBSCRIPTIONS_TABLE,
    TRANSACTIONS_TABLE,
    WEBHOOK_EVENTS_TABLE,
    DynamoDBService,
)
from paycore.utils.logging import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

DEFAULT_UPDATE_ATTEMPTS = 5


class EntityNotFoundError(Exception):
    """The row to save does not exist."""


class ConcurrentModificationError(Exception):
    """The row changed since it was read; re-read and re-apply."""


def to_dynamo(value: Any) -> Any:
    """Convert JSON-mode values to types boto3 accepts (no floats)."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Convert boto3 Decimals back to int or float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class VersionedRepository(Generic[M]):
    """Store for an entity model with an integer ``version`` field."""

    table: str
    key_name: str
    model: type[M]

    def __init__(self, db: DynamoDBService) -> None:
        self._db = db

    def _to_item(self, entity: M) -> dict[str, Any]:
        item: dict[str, Any] = to_dynamo(entity.model_dump(mode="json", exclude_none=True))
        return item

    def _from_item(self, item: dict[str, Any]) -> M:
        return self.model.model_validate(from_dynamo(item))

    def _key(self, entity_id: str) -> dict[str, str]:
        return {self.key_name: entity_id}

    def get(self, entity_id: str) -> Optional[M]:
        item = self._db.get_item(self.table, self._key(entity_id))
        return self._from_item(item) if item else None

    def insert_if_absent(self, entity: M) -> bool:
        """Atomically create the row. False if the key is already taken."""
        return self._db.put_item(
            self.table,
            self._to_item(entity),
            condition_expression=f"attribute_not_exists({self.key_name})",
        )

    def save(self, entity: M) -> M:
        """Write ``entity`` if nobody else has written since it was read.

        Returns:
            The stored entity, with ``version`` incremented.

        Raises:
            EntityNotFoundError: The row does not exist.
            ConcurrentModificationError: The stored version moved on.
        """
        expected = getattr(entity, "version")
        stored = entity.model_copy(update={"version": expected + 1})
        saved = self._db.put_item(
            self.table,
            self._to_item(stored),
            condition_expression=f"attribute_exists({self.key_name}) AND #version = :expected",
            expression_attribute_values={":expected": expected},
            expression_attribute_names={"#version": "version"},
        )
        if saved:
            return stored
        entity_id = getattr(entity, self.key_name)
        if self._db.get_item(self.table, self._key(entity_id)) is None:
            raise EntityNotFoundError(f"{self.model.__name__} {entity_id} not found")
        raise ConcurrentModificationError(
            f"{self.model.__name__} {entity_id} changed since version {expected}"
        )

    def update(
        self,
        entity_id: str,
        mutate: Callable[[M], M],
        max_attempts: int = DEFAULT_UPDATE_ATTEMPTS,
    ) -> M:
        """Read-modify-write with re-read on version conflicts.

        ``mutate`` is re-applied to the fresh row after every lost race, so
        it must be a pure function of the entity. Returning the entity
        unchanged skips the write. Exceptions from ``mutate`` propagate.
        """
        for attempt in range(1, max_attempts + 1):
            current = self.get(entity_id)
            if current is None:
                raise EntityNotFoundError(f"{self.model.__name__} {entity_id} not found")
            updated = mutate(current)
            if updated is current:
                return current
            try:
                return self.save(updated)
            except ConcurrentModificationError:
                logger.warning(
                    "Concurrent update on %s %s (attempt %d/%d)",
                    self.model.__name__,
                    entity_id,
                    attempt,
                    max_attempts,
                )
        raise ConcurrentModificationError(
            f"{self.model.__name__} {entity_id} still contended after {max_attempts} attempts"
        )

    def _find(self, index_name: str, attribute: str, value: str) -> list[M]:
        items = self._db.query_by_gsi(self.table, index_name, attribute, value)
        return [self._from_item(item) for item in items]


class TransactionRepository(VersionedRepository[Transaction]):
    table = TRANSACTIONS_TABLE
    key_name = "transaction_id"
    model = Transaction

    def find_by_gateway_id(self, gateway_transaction_id: str) -> Optional[Transaction]:
        """The transaction a gateway-side ID (intent or refund) belongs to.

        Failed capture and void records share their parent's gateway ID;
        the record without a parent is the one the ID was issued for.
        """
        matches = self._find(
            "gateway_transaction_id-index", "gateway_transaction_id", gateway_transaction_id
        )
        return (
            min(matches, key=lambda tx: (tx.parent_transaction_id is not None, tx.created_at))
            if matches
            else None
        )

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        matches = self._find("idempotency_key-index", "idempotency_key", idempotency_key)
        return matches[0] if matches else None

    def find_by_order(self, order_id: str) -> list[Transaction]:
        return sorted(
            self._find("order_id-index", "order_id", order_id),
            key=lambda tx: tx.created_at,
        )

    def find_by_customer(self, customer_id: str) -> list[Transaction]:
        return sorted(
            self._find("customer_id-index", "customer_id", customer_id),
            key=lambda tx: tx.created_at,
        )


class SubscriptionRepository(VersionedRepository[Subscription]):
    table = SUBSCRIPTIONS_TABLE
    key_name = "subscription_id"
    model = Subscription

    def find_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        matches = self._find(
            "gateway_subscription_id-index", "gateway_subscription_id", gateway_subscription_id
        )
        return matches[0] if matches else None

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Subscription]:
        matches = self._find("idempotency_key-index", "idempotency_key", idempotency_key)
        return matches[0] if matches else None

    def find_by_customer(self, customer_id: str) -> list[Subscription]:
        return sorted(
            self._find("customer_id-index", "customer_id", customer_id),
            key=lambda sub: sub.created_at,
        )


class WebhookEventRepository:
    """Webhook event log keyed by the gateway's notification ID.

    Rows are never deleted. ``processed`` flips to true exactly once.
    """

    table = WEBHOOK_EVENTS_TABLE

    def __init__(self, db: DynamoDBService) -> None:
        self._db = db

    def get(self, external_event_id: str) -> Optional[WebhookEvent]:
        item = self._db.get_item(self.table, {"external_event_id": external_event_id})
        return WebhookEvent.model_validate(from_dynamo(item)) if item else None

    def insert_if_absent(self, event: WebhookEvent) -> bool:
        return self._db.put_item(
            self.table,
            to_dynamo(event.model_dump(mode="json", exclude_none=True)),
            condition_expression="attribute_not_exists(external_event_id)",
        )

    def mark_processed(
        self,
        external_event_id: str,
        result: ReconcileResult,
        processed_at: dt.datetime,
    ) -> bool:
        """Flip ``processed`` to true. False if another consumer got there first."""
        attrs = self._db.update_item(
            self.table,
            {"external_event_id": external_event_id},
            update_expression=(
                "SET #processed = :true, #result = :result, processed_at = :at "
                "REMOVE last_error"
            ),
            expression_attribute_values={
                ":true": True,
                ":false": False,
                ":result": result.value,
                ":at": processed_at.isoformat(),
            },
            expression_attribute_names={"#processed": "processed", "#result": "result"},
            condition_expression="attribute_exists(external_event_id) AND #processed = :false",
        )
        return attrs is not None

    def record_failure(self, external_event_id: str, error: str) -> int:
        """Increment ``processing_attempts`` and store the error.

        Returns:
            The attempt count after the increment.
        """
        attrs = self._db.update_item(
            self.table,
            {"external_event_id": external_event_id},
            update_expression=(
                "SET processing_attempts = if_not_exists(processing_attempts, :zero) + :one, "
                "last_error = :error"
            ),
            expression_attribute_values={
                ":zero": 0,
                ":one": 1,
                ":error": error[:1000],
            },
            condition_expression="attribute_exists(external_event_id)",
        )
        if attrs is None:
            raise EntityNotFoundError(f"WebhookEvent {external_event_id} not found")
        return int(attrs["processing_attempts"])
