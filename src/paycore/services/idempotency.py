"""Idempotency guard for side-effecting commands.

One row per client-supplied key in the ``idempotency-keys`` table. The row
is created with a conditional put (the atomic insert-if-absent), which is
the mutual-exclusion point for duplicate submissions.

Outcomes of ``begin``:
- STARTED: the key was new; run the operation once, then ``complete``.
- REPLAY: the operation already finished; return the stored response.
- CONFLICT: the key is still in flight, or was used for another request.
"""

import datetime as dt
import hashlib
import json
from typing import Any, Callable, Optional

from boto3.dynamodb.conditions import Attr
from pydantic import BaseModel

from paycore.models.idempotency import IdempotencyOutcome, IdempotencyRecord
from paycore.services.dynamodb import IDEMPOTENCY_TABLE, DynamoDBService
from paycore.services.repositories import from_dynamo, to_dynamo
from paycore.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_HOURS = 24

CONFLICT_IN_FLIGHT = "in_flight"
CONFLICT_FINGERPRINT_MISMATCH = "fingerprint_mismatch"

# "key" is a DynamoDB reserved word
_KEY_NAMES = {"#key": "key"}


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def fingerprint(method: str, path: str, body: Any = None) -> str:
    """SHA-256 hex digest of the canonical request.

    Dicts and models are serialized with sorted keys so that field order
    does not change the fingerprint; bytes and strings are hashed as-is.
    """
    if isinstance(body, BaseModel):
        body = body.model_dump(mode="json")
    if body is None:
        raw = b""
    elif isinstance(body, bytes):
        raw = body
    elif isinstance(body, str):
        raw = body.encode("utf-8")
    else:
        raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str).encode(
            "utf-8"
        )
    digest = hashlib.sha256()
    digest.update(f"{method.upper()} {path}\n".encode("utf-8"))
    digest.update(raw)
    return digest.hexdigest()


class IdempotencyGuard:
    """Atomic duplicate-suppression over the idempotency-keys table."""

    def __init__(
        self,
        db: DynamoDBService,
        *,
        ttl_hours: int = DEFAULT_TTL_HOURS,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._ttl = dt.timedelta(hours=ttl_hours)
        self._clock = clock

    def _new_record(
        self, key: str, request_fingerprint: str, correlation_id: Optional[str]
    ) -> IdempotencyRecord:
        now = self._clock()
        expires_at = now + self._ttl
        return IdempotencyRecord(
            key=key,
            request_fingerprint=request_fingerprint,
            correlation_id=correlation_id,
            created_at=now,
            expires_at=expires_at,
            expires_at_epoch=int(expires_at.timestamp()),
        )

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        item = self._db.get_item(IDEMPOTENCY_TABLE, {"key": key})
        return IdempotencyRecord.model_validate(from_dynamo(item)) if item else None

    def begin(
        self,
        key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> IdempotencyOutcome:
        """Claim ``key`` for this request, or report why it cannot run."""
        record = self._new_record(key, request_fingerprint, correlation_id)
        item = to_dynamo(record.model_dump(mode="json", exclude_none=True))

        if self._db.put_item(
            IDEMPOTENCY_TABLE,
            item,
            condition_expression="attribute_not_exists(#key)",
            expression_attribute_names=_KEY_NAMES,
        ):
            logger.info("Idempotency key claimed: %s", key)
            return IdempotencyOutcome.started(key)

        existing = self.get(key)
        now = self._clock()
        if existing is None or existing.is_expired(now):
            # Purged or past its TTL: take it over, still atomically.
            if self._db.put_item(
                IDEMPOTENCY_TABLE,
                item,
                condition_expression="attribute_not_exists(#key) OR expires_at_epoch <= :now",
                expression_attribute_values={":now": int(now.timestamp())},
                expression_attribute_names=_KEY_NAMES,
            ):
                logger.info("Idempotency key reclaimed after expiry: %s", key)
                return IdempotencyOutcome.started(key)
            existing = self.get(key)
            if existing is None:
                return IdempotencyOutcome.conflict(key, CONFLICT_IN_FLIGHT)

        if existing.request_fingerprint != request_fingerprint:
            logger.warning("Idempotency key reused for a different request: %s", key)
            return IdempotencyOutcome.conflict(key, CONFLICT_FINGERPRINT_MISMATCH)
        if existing.completed:
            logger.info("Replaying stored response for idempotency key: %s", key)
            return IdempotencyOutcome.replay(existing)
        logger.warning("Idempotency key still in flight: %s", key)
        return IdempotencyOutcome.conflict(key, CONFLICT_IN_FLIGHT)

    def complete(self, key: str, status: int, body: dict[str, Any]) -> bool:
        """Store the terminal response for ``key``; success and failure alike.

        Returns:
            False if the record no longer exists (purged mid-operation).
        """
        now = self._clock()
        attrs = self._db.update_item(
            IDEMPOTENCY_TABLE,
            {"key": key},
            update_expression=(
                "SET processing = :false, completed = :true, response_status = :status, "
                "response_body = :body, completed_at = :at"
            ),
            expression_attribute_values={
                ":false": False,
                ":true": True,
                ":status": status,
                ":body": to_dynamo(body),
                ":at": now.isoformat(),
            },
            expression_attribute_names=_KEY_NAMES,
            condition_expression="attribute_exists(#key)",
        )
        if attrs is None:
            logger.error("Idempotency record vanished before completion: %s", key)
            return False
        logger.info("Idempotency key completed: %s (status %d)", key, status)
        return True

    def purge_expired(self) -> int:
        """Delete records past their expiry. Returns the number removed."""
        now_epoch = int(self._clock().timestamp())
        expired = self._db.scan(
            IDEMPOTENCY_TABLE, filter_expression=Attr("expires_at_epoch").lte(now_epoch)
        )
        removed = 0
        for item in expired:
            if self._db.delete_item(
                IDEMPOTENCY_TABLE,
                {"key": item["key"]},
                condition_expression="expires_at_epoch <= :now",
                expression_attribute_values={":now": now_epoch},
            ):
                removed += 1
        if removed:
            logger.info("Purged %d expired idempotency records", removed)
        return removed
