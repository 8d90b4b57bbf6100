"""Idempotency record and guard outcome models."""

import datetime as dt
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class IdempotencyRecord(BaseModel):
    """Tracks one client-supplied idempotency key.

    ``processing`` and ``completed`` are never both true.
    """

    key: str = Field(..., description="Client-supplied idempotency key")
    request_fingerprint: str = Field(
        ..., description="SHA-256 of method, path and body"
    )
    processing: bool = True
    completed: bool = False
    response_status: Optional[int] = None
    response_body: Optional[dict[str, Any]] = None
    correlation_id: Optional[str] = None
    created_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    expires_at: dt.datetime
    expires_at_epoch: int = Field(..., description="DynamoDB TTL attribute")

    def is_expired(self, now: dt.datetime) -> bool:
        return self.expires_at <= now


class IdempotencyOutcomeKind(str, Enum):
    """What the caller of ``IdempotencyGuard.begin`` must do next."""

    STARTED = "started"
    REPLAY = "replay"
    CONFLICT = "conflict"


class IdempotencyOutcome(BaseModel):
    """Result of ``IdempotencyGuard.begin``.

    STARTED: execute the operation exactly once, then call ``complete``.
    REPLAY: return ``response_status``/``response_body`` verbatim.
    CONFLICT: the key is in flight (or reused for a different request).
    """

    model_config = ConfigDict(frozen=True)

    kind: IdempotencyOutcomeKind
    key: str
    response_status: Optional[int] = None
    response_body: Optional[dict[str, Any]] = None
    reason: Optional[str] = None

    @classmethod
    def started(cls, key: str) -> "IdempotencyOutcome":
        return cls(kind=IdempotencyOutcomeKind.STARTED, key=key)

    @classmethod
    def replay(cls, record: IdempotencyRecord) -> "IdempotencyOutcome":
        return cls(
            kind=IdempotencyOutcomeKind.REPLAY,
            key=record.key,
            response_status=record.response_status,
            response_body=record.response_body,
        )

    @classmethod
    def conflict(cls, key: str, reason: str) -> "IdempotencyOutcome":
        return cls(kind=IdempotencyOutcomeKind.CONFLICT, key=key, reason=reason)
