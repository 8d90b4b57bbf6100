"""Audit trail sink.

Writes are fire-and-forget: a failed audit write is logged and never
propagates into the operation being audited.
"""

import datetime as dt
from typing import Callable, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from paycore.models.audit import AuditRecord
from paycore.services.dynamodb import AUDIT_LOG_TABLE, DynamoDBService
from paycore.utils.logging import get_correlation_id, get_logger

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        correlation_id: Optional[str],
        outcome: str,
        details: Optional[dict[str, str]] = None,
    ) -> None: ...


class DynamoDBAuditSink:
    """Appends ``AuditRecord`` rows to the audit-log table."""

    def __init__(
        self,
        db: DynamoDBService,
        clock: Callable[[], dt.datetime] = lambda: dt.datetime.now(dt.UTC),
    ) -> None:
        self._db = db
        self._clock = clock

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        correlation_id: Optional[str],
        outcome: str,
        details: Optional[dict[str, str]] = None,
    ) -> None:
        entry = AuditRecord(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            correlation_id=correlation_id or get_correlation_id(),
            outcome=outcome,
            details=details,
            created_at=self._clock(),
        )
        try:
            self._db.put_item(AUDIT_LOG_TABLE, entry.model_dump(mode="json", exclude_none=True))
        except (BotoCoreError, ClientError):
            logger.exception(
                "Failed to write audit record %s for %s %s", action, entity_type, entity_id
            )
            return
        logger.debug("Audit %s %s %s -> %s", action, entity_type, entity_id, outcome)
