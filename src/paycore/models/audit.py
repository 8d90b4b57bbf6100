"""Audit trail record model."""

import datetime as dt
import uuid
from typing import Optional

from pydantic import BaseModel, Field


def generate_audit_id() -> str:
    return f"AUD-{uuid.uuid4().hex[:16].upper()}"


class AuditRecord(BaseModel):
    """One audited action on a transaction or subscription."""

    audit_id: str = Field(default_factory=generate_audit_id)
    entity_type: str = Field(..., examples=["transaction", "subscription"])
    entity_id: str
    action: str = Field(..., examples=["CAPTURE_SUCCESS", "REFUND_FAILED"])
    correlation_id: Optional[str] = None
    outcome: str = Field(..., examples=["captured", "failed"])
    details: Optional[dict[str, str]] = None
    created_at: dt.datetime
