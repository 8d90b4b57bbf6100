"""Gateway webhook event model for deduplication and replay history."""

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, Field

from .enums import ReconcileResult, WebhookEventType


class WebhookEvent(BaseModel):
    """Log of one inbound gateway notification.

    Used for:
    - Deduplication: ``external_event_id`` is the primary key
    - Replay history: records are never deleted
    - Debugging: attempts and last error are kept on the row
    """

    external_event_id: str = Field(
        ...,
        description="Gateway notification ID",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: WebhookEventType
    event_type_raw: str = Field(..., examples=["payment.capture.created"])
    payload: dict[str, Any] = Field(default_factory=dict)
    signature: Optional[str] = None
    processed: bool = False
    processing_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    result: Optional[ReconcileResult] = None
    related_transaction_id: Optional[str] = Field(
        default=None, description="Gateway-side transaction ID from the payload"
    )
    related_subscription_id: Optional[str] = Field(
        default=None, description="Gateway-side subscription ID from the payload"
    )
    correlation_id: Optional[str] = None
    received_at: dt.datetime
    processed_at: Optional[dt.datetime] = None
