"""Gateway webhook endpoint.

No authentication: the body is signed with the shared webhook key
(base64 HMAC-SHA512 in ``X-Webhook-Signature``). The endpoint only
records and enqueues the event; reconciliation happens in the consumer.
"""

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from paycore.models.errors import ErrorResponse
from paycore.services.webhook_intake import IntakeResult, WebhookIntake
from paycore_api.dependencies import get_webhook_intake

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    received: bool = True
    event_id: str
    event_type: str
    processing_result: str  # "accepted" or "duplicate"


@router.post(
    "/webhooks/gateway",
    summary="Receive gateway webhook events",
    description="""
Records a signed gateway notification and queues it for reconciliation.

**Idempotent**: an event that was already processed returns 200 with
`duplicate` and is not queued again.
""",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Malformed notification", "model": ErrorResponse},
        401: {"description": "Invalid or missing signature", "model": ErrorResponse},
    },
)
async def receive_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    intake: WebhookIntake = Depends(get_webhook_intake),
) -> WebhookResponse:
    # Raw bytes: the signature covers the body exactly as sent
    payload = await request.body()
    result: IntakeResult = await run_in_threadpool(intake.receive, payload, signature)
    return WebhookResponse(
        event_id=result.external_event_id,
        event_type=result.event_type.value,
        processing_result=result.status.value,
    )
