"""Helpers shared by the command routes."""

from typing import Annotated

from fastapi import Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from paycore.services.idempotency import fingerprint
from paycore.services.payment_orchestrator import OperationResult

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
REPLAYED_HEADER = "Idempotent-Replayed"

IdempotencyKey = Annotated[
    str,
    Header(
        alias=IDEMPOTENCY_KEY_HEADER,
        min_length=1,
        max_length=255,
        description="Client-chosen key; retries with the same key replay the first response",
    ),
]


def request_fingerprint(request: Request, body: BaseModel | None = None) -> str:
    """Fingerprint of method, path and parsed body."""
    return fingerprint(request.method, request.url.path, body)


def to_response(result: OperationResult) -> JSONResponse:
    """Render a guarded command result, flagging replays."""
    headers = {REPLAYED_HEADER: "true"} if result.replayed else None
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)
