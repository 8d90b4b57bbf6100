"""Payment endpoints: purchase, authorize, capture, void, refund.

Handlers are plain functions: Starlette runs them in its threadpool, so a
slow or retrying gateway call holds one worker thread, not the event loop.

Every command requires an ``Idempotency-Key`` header. A retry with the
same key and body replays the first response (flagged with
``Idempotent-Replayed: true``), whether that response was a success or a
failure. The same key with a different body is rejected with 409.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_200_OK, HTTP_201_CREATED

from paycore.models.errors import ErrorResponse
from paycore.models.payment import (
    CaptureRequest,
    PaymentRequest,
    RefundRequest,
    TransactionResponse,
    VoidRequest,
)
from paycore.services.payment_orchestrator import PaymentOrchestrator
from paycore_api.dependencies import get_payment_orchestrator
from paycore_api.middleware.correlation import request_correlation_id
from paycore_api.responses import IdempotencyKey, request_fingerprint, to_response

router = APIRouter(tags=["payments"])

COMMAND_ERRORS = {
    400: {"description": "Invalid request", "model": ErrorResponse},
    402: {"description": "Declined by the gateway", "model": ErrorResponse},
    404: {"description": "Transaction not found", "model": ErrorResponse},
    409: {"description": "Duplicate request or invalid state", "model": ErrorResponse},
    502: {"description": "Gateway unavailable", "model": ErrorResponse},
}


@router.post(
    "/payments/purchase",
    summary="Authorize and capture in one step",
    response_model=TransactionResponse,
    status_code=HTTP_201_CREATED,
    responses=COMMAND_ERRORS,
)
def purchase(
    request: Request,
    body: PaymentRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> JSONResponse:
    result = orchestrator.purchase(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.post(
    "/payments/authorize",
    summary="Authorize a card payment",
    description="Places a hold for the amount. Capture or void it later.",
    response_model=TransactionResponse,
    status_code=HTTP_201_CREATED,
    responses=COMMAND_ERRORS,
)
def authorize(
    request: Request,
    body: PaymentRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> JSONResponse:
    result = orchestrator.authorize(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.post(
    "/payments/capture",
    summary="Capture an authorization",
    description="Amount defaults to the authorized amount and may not exceed it.",
    response_model=TransactionResponse,
    status_code=HTTP_200_OK,
    responses=COMMAND_ERRORS,
)
def capture(
    request: Request,
    body: CaptureRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> JSONResponse:
    result = orchestrator.capture(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.post(
    "/payments/void",
    summary="Void an authorization or unsettled capture",
    response_model=TransactionResponse,
    status_code=HTTP_200_OK,
    responses=COMMAND_ERRORS,
)
def void(
    request: Request,
    body: VoidRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> JSONResponse:
    result = orchestrator.void(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.post(
    "/payments/refund",
    summary="Refund a captured payment",
    description="""
Creates a new REFUND transaction linked to the captured one.

**Notes:**
- Omit `amount` (or set `full_refund`) to refund the whole refundable balance
- Partial refunds may not exceed the refundable balance
""",
    response_model=TransactionResponse,
    status_code=HTTP_201_CREATED,
    responses=COMMAND_ERRORS,
)
def refund(
    request: Request,
    body: RefundRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> JSONResponse:
    result = orchestrator.refund(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.get(
    "/transactions/{transaction_id}",
    summary="Get a transaction",
    response_model=TransactionResponse,
    responses={404: {"description": "Transaction not found", "model": ErrorResponse}},
)
def get_transaction(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> TransactionResponse:
    return TransactionResponse.from_transaction(orchestrator.get_transaction(transaction_id))


@router.get(
    "/orders/{order_id}/transactions",
    summary="List an order's transactions",
    description="Oldest first, including refunds and failed capture or void attempts.",
    response_model=list[TransactionResponse],
)
def list_order_transactions(
    order_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> list[TransactionResponse]:
    return [
        TransactionResponse.from_transaction(tx)
        for tx in orchestrator.list_transactions_for_order(order_id)
    ]


@router.get(
    "/customers/{customer_id}/transactions",
    summary="List a customer's transactions",
    description="Oldest first, across all of the customer's orders.",
    response_model=list[TransactionResponse],
)
def list_customer_transactions(
    customer_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> list[TransactionResponse]:
    return [
        TransactionResponse.from_transaction(tx)
        for tx in orchestrator.list_transactions_for_customer(customer_id)
    ]
