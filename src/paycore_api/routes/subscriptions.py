"""Subscription endpoints: subscribe, update, cancel, read.

Commands take an ``Idempotency-Key`` header and replay like the payment
commands do.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_200_OK, HTTP_201_CREATED

from paycore.models.errors import ErrorResponse
from paycore.models.payment import SubscriptionRequest, SubscriptionResponse
from paycore.models.subscription import SubscriptionUpdate
from paycore.services.subscription_service import SubscriptionService
from paycore_api.dependencies import get_subscription_service
from paycore_api.middleware.correlation import request_correlation_id
from paycore_api.responses import IdempotencyKey, request_fingerprint, to_response

router = APIRouter(tags=["subscriptions"])

COMMAND_ERRORS = {
    400: {"description": "Invalid request", "model": ErrorResponse},
    402: {"description": "Declined by the gateway", "model": ErrorResponse},
    404: {"description": "Subscription not found", "model": ErrorResponse},
    409: {"description": "Duplicate request or invalid state", "model": ErrorResponse},
    502: {"description": "Gateway unavailable", "model": ErrorResponse},
}


@router.post(
    "/subscriptions",
    summary="Create a subscription",
    description="""
Enrolls a recurring billing agreement with the gateway.

**Notes:**
- `start_date` defaults to tomorrow
- With `trial_days` the subscription starts in TRIAL and bills when the trial ends
""",
    response_model=SubscriptionResponse,
    status_code=HTTP_201_CREATED,
    responses=COMMAND_ERRORS,
)
def create_subscription(
    request: Request,
    body: SubscriptionRequest,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    result = service.subscribe(
        body, idempotency_key, request_fingerprint(request, body), correlation_id
    )
    return to_response(result)


@router.patch(
    "/subscriptions/{subscription_id}",
    summary="Update a subscription",
    description="Only fields present in the body change. Status is unaffected.",
    response_model=SubscriptionResponse,
    status_code=HTTP_200_OK,
    responses=COMMAND_ERRORS,
)
def update_subscription(
    subscription_id: str,
    request: Request,
    body: SubscriptionUpdate,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    result = service.update(
        subscription_id,
        body,
        idempotency_key,
        request_fingerprint(request, body),
        correlation_id,
    )
    return to_response(result)


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    summary="Cancel a subscription",
    response_model=SubscriptionResponse,
    status_code=HTTP_200_OK,
    responses=COMMAND_ERRORS,
)
def cancel_subscription(
    subscription_id: str,
    request: Request,
    idempotency_key: IdempotencyKey,
    correlation_id: str | None = Depends(request_correlation_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> JSONResponse:
    result = service.cancel(
        subscription_id, idempotency_key, request_fingerprint(request), correlation_id
    )
    return to_response(result)


@router.get(
    "/subscriptions/{subscription_id}",
    summary="Get a subscription",
    response_model=SubscriptionResponse,
    responses={404: {"description": "Subscription not found", "model": ErrorResponse}},
)
def get_subscription(
    subscription_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    return SubscriptionResponse.from_subscription(service.get_subscription(subscription_id))


@router.get(
    "/customers/{customer_id}/subscriptions",
    summary="List a customer's subscriptions",
    response_model=list[SubscriptionResponse],
)
def list_customer_subscriptions(
    customer_id: str,
    service: SubscriptionService = Depends(get_subscription_service),
) -> list[SubscriptionResponse]:
    return [
        SubscriptionResponse.from_subscription(sub)
        for sub in service.list_subscriptions_for_customer(customer_id)
    ]
