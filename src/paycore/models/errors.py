"""Standard error codes and exception types for payment operations.

Every failure the core surfaces is a ``PaymentError`` carrying an
``ErrorCode``. The same code drives the HTTP status, the user-facing
message and the body cached by the idempotency guard, so a replayed
failure is byte-for-byte the failure the client first saw.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Stable error codes returned to API clients."""

    DUPLICATE_REQUEST = "ERR_PAY_001"
    INVALID_TRANSACTION_STATE = "ERR_PAY_002"
    TRANSACTION_NOT_FOUND = "ERR_PAY_003"
    SUBSCRIPTION_NOT_FOUND = "ERR_PAY_004"
    GATEWAY_DECLINED = "ERR_PAY_005"
    GATEWAY_UNAVAILABLE = "ERR_PAY_006"
    VALIDATION_FAILED = "ERR_PAY_007"
    INVALID_WEBHOOK_SIGNATURE = "ERR_PAY_008"
    INTERNAL_ERROR = "ERR_PAY_999"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.DUPLICATE_REQUEST: "A request with this idempotency key is already in progress",
    ErrorCode.INVALID_TRANSACTION_STATE: "The operation is not allowed in the current state",
    ErrorCode.TRANSACTION_NOT_FOUND: "Transaction not found",
    ErrorCode.SUBSCRIPTION_NOT_FOUND: "Subscription not found",
    ErrorCode.GATEWAY_DECLINED: "The payment gateway declined the operation",
    ErrorCode.GATEWAY_UNAVAILABLE: "The payment gateway could not complete the operation",
    ErrorCode.VALIDATION_FAILED: "The request is invalid",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid webhook signature",
    ErrorCode.INTERNAL_ERROR: "An unexpected error occurred",
}

ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.DUPLICATE_REQUEST: "Wait for the original request to finish, then retry with the same key",
    ErrorCode.INVALID_TRANSACTION_STATE: "Fetch the transaction to check its current status",
    ErrorCode.TRANSACTION_NOT_FOUND: "Verify the transaction ID",
    ErrorCode.SUBSCRIPTION_NOT_FOUND: "Verify the subscription ID",
    ErrorCode.GATEWAY_DECLINED: "Use a different card or contact the issuer",
    ErrorCode.GATEWAY_UNAVAILABLE: "Retry later with a new idempotency key",
    ErrorCode.VALIDATION_FAILED: "Correct the request and try again",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify the webhook signature key configuration",
    ErrorCode.INTERNAL_ERROR: "Retry later with a new idempotency key",
}

ERROR_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.DUPLICATE_REQUEST: 409,
    ErrorCode.INVALID_TRANSACTION_STATE: 409,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ErrorCode.GATEWAY_DECLINED: 402,
    ErrorCode.GATEWAY_UNAVAILABLE: 502,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: 401,
    ErrorCode.INTERNAL_ERROR: 500,
}


class ErrorResponse(BaseModel):
    """Standard error body for failed commands."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, str]] = None


class PaymentError(Exception):
    """Base exception for every typed failure the core surfaces."""

    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        code: ErrorCode | None = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = ERROR_MESSAGES[self.code]
        self.recovery = ERROR_RECOVERY[self.code]
        self.details = (
            {key: str(value) for key, value in details.items()} if details else None
        )
        super().__init__(self.message)

    @property
    def http_status(self) -> int:
        return ERROR_HTTP_STATUS[self.code]

    def to_error_response(self) -> ErrorResponse:
        """Convert this exception to the standard error body."""
        return ErrorResponse(
            error_code=self.code,
            message=self.message,
            recovery=self.recovery,
            details=self.details,
        )


class DuplicateRequestError(PaymentError):
    """Another request holding the same idempotency key is still in flight."""

    default_code = ErrorCode.DUPLICATE_REQUEST


class InvalidTransactionStateError(PaymentError):
    """A command's state-machine precondition is not met."""

    default_code = ErrorCode.INVALID_TRANSACTION_STATE


class NotFoundError(PaymentError):
    """Unknown transaction or subscription."""

    default_code = ErrorCode.TRANSACTION_NOT_FOUND


class PaymentValidationError(PaymentError):
    """The command itself is malformed (bad amount, currency mismatch)."""

    default_code = ErrorCode.VALIDATION_FAILED


class GatewayError(PaymentError):
    """The gateway definitively failed the operation.

    Raised after the failure has been persisted and the idempotency record
    completed; the client must use a new idempotency key to try again.
    """

    default_code = ErrorCode.GATEWAY_DECLINED


class InvalidWebhookSignatureError(PaymentError):
    """Webhook body does not match its signature header."""

    default_code = ErrorCode.INVALID_WEBHOOK_SIGNATURE


class InternalError(PaymentError):
    """Unexpected local fault while executing a command."""

    default_code = ErrorCode.INTERNAL_ERROR


class InvalidTransition(Exception):
    """A state-machine mutator was applied from a state that forbids it."""

    def __init__(self, entity: str, current: str, event: str) -> None:
        super().__init__(f"{entity} cannot apply '{event}' from status '{current}'")
        self.entity = entity
        self.current = current
        self.event = event


# Stripe error codes that describe a definitive card decline
GATEWAY_DECLINE_CODES: set[str] = {
    "card_declined",
    "expired_card",
    "insufficient_funds",
    "incorrect_cvc",
    "incorrect_number",
    "invalid_cvc",
    "invalid_expiry_month",
    "invalid_expiry_year",
    "invalid_number",
    "card_velocity_exceeded",
    "generic_decline",
}

# Stripe error codes that are worth retrying
GATEWAY_RETRYABLE_CODES: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
    "timeout",
}


def is_gateway_error_retryable(error_code: Optional[str]) -> bool:
    """Check if a gateway error code is likely transient.

    Args:
        error_code: The gateway error code.

    Returns:
        True if the error may be resolved by retrying.
    """
    return error_code in GATEWAY_RETRYABLE_CODES if error_code else False


def is_gateway_decline(error_code: Optional[str]) -> bool:
    """Check if a gateway error code is a definitive card decline."""
    return error_code in GATEWAY_DECLINE_CODES if error_code else False
