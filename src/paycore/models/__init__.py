"""Pydantic models for payment and subscription data entities."""

from .audit import AuditRecord
from .enums import (
    BillingInterval,
    ReconcileResult,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
    WebhookEventType,
)
from .errors import (
    ERROR_HTTP_STATUS,
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    DuplicateRequestError,
    ErrorCode,
    ErrorResponse,
    GatewayError,
    InternalError,
    InvalidTransactionStateError,
    InvalidTransition,
    InvalidWebhookSignatureError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
    is_gateway_error_retryable,
)
from .idempotency import IdempotencyOutcome, IdempotencyOutcomeKind, IdempotencyRecord
from .money import CurrencyMismatchError, Money
from .payment import (
    CaptureRequest,
    GatewayResult,
    PaymentRequest,
    RefundRequest,
    SubscriptionRequest,
    SubscriptionResponse,
    TransactionResponse,
    VoidRequest,
)
from .subscription import Subscription, SubscriptionUpdate
from .transaction import Transaction
from .webhook import WebhookEvent

__all__ = [
    # Enums
    "BillingInterval",
    "ReconcileResult",
    "SubscriptionStatus",
    "TransactionStatus",
    "TransactionType",
    "WebhookEventType",
    # Money
    "CurrencyMismatchError",
    "Money",
    # Entities
    "AuditRecord",
    "IdempotencyRecord",
    "Subscription",
    "SubscriptionUpdate",
    "Transaction",
    "WebhookEvent",
    # Commands and responses
    "CaptureRequest",
    "GatewayResult",
    "IdempotencyOutcome",
    "IdempotencyOutcomeKind",
    "PaymentRequest",
    "RefundRequest",
    "SubscriptionRequest",
    "SubscriptionResponse",
    "TransactionResponse",
    "VoidRequest",
    # Errors
    "DuplicateRequestError",
    "ERROR_HTTP_STATUS",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "ErrorCode",
    "ErrorResponse",
    "GatewayError",
    "InternalError",
    "InvalidTransactionStateError",
    "InvalidTransition",
    "InvalidWebhookSignatureError",
    "NotFoundError",
    "PaymentError",
    "PaymentValidationError",
    "is_gateway_error_retryable",
]
