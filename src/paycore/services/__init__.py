"""Payment services: orchestration, state machines, storage and gateway."""

from .audit import AuditSink, DynamoDBAuditSink
from .dynamodb import DynamoDBService, get_dynamodb_service
from .gateway import GatewayClient, GatewayTerminalError, GatewayTransientError
from .idempotency import IdempotencyGuard, fingerprint
from .payment_orchestrator import OperationResult, PaymentOrchestrator
from .queue import SQSQueue
from .repositories import SubscriptionRepository, TransactionRepository, WebhookEventRepository
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .stripe_gateway import StripeGateway
from .subscription_service import SubscriptionService
from .webhook_intake import WebhookIntake
from .webhook_reconciler import WebhookReconciler

__all__ = [
    "AuditSink",
    "DynamoDBAuditSink",
    "DynamoDBService",
    "get_dynamodb_service",
    "GatewayClient",
    "GatewayTerminalError",
    "GatewayTransientError",
    "IdempotencyGuard",
    "fingerprint",
    "OperationResult",
    "PaymentOrchestrator",
    "SQSQueue",
    "SubscriptionRepository",
    "TransactionRepository",
    "WebhookEventRepository",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "StripeGateway",
    "SubscriptionService",
    "WebhookIntake",
    "WebhookReconciler",
]
