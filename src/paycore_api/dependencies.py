"""FastAPI dependency providers for the payment services.

Factories are cached with ``@lru_cache`` so each process builds one
instance of every service. Services are instantiated lazily on first use.

Usage in routes:
    from paycore_api.dependencies import get_payment_orchestrator

    @router.post("/payments/capture")
    async def capture(
        orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
    ):
        ...

Service Dependency Graph:
    DynamoDBService (singleton via get_dynamodb_service)
        ├── TransactionRepository ──┐
        ├── SubscriptionRepository ─┤
        ├── WebhookEventRepository ─┤
        ├── IdempotencyGuard ───────┤
        └── DynamoDBAuditSink ──────┤
    SSMService ── StripeGateway ────┤
                                    ├── PaymentOrchestrator
                                    ├── SubscriptionService
                                    ├── WebhookIntake (+ SQSQueue)
                                    └── WebhookReconciler

Testing:
    Use reset_services() to clear cached instances between tests, or
    ``app.dependency_overrides`` to swap in fakes.
"""

from functools import lru_cache

from paycore.config import get_settings
from paycore.services.audit import DynamoDBAuditSink
from paycore.services.dynamodb import get_dynamodb_service
from paycore.services.gateway import GatewayClient
from paycore.services.idempotency import IdempotencyGuard
from paycore.services.payment_orchestrator import PaymentOrchestrator
from paycore.services.queue import SQSQueue
from paycore.services.repositories import (
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)
from paycore.services.signature import WebhookSignatureVerifier
from paycore.services.ssm_service import get_ssm_service
from paycore.services.stripe_gateway import StripeGateway
from paycore.services.subscription_service import SubscriptionService
from paycore.services.webhook_intake import WebhookIntake
from paycore.services.webhook_reconciler import WebhookReconciler


@lru_cache
def get_transaction_repository() -> TransactionRepository:
    return TransactionRepository(get_dynamodb_service())


@lru_cache
def get_subscription_repository() -> SubscriptionRepository:
    return SubscriptionRepository(get_dynamodb_service())


@lru_cache
def get_webhook_event_repository() -> WebhookEventRepository:
    return WebhookEventRepository(get_dynamodb_service())


@lru_cache
def get_idempotency_guard() -> IdempotencyGuard:
    return IdempotencyGuard(
        get_dynamodb_service(), ttl_hours=get_settings().idempotency_ttl_hours
    )


@lru_cache
def get_audit_sink() -> DynamoDBAuditSink:
    return DynamoDBAuditSink(get_dynamodb_service())


@lru_cache
def get_gateway() -> GatewayClient:
    """Get the cached Stripe gateway.

    The webhook signature key is read from SSM once, here.
    """
    settings = get_settings()
    ssm = get_ssm_service()
    verifier = WebhookSignatureVerifier(
        ssm.get_webhook_signature_key(settings.environment),
        insecure=settings.webhook_signature_insecure,
    )
    return StripeGateway(
        ssm,
        environment=settings.environment,
        timeout_seconds=settings.gateway_timeout_seconds,
        signature_verifier=verifier,
    )


@lru_cache
def get_webhook_queue() -> SQSQueue:
    settings = get_settings()
    return SQSQueue(settings.webhook_queue_name, settings.webhook_dlq_name)


@lru_cache
def get_payment_orchestrator() -> PaymentOrchestrator:
    settings = get_settings()
    return PaymentOrchestrator(
        get_transaction_repository(),
        get_idempotency_guard(),
        get_gateway(),
        get_audit_sink(),
        max_attempts=settings.gateway_max_attempts,
        initial_backoff=settings.gateway_initial_backoff_seconds,
    )


@lru_cache
def get_subscription_service() -> SubscriptionService:
    settings = get_settings()
    return SubscriptionService(
        get_subscription_repository(),
        get_idempotency_guard(),
        get_gateway(),
        get_audit_sink(),
        max_attempts=settings.gateway_max_attempts,
        initial_backoff=settings.gateway_initial_backoff_seconds,
    )


@lru_cache
def get_webhook_intake() -> WebhookIntake:
    return WebhookIntake(get_webhook_event_repository(), get_gateway(), get_webhook_queue())


@lru_cache
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(
        get_webhook_event_repository(),
        get_transaction_repository(),
        get_subscription_repository(),
        get_audit_sink(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Also resets the DynamoDB singleton and the cached settings, so tests
    can change environment variables between cases.
    """
    from paycore.services.dynamodb import reset_dynamodb_service

    for factory in (
        get_transaction_repository,
        get_subscription_repository,
        get_webhook_event_repository,
        get_idempotency_guard,
        get_audit_sink,
        get_gateway,
        get_webhook_queue,
        get_payment_orchestrator,
        get_subscription_service,
        get_webhook_intake,
        get_webhook_reconciler,
    ):
        factory.cache_clear()
    get_ssm_service.cache_clear()
    get_settings.cache_clear()
    reset_dynamodb_service()
