"""Pytest configuration and fixtures for the payments core tests.

This module provides reusable fixtures for testing:
- DynamoDB tables and SQS queues mocked with moto
- A scriptable fake gateway
- A frozen clock and a recording sleep for retry timing
- Fully wired services on top of the mocked AWS resources
"""

import datetime as dt
import itertools
import os
import threading
from collections import defaultdict
from typing import Any, Callable, Generator, Optional

import boto3
import pytest
from fastapi.testclient import TestClient
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ["ENVIRONMENT"] = "test"
os.environ["DYNAMODB_TABLE_PREFIX"] = "test-payments"
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

from paycore.models.money import Money  # noqa: E402
from paycore.models.payment import GatewayResult, PaymentRequest  # noqa: E402
from paycore.services.audit import DynamoDBAuditSink  # noqa: E402
from paycore.services.dynamodb import DynamoDBService, reset_dynamodb_service  # noqa: E402
from paycore.services.idempotency import IdempotencyGuard  # noqa: E402
from paycore.services.payment_orchestrator import PaymentOrchestrator  # noqa: E402
from paycore.services.queue import SQSQueue  # noqa: E402
from paycore.services.repositories import (  # noqa: E402
    SubscriptionRepository,
    TransactionRepository,
    WebhookEventRepository,
)
from paycore.services.signature import WebhookSignatureVerifier, compute_signature  # noqa: E402
from paycore.services.subscription_service import SubscriptionService  # noqa: E402
from paycore.services.webhook_intake import WebhookIntake  # noqa: E402
from paycore.services.webhook_reconciler import WebhookReconciler  # noqa: E402

TABLE_PREFIX = "test-payments"
QUEUE_NAME = "test-webhook-events"
DLQ_NAME = "test-webhook-events-dlq"
WEBHOOK_KEY = "whsec-test-key"
FROZEN_NOW = dt.datetime(2024, 3, 15, 12, 0, tzinfo=dt.UTC)


def _gsi(attribute: str) -> dict[str, Any]:
    return {
        "IndexName": f"{attribute}-index",
        "KeySchema": [{"AttributeName": attribute, "KeyType": "HASH"}],
        "Projection": {"ProjectionType": "ALL"},
    }


def _table(name: str, key: str, indexes: tuple[str, ...] = ()) -> dict[str, Any]:
    definition: dict[str, Any] = {
        "TableName": f"{TABLE_PREFIX}-{name}",
        "KeySchema": [{"AttributeName": key, "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": attribute, "AttributeType": "S"} for attribute in (key, *indexes)
        ],
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        definition["GlobalSecondaryIndexes"] = [_gsi(attribute) for attribute in indexes]
    return definition


TABLES = [
    _table(
        "transactions",
        "transaction_id",
        ("gateway_transaction_id", "idempotency_key", "order_id", "customer_id"),
    ),
    _table(
        "subscriptions",
        "subscription_id",
        ("gateway_subscription_id", "idempotency_key", "customer_id"),
    ),
    _table("idempotency-keys", "key"),
    _table("webhook-events", "external_event_id"),
    _table("audit-log", "audit_id"),
]


# === Test doubles ===


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: dt.datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + dt.timedelta(**delta)


class FakeGateway:
    """In-memory GatewayClient.

    Every call succeeds with a fresh gateway ID unless outcomes were queued
    with ``script``: a queued ``GatewayResult`` is returned, a queued
    exception is raised.
    """

    def __init__(self, signature_key: Optional[str] = WEBHOOK_KEY) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._scripts: dict[str, list[Any]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._verifier = WebhookSignatureVerifier(signature_key)
        self.before_call: Optional[Any] = None

    def script(self, operation: str, *outcomes: Any) -> None:
        self._scripts[operation].extend(outcomes)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _next(self, operation: str, prefix: str, **kwargs: Any) -> GatewayResult:
        with self._lock:
            self.calls.append((operation, kwargs))
            outcome = self._scripts[operation].pop(0) if self._scripts[operation] else None
            gateway_id = f"{prefix}_{next(self._ids)}"
        if self.before_call is not None:
            self.before_call(operation)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        if operation == "create_subscription":
            return GatewayResult.ok(gateway_id, customer_profile_id="cus_test")
        return GatewayResult.ok(gateway_id, auth_code="AUTH01")

    def authorize(self, amount, card_token, *, order_id, reference=None, description=None,
                  idempotency_key=None):
        return self._next("authorize", "pi", amount=amount, reference=reference)

    def purchase(self, amount, card_token, *, order_id, reference=None, description=None,
                 idempotency_key=None):
        return self._next("purchase", "pi", amount=amount, reference=reference)

    def capture(self, gateway_transaction_id, amount, *, idempotency_key=None):
        return self._next("capture", "cap", gateway_id=gateway_transaction_id, amount=amount)

    def void(self, gateway_transaction_id, *, idempotency_key=None):
        return self._next("void", "void", gateway_id=gateway_transaction_id)

    def refund(self, gateway_transaction_id, amount, card_ref=None, *, idempotency_key=None):
        return self._next("refund", "re", gateway_id=gateway_transaction_id, amount=amount)

    def create_subscription(self, subscription, card_token, *, idempotency_key=None):
        return self._next("create_subscription", "sub", subscription=subscription)

    def update_subscription(self, gateway_subscription_id, changes, *, idempotency_key=None):
        return self._next("update_subscription", "sub", gateway_id=gateway_subscription_id)

    def cancel_subscription(self, gateway_subscription_id, *, idempotency_key=None):
        return self._next("cancel_subscription", "sub", gateway_id=gateway_subscription_id)

    def validate_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return self._verifier.verify(payload, signature)


# === AWS Fixtures ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached services before and after each test."""
    from paycore_api.dependencies import reset_services

    reset_services()
    yield
    reset_services()
    reset_dynamodb_service()


@pytest.fixture
def aws() -> Generator[None, None, None]:
    """Start moto and create every table and queue."""
    with mock_aws():
        client = boto3.client("dynamodb", region_name="eu-west-1")
        for table in TABLES:
            client.create_table(**table)
        sqs = boto3.client("sqs", region_name="eu-west-1")
        sqs.create_queue(QueueName=QUEUE_NAME)
        sqs.create_queue(QueueName=DLQ_NAME)
        yield


@pytest.fixture
def db(aws: None) -> DynamoDBService:
    return DynamoDBService(TABLE_PREFIX)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the retry policy, in order."""
    return []


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sign() -> Callable[[bytes], str]:
    """Signs a raw webhook body with the test key."""
    return lambda body: compute_signature(WEBHOOK_KEY, body)


# === Service Fixtures ===


@pytest.fixture
def transactions(db: DynamoDBService) -> TransactionRepository:
    return TransactionRepository(db)


@pytest.fixture
def subscriptions(db: DynamoDBService) -> SubscriptionRepository:
    return SubscriptionRepository(db)


@pytest.fixture
def events(db: DynamoDBService) -> WebhookEventRepository:
    return WebhookEventRepository(db)


@pytest.fixture
def guard(db: DynamoDBService, clock: FrozenClock) -> IdempotencyGuard:
    return IdempotencyGuard(db, clock=clock)


@pytest.fixture
def audit(db: DynamoDBService, clock: FrozenClock) -> DynamoDBAuditSink:
    return DynamoDBAuditSink(db, clock)


@pytest.fixture
def orchestrator(
    transactions: TransactionRepository,
    guard: IdempotencyGuard,
    gateway: FakeGateway,
    audit: DynamoDBAuditSink,
    sleeps: list[float],
    clock: FrozenClock,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        transactions, guard, gateway, audit, sleep=sleeps.append, clock=clock
    )


@pytest.fixture
def subscription_service(
    subscriptions: SubscriptionRepository,
    guard: IdempotencyGuard,
    gateway: FakeGateway,
    audit: DynamoDBAuditSink,
    sleeps: list[float],
    clock: FrozenClock,
) -> SubscriptionService:
    return SubscriptionService(
        subscriptions, guard, gateway, audit, sleep=sleeps.append, clock=clock
    )


@pytest.fixture
def queue(aws: None) -> SQSQueue:
    return SQSQueue(QUEUE_NAME, DLQ_NAME, client=boto3.client("sqs", region_name="eu-west-1"))


@pytest.fixture
def intake(
    events: WebhookEventRepository, gateway: FakeGateway, queue: SQSQueue, clock: FrozenClock
) -> WebhookIntake:
    return WebhookIntake(events, gateway, queue, clock)


@pytest.fixture
def reconciler(
    events: WebhookEventRepository,
    transactions: TransactionRepository,
    subscriptions: SubscriptionRepository,
    audit: DynamoDBAuditSink,
    clock: FrozenClock,
) -> WebhookReconciler:
    return WebhookReconciler(events, transactions, subscriptions, audit, clock)


# === Sample Data ===


@pytest.fixture
def payment_request() -> PaymentRequest:
    return PaymentRequest(
        order_id="ORD-1001",
        customer_id="CUST-42",
        amount=Money.of("100.00", "USD"),
        card_token="pm_card_visa",
        card_last_four="4242",
        card_brand="visa",
    )


# === API Fixtures ===


@pytest.fixture
def client(
    orchestrator: PaymentOrchestrator,
    subscription_service: SubscriptionService,
    intake: WebhookIntake,
) -> Generator[TestClient, None, None]:
    """TestClient whose routes run against the mocked services above."""
    from paycore_api import dependencies
    from paycore_api.main import app

    app.dependency_overrides[dependencies.get_payment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[dependencies.get_subscription_service] = lambda: subscription_service
    app.dependency_overrides[dependencies.get_webhook_intake] = lambda: intake
    yield TestClient(app)
    app.dependency_overrides.clear()
