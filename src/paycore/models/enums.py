"""Enumeration types for payment and subscription data models."""

from enum import Enum


class TransactionType(str, Enum):
    """Kind of monetary operation a transaction records."""

    PURCHASE = "purchase"
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    VOID = "void"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    """Status of a payment transaction."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    SETTLED = "settled"
    PENDING_REVIEW = "pending_review"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    VOIDED = "voided"
    FAILED = "failed"
    DECLINED = "declined"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        """True when no further transition may leave this state."""
        return self in _TERMINAL_TRANSACTION_STATES

    def is_failure_state(self) -> bool:
        """True for states that record an unsuccessful outcome."""
        return self in _FAILED_TRANSACTION_STATES


_TERMINAL_TRANSACTION_STATES = frozenset(
    {
        TransactionStatus.REFUNDED,
        TransactionStatus.VOIDED,
        TransactionStatus.FAILED,
        TransactionStatus.DECLINED,
        TransactionStatus.EXPIRED,
    }
)

_FAILED_TRANSACTION_STATES = frozenset(
    {
        TransactionStatus.FAILED,
        TransactionStatus.DECLINED,
        TransactionStatus.EXPIRED,
    }
)


class SubscriptionStatus(str, Enum):
    """Status of a recurring billing agreement."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELED = "canceled"
    EXPIRED = "expired"
    TERMINATED = "terminated"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """True when the subscription can no longer bill."""
        return self in _TERMINAL_SUBSCRIPTION_STATES

    def is_failure_state(self) -> bool:
        """True when enrollment or billing ended unsuccessfully."""
        return self in (SubscriptionStatus.FAILED, SubscriptionStatus.TERMINATED)


_TERMINAL_SUBSCRIPTION_STATES = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.TERMINATED,
        SubscriptionStatus.FAILED,
    }
)


class BillingInterval(str, Enum):
    """Unit of a subscription billing period."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class WebhookEventType(str, Enum):
    """Gateway notification types the reconciler understands."""

    PAYMENT_CREATED = "payment_created"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_VOIDED = "payment_voided"
    REFUND_CREATED = "refund_created"
    FRAUD_HELD = "fraud_held"
    FRAUD_APPROVED = "fraud_approved"
    FRAUD_DECLINED = "fraud_declined"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_TERMINATED = "subscription_terminated"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription_payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    UNKNOWN = "unknown"

    def is_subscription_event(self) -> bool:
        """True when the event targets a subscription rather than a transaction."""
        return self.value.startswith("subscription_")


class ReconcileResult(str, Enum):
    """Outcome recorded on a webhook event after reconciliation."""

    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    ERROR = "error"
