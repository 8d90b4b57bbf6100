"""Command and response models for payment operations."""

import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import (
    BillingInterval,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from .money import Money
from .subscription import Subscription
from .transaction import Transaction


class GatewayResult(BaseModel):
    """Normalized result of a gateway call.

    ``success=False`` is a definitive, non-retryable outcome (a decline or
    a validation rejection). Transient problems are raised as
    ``GatewayTransientError`` instead.
    """

    model_config = ConfigDict(strict=True)

    success: bool
    gateway_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    auth_code: Optional[str] = None
    customer_profile_id: Optional[str] = None
    payment_profile_id: Optional[str] = None

    @classmethod
    def ok(cls, gateway_id: str, **extra: str | None) -> "GatewayResult":
        return cls(success=True, gateway_id=gateway_id, **extra)

    @classmethod
    def failure(cls, code: str, message: str) -> "GatewayResult":
        return cls(success=False, code=code, message=message)


class PaymentRequest(BaseModel):
    """Data required to purchase or authorize."""

    order_id: str = Field(..., min_length=1, max_length=100)
    customer_id: str = Field(..., min_length=1, max_length=100)
    amount: Money
    card_token: str = Field(
        ...,
        min_length=1,
        description="Gateway payment-method reference (never a raw PAN)",
        examples=["pm_card_visa"],
    )
    card_last_four: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    card_brand: Optional[str] = Field(default=None, max_length=30)
    description: Optional[str] = Field(default=None, max_length=500)


class CaptureRequest(BaseModel):
    """Capture an authorization; amount defaults to the authorized amount."""

    transaction_id: str
    amount: Optional[Money] = None


class VoidRequest(BaseModel):
    """Void an authorization or an unsettled capture."""

    transaction_id: str
    reason: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    """Refund a captured transaction, fully or partially."""

    transaction_id: str
    amount: Optional[Money] = Field(
        default=None, description="Omit (or set full_refund) for a full refund"
    )
    full_refund: bool = False
    reason: Optional[str] = Field(default=None, max_length=500)

    def is_full_refund(self) -> bool:
        return self.full_refund or self.amount is None


class SubscriptionRequest(BaseModel):
    """Data required to enroll a recurring billing agreement."""

    customer_id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    amount: Money
    billing_interval: BillingInterval
    interval_count: int = Field(default=1, ge=1)
    trial_days: int = Field(default=0, ge=0)
    start_date: Optional[dt.date] = Field(
        default=None, description="Defaults to tomorrow"
    )
    end_date: Optional[dt.date] = None
    total_cycles: Optional[int] = Field(default=None, ge=1)
    card_token: str = Field(..., min_length=1)
    card_last_four: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    card_brand: Optional[str] = Field(default=None, max_length=30)


class TransactionResponse(BaseModel):
    """Outward view of a transaction with derived capability flags."""

    transaction_id: str
    order_id: str
    customer_id: str
    type: TransactionType
    status: TransactionStatus
    amount: Money
    authorized_amount: Optional[Money] = None
    captured_amount: Optional[Money] = None
    refunded_amount: Money
    refundable_amount: Money
    gateway_transaction_id: Optional[str] = None
    gateway_auth_code: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: dt.datetime
    authorized_at: Optional[dt.datetime] = None
    captured_at: Optional[dt.datetime] = None
    voided_at: Optional[dt.datetime] = None
    refunded_at: Optional[dt.datetime] = None
    failed_at: Optional[dt.datetime] = None
    can_capture: bool
    can_void: bool
    can_refund: bool

    @classmethod
    def from_transaction(cls, tx: Transaction) -> "TransactionResponse":
        from paycore.services import transaction_state as sm

        return cls(
            **tx.model_dump(
                include={
                    "transaction_id", "order_id", "customer_id", "type", "status",
                    "amount", "authorized_amount", "captured_amount",
                    "refunded_amount", "gateway_transaction_id",
                    "gateway_auth_code", "parent_transaction_id",
                    "card_last_four", "card_brand", "error_code",
                    "error_message", "created_at", "authorized_at",
                    "captured_at", "voided_at", "refunded_at", "failed_at",
                }
            ),
            refundable_amount=sm.refundable_amount(tx),
            can_capture=sm.can_capture(tx),
            can_void=sm.can_void(tx),
            can_refund=sm.can_refund(tx),
        )


class SubscriptionResponse(BaseModel):
    """Outward view of a subscription with derived capability flags."""

    subscription_id: str
    customer_id: str
    name: str
    description: Optional[str] = None
    status: SubscriptionStatus
    amount: Money
    billing_interval: BillingInterval
    interval_count: int
    trial_days: int
    start_date: dt.date
    trial_end_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    next_billing_date: Optional[dt.date] = None
    last_billing_date: Optional[dt.date] = None
    total_cycles: Optional[int] = None
    completed_cycles: int
    failed_cycles: int
    remaining_cycles: Optional[int] = None
    gateway_subscription_id: Optional[str] = None
    card_last_four: Optional[str] = None
    created_at: dt.datetime
    updated_at: dt.datetime
    can_update: bool
    can_cancel: bool
    can_reactivate: bool

    @classmethod
    def from_subscription(cls, sub: Subscription) -> "SubscriptionResponse":
        from paycore.services import subscription_lifecycle as lifecycle

        return cls(
            **sub.model_dump(
                include={
                    "subscription_id", "customer_id", "name", "description", "status",
                    "amount", "billing_interval", "interval_count",
                    "trial_days", "start_date", "trial_end_date", "end_date",
                    "next_billing_date", "last_billing_date", "total_cycles",
                    "completed_cycles", "failed_cycles",
                    "gateway_subscription_id", "card_last_four", "created_at",
                    "updated_at",
                }
            ),
            remaining_cycles=sub.remaining_cycles(),
            can_update=lifecycle.can_update(sub),
            can_cancel=lifecycle.can_cancel(sub),
            can_reactivate=lifecycle.can_reactivate(sub),
        )
