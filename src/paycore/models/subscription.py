"""Subscription model for recurring billing agreements."""

import datetime as dt
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import BillingInterval, SubscriptionStatus
from .money import Money


def generate_subscription_id() -> str:
    """Generate a unique subscription ID like SUB-ABC123DEF456."""
    return f"SUB-{uuid.uuid4().hex[:12].upper()}"


class Subscription(BaseModel):
    """A recurring billing agreement with the gateway.

    Billing dates are calendar dates, never wall-clock instants.
    """

    model_config = ConfigDict(frozen=True)

    subscription_id: str = Field(..., description="Unique subscription ID")
    customer_id: str
    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.PENDING

    amount: Money
    billing_interval: BillingInterval
    interval_count: int = Field(default=1, ge=1)
    trial_days: int = Field(default=0, ge=0)

    start_date: dt.date
    trial_end_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    next_billing_date: Optional[dt.date] = None
    last_billing_date: Optional[dt.date] = None

    total_cycles: Optional[int] = Field(default=None, ge=1)
    completed_cycles: int = Field(default=0, ge=0)
    failed_cycles: int = Field(default=0, ge=0)

    gateway_subscription_id: Optional[str] = Field(
        default=None, examples=["sub_1ABC123DEF456"]
    )
    gateway_customer_profile_id: Optional[str] = None
    gateway_payment_profile_id: Optional[str] = None

    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None

    idempotency_key: Optional[str] = None
    correlation_id: Optional[str] = None
    error_code: Optional[str] = None

    created_at: dt.datetime
    updated_at: dt.datetime

    version: int = Field(default=1, ge=1)

    def remaining_cycles(self) -> Optional[int]:
        """Cycles left to bill, or None for open-ended subscriptions."""
        if self.total_cycles is None:
            return None
        return self.total_cycles - self.completed_cycles


class SubscriptionUpdate(BaseModel):
    """Partial update: only fields that are set (non-null) are applied."""

    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    amount: Optional[Money] = None
    billing_interval: Optional[BillingInterval] = None
    interval_count: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[dt.date] = None
    total_cycles: Optional[int] = Field(default=None, ge=1)
    card_token: Optional[str] = Field(
        default=None, description="New card reference for future cycles"
    )

    def present_fields(self) -> dict:
        """Fields the caller actually supplied, excluding the card token."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name != "card_token" and getattr(self, name) is not None
        }
