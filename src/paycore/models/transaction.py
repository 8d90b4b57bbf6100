"""Transaction model for monetary operations tied to an order."""

import datetime as dt
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .enums import TransactionStatus, TransactionType
from .money import Money


def generate_transaction_id() -> str:
    """Generate a unique transaction ID like TXN-ABC123DEF456."""
    return f"TXN-{uuid.uuid4().hex[:12].upper()}"


class Transaction(BaseModel):
    """One monetary operation (purchase, authorization, refund...).

    Transactions are never deleted; terminal states are kept for audit.
    Status only changes through ``paycore.services.transaction_state``.
    """

    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(..., description="Unique transaction ID")
    order_id: str = Field(..., description="Merchant order reference")
    customer_id: str = Field(..., description="Merchant customer reference")
    type: TransactionType = Field(..., description="Kind of operation")
    status: TransactionStatus = Field(
        default=TransactionStatus.PENDING, description="Current state"
    )

    amount: Money = Field(..., description="Requested amount")
    authorized_amount: Optional[Money] = None
    captured_amount: Optional[Money] = None
    refunded_amount: Money = Field(..., description="Total refunded so far")

    gateway_transaction_id: Optional[str] = Field(
        default=None,
        description="Gateway reference, set once authorized",
        examples=["pi_3ABC123DEF456"],
    )
    gateway_auth_code: Optional[str] = None
    parent_transaction_id: Optional[str] = Field(
        default=None,
        description="For refunds, capture and void records: the transaction acted upon",
    )
    idempotency_key: Optional[str] = None
    correlation_id: Optional[str] = None

    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    description: Optional[str] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    created_at: dt.datetime
    updated_at: dt.datetime
    authorized_at: Optional[dt.datetime] = None
    captured_at: Optional[dt.datetime] = None
    voided_at: Optional[dt.datetime] = None
    refunded_at: Optional[dt.datetime] = None
    failed_at: Optional[dt.datetime] = None

    version: int = Field(default=1, ge=1, description="Optimistic concurrency token")

    @property
    def currency(self) -> str:
        return self.amount.currency

    @classmethod
    def new(
        cls,
        *,
        type: TransactionType,
        order_id: str,
        customer_id: str,
        amount: Money,
        now: dt.datetime,
        idempotency_key: str | None = None,
        correlation_id: str | None = None,
        parent_transaction_id: str | None = None,
        card_last_four: str | None = None,
        card_brand: str | None = None,
        description: str | None = None,
    ) -> "Transaction":
        """Create a PENDING transaction at command receipt."""
        return cls(
            transaction_id=generate_transaction_id(),
            order_id=order_id,
            customer_id=customer_id,
            type=type,
            status=TransactionStatus.PENDING,
            amount=amount,
            refunded_amount=Money.zero(amount.currency),
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
            parent_transaction_id=parent_transaction_id,
            card_last_four=card_last_four,
            card_brand=card_brand,
            description=description,
            created_at=now,
            updated_at=now,
        )
