"""Transaction state machine.

Capability checks and pure mutators over ``Transaction``. Every mutator
takes the current transaction and an event and returns a new transaction,
or raises ``InvalidTransition``. None of them silently no-op: callers that
want monotonic "apply if still relevant" semantics (the webhook reconciler)
check the capability first.

State graph::

    PENDING -> AUTHORIZED -> CAPTURED -> PARTIALLY_REFUNDED -> REFUNDED
    AUTHORIZED | CAPTURED -> VOIDED
    CAPTURED -> PENDING_REVIEW -> CAPTURED | DECLINED | FAILED
    PENDING_REVIEW -> PARTIALLY_REFUNDED | REFUNDED (approved after a refund went through)
    any non-terminal -> FAILED | DECLINED
    PENDING -> REFUNDED (REFUND-type transactions only)
"""

import datetime as dt

from paycore.models.enums import TransactionStatus, TransactionType
from paycore.models.errors import InvalidTransition
from paycore.models.money import Money
from paycore.models.transaction import Transaction

S = TransactionStatus

_FAILURES = frozenset({S.FAILED, S.DECLINED})

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.PENDING: frozenset({S.AUTHORIZED, S.REFUNDED}) | _FAILURES,
    S.AUTHORIZED: frozenset({S.CAPTURED, S.VOIDED}) | _FAILURES,
    S.CAPTURED: frozenset(
        {S.PARTIALLY_REFUNDED, S.REFUNDED, S.VOIDED, S.PENDING_REVIEW}
    )
    | _FAILURES,
    S.SETTLED: frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}) | _FAILURES,
    S.PARTIALLY_REFUNDED: frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED}) | _FAILURES,
    S.PENDING_REVIEW: frozenset({S.CAPTURED, S.PARTIALLY_REFUNDED, S.REFUNDED}) | _FAILURES,
    S.REFUNDED: frozenset(),
    S.VOIDED: frozenset(),
    S.FAILED: frozenset(),
    S.DECLINED: frozenset(),
    S.EXPIRED: frozenset(),
}

FRAUD_DECLINED_CODE = "FRAUD_DECLINED"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _transition(
    tx: Transaction,
    target: TransactionStatus,
    event: str,
    now: dt.datetime | None,
    **changes: object,
) -> Transaction:
    if target not in ALLOWED_TRANSITIONS[tx.status]:
        raise InvalidTransition("Transaction", tx.status.value, event)
    return tx.model_copy(
        update={"status": target, "updated_at": now or _utcnow(), **changes}
    )


# Capability checks


def can_capture(tx: Transaction) -> bool:
    return tx.status is S.AUTHORIZED and tx.type is TransactionType.AUTHORIZE


def can_void(tx: Transaction) -> bool:
    return tx.status in (S.AUTHORIZED, S.CAPTURED)


def can_refund(tx: Transaction) -> bool:
    return tx.status in (S.CAPTURED, S.SETTLED, S.PARTIALLY_REFUNDED)


def refundable_amount(tx: Transaction) -> Money:
    """``(captured_amount ?? amount) - refunded_amount``."""
    base = tx.captured_amount if tx.captured_amount is not None else tx.amount
    return base - tx.refunded_amount


def can_partial_refund(tx: Transaction, amount: Money) -> bool:
    """True if ``amount`` is positive and fits in the refundable balance."""
    if not can_refund(tx) or amount.currency != tx.currency:
        return False
    return amount.is_positive() and amount <= refundable_amount(tx)


# Mutators


def apply_authorized(
    tx: Transaction,
    gateway_transaction_id: str,
    auth_code: str | None,
    now: dt.datetime | None = None,
) -> Transaction:
    """PENDING -> AUTHORIZED, recording the gateway identifiers."""
    now = now or _utcnow()
    return _transition(
        tx,
        S.AUTHORIZED,
        "authorized",
        now,
        gateway_transaction_id=gateway_transaction_id,
        gateway_auth_code=auth_code,
        authorized_amount=tx.amount,
        authorized_at=now,
    )


def apply_captured(
    tx: Transaction, amount: Money, now: dt.datetime | None = None
) -> Transaction:
    """AUTHORIZED -> CAPTURED for at most the authorized amount."""
    if tx.status is not S.AUTHORIZED:
        raise InvalidTransition("Transaction", tx.status.value, "captured")
    if not amount.is_positive():
        raise InvalidTransition("Transaction", tx.status.value, f"captured({amount})")
    if tx.authorized_amount is not None and amount > tx.authorized_amount:
        raise InvalidTransition(
            "Transaction",
            tx.status.value,
            f"captured({amount} > authorized {tx.authorized_amount})",
        )
    now = now or _utcnow()
    return _transition(
        tx, S.CAPTURED, "captured", now, captured_amount=amount, captured_at=now
    )


def apply_voided(tx: Transaction, now: dt.datetime | None = None) -> Transaction:
    """AUTHORIZED | CAPTURED -> VOIDED. Irreversible."""
    if not can_void(tx):
        raise InvalidTransition("Transaction", tx.status.value, "voided")
    now = now or _utcnow()
    return _transition(tx, S.VOIDED, "voided", now, voided_at=now)


def _refund_target(tx: Transaction, refunded: Money) -> TransactionStatus:
    base = tx.captured_amount if tx.captured_amount is not None else tx.amount
    return S.REFUNDED if refunded >= base else S.PARTIALLY_REFUNDED


def apply_refund(
    tx: Transaction, amount: Money, now: dt.datetime | None = None
) -> Transaction:
    """Accumulate a refund on a captured transaction.

    The result is REFUNDED once the refunded total reaches the captured
    amount, PARTIALLY_REFUNDED otherwise.
    """
    if not can_partial_refund(tx, amount):
        raise InvalidTransition(
            "Transaction",
            tx.status.value,
            f"refund({amount}, refundable {refundable_amount(tx)})",
        )
    refunded = tx.refunded_amount + amount
    now = now or _utcnow()
    return _transition(
        tx, _refund_target(tx, refunded), "refund", now, refunded_amount=refunded, refunded_at=now
    )


def apply_gateway_refund(
    tx: Transaction, amount: Money, now: dt.datetime | None = None
) -> Transaction:
    """Record a refund the gateway has already executed against ``tx``.

    Never raises on state: the money has moved. From a refundable state the
    status advances as in ``apply_refund``. From any other state (a fraud
    hold placed while the refund was in flight) only the refunded total
    grows; the status follows once the hold is resolved.
    """
    if amount.currency != tx.currency:
        raise InvalidTransition("Transaction", tx.status.value, f"gateway_refund({amount})")
    now = now or _utcnow()
    refunded = tx.refunded_amount + amount
    changes: dict[str, object] = {
        "refunded_amount": refunded,
        "refunded_at": now,
        "updated_at": now,
    }
    if can_refund(tx):
        changes["status"] = _refund_target(tx, refunded)
    return tx.model_copy(update=changes)


def apply_refund_settled(
    tx: Transaction, gateway_transaction_id: str, now: dt.datetime | None = None
) -> Transaction:
    """PENDING -> REFUNDED for the REFUND-type record of a refund."""
    if tx.type is not TransactionType.REFUND:
        raise InvalidTransition("Transaction", tx.status.value, "refund_settled")
    now = now or _utcnow()
    return _transition(
        tx,
        S.REFUNDED,
        "refund_settled",
        now,
        gateway_transaction_id=gateway_transaction_id,
        refunded_at=now,
    )


def apply_failed(
    tx: Transaction, code: str, message: str | None, now: dt.datetime | None = None
) -> Transaction:
    """Any non-terminal state -> FAILED, recording the reason."""
    now = now or _utcnow()
    return _transition(
        tx,
        S.FAILED,
        "failed",
        now,
        error_code=code,
        error_message=message,
        failed_at=now,
    )


def apply_declined(
    tx: Transaction, code: str, message: str | None, now: dt.datetime | None = None
) -> Transaction:
    """Any non-terminal state -> DECLINED, recording the reason."""
    now = now or _utcnow()
    return _transition(
        tx,
        S.DECLINED,
        "declined",
        now,
        error_code=code,
        error_message=message,
        failed_at=now,
    )


def apply_fraud_hold(tx: Transaction, now: dt.datetime | None = None) -> Transaction:
    """CAPTURED -> PENDING_REVIEW."""
    if tx.status is not S.CAPTURED:
        raise InvalidTransition("Transaction", tx.status.value, "fraud_hold")
    return _transition(tx, S.PENDING_REVIEW, "fraud_hold", now)


def apply_fraud_approved(
    tx: Transaction, now: dt.datetime | None = None
) -> Transaction:
    """PENDING_REVIEW -> CAPTURED, or the refund state if refunds landed meanwhile."""
    if tx.status is not S.PENDING_REVIEW:
        raise InvalidTransition("Transaction", tx.status.value, "fraud_approved")
    target = (
        S.CAPTURED if tx.refunded_amount.is_zero() else _refund_target(tx, tx.refunded_amount)
    )
    return _transition(tx, target, "fraud_approved", now)


def apply_fraud_declined(
    tx: Transaction, now: dt.datetime | None = None
) -> Transaction:
    """PENDING_REVIEW -> FAILED with code FRAUD_DECLINED."""
    if tx.status is not S.PENDING_REVIEW:
        raise InvalidTransition("Transaction", tx.status.value, "fraud_declined")
    return apply_failed(
        tx,
        FRAUD_DECLINED_CODE,
        "Transaction declined due to fraud detection",
        now,
    )
