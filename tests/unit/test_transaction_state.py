"""Unit tests for the transaction state machine.

Tests verify:
- Capability checks (capture, void, refund, partial refund)
- Mutators move along the allowed graph and record amounts and timestamps
- Invalid transitions raise InvalidTransition instead of silently no-opping
- refunded_amount never exceeds the captured amount
- Fraud review transitions
"""

import datetime as dt

import pytest

from paycore.models.enums import TransactionStatus, TransactionType
from paycore.models.errors import InvalidTransition
from paycore.models.money import Money
from paycore.models.transaction import Transaction
from paycore.services import transaction_state as sm

NOW = dt.datetime(2024, 3, 15, 12, 0, tzinfo=dt.UTC)


def usd(value: str) -> Money:
    return Money.of(value, "USD")


def new_tx(
    tx_type: TransactionType = TransactionType.AUTHORIZE, amount: str = "100.00"
) -> Transaction:
    return Transaction.new(
        type=tx_type,
        order_id="ORD-1",
        customer_id="CUST-1",
        amount=usd(amount),
        now=NOW,
    )


def authorized(amount: str = "100.00") -> Transaction:
    return sm.apply_authorized(new_tx(amount=amount), "pi_1", "AUTH01", NOW)


def captured(amount: str = "100.00") -> Transaction:
    tx = authorized(amount)
    return sm.apply_captured(tx, tx.amount, NOW)


class TestCapabilities:
    """can_* checks."""

    def test_can_capture_requires_authorized_authorize(self) -> None:
        assert sm.can_capture(authorized())
        assert not sm.can_capture(new_tx())
        assert not sm.can_capture(captured())

    def test_purchase_cannot_be_captured_separately(self) -> None:
        tx = sm.apply_authorized(new_tx(TransactionType.PURCHASE), "pi_1", None, NOW)
        assert not sm.can_capture(tx)

    def test_can_void(self) -> None:
        assert sm.can_void(authorized())
        assert sm.can_void(captured())
        assert not sm.can_void(new_tx())

    def test_can_refund(self) -> None:
        assert sm.can_refund(captured())
        assert not sm.can_refund(authorized())

    def test_refundable_amount(self) -> None:
        tx = sm.apply_refund(captured(), usd("30.00"), NOW)
        assert sm.refundable_amount(tx) == usd("70.00")

    def test_can_partial_refund_bounds(self) -> None:
        tx = captured()
        assert sm.can_partial_refund(tx, usd("100.00"))
        assert not sm.can_partial_refund(tx, usd("100.01"))
        assert not sm.can_partial_refund(tx, usd("0"))
        assert not sm.can_partial_refund(tx, Money.of("10", "EUR"))


class TestMutators:
    """apply_* transitions."""

    def test_apply_authorized(self) -> None:
        tx = authorized()
        assert tx.status is TransactionStatus.AUTHORIZED
        assert tx.gateway_transaction_id == "pi_1"
        assert tx.gateway_auth_code == "AUTH01"
        assert tx.authorized_amount == usd("100.00")
        assert tx.authorized_at == NOW

    def test_apply_authorized_from_terminal_raises(self) -> None:
        failed = sm.apply_failed(new_tx(), "card_declined", "Declined", NOW)
        with pytest.raises(InvalidTransition):
            sm.apply_authorized(failed, "pi_1", None, NOW)

    def test_apply_captured_partial(self) -> None:
        tx = sm.apply_captured(authorized(), usd("60.00"), NOW)
        assert tx.status is TransactionStatus.CAPTURED
        assert tx.captured_amount == usd("60.00")
        assert sm.refundable_amount(tx) == usd("60.00")

    def test_apply_captured_over_authorized_raises(self) -> None:
        with pytest.raises(InvalidTransition):
            sm.apply_captured(authorized(), usd("100.01"), NOW)

    def test_apply_captured_from_non_authorized_raises(self) -> None:
        """A capture on an already-captured transaction is an error, not a no-op."""
        with pytest.raises(InvalidTransition):
            sm.apply_captured(captured(), usd("10.00"), NOW)
        with pytest.raises(InvalidTransition):
            sm.apply_captured(new_tx(), usd("10.00"), NOW)

    def test_apply_voided_is_terminal(self) -> None:
        tx = sm.apply_voided(authorized(), NOW)
        assert tx.status is TransactionStatus.VOIDED
        assert tx.voided_at == NOW
        with pytest.raises(InvalidTransition):
            sm.apply_voided(tx, NOW)
        with pytest.raises(InvalidTransition):
            sm.apply_failed(tx, "late", None, NOW)

    def test_partial_then_full_refund(self) -> None:
        """30 then 70 on a 100 capture ends REFUNDED."""
        tx = sm.apply_refund(captured(), usd("30.00"), NOW)
        assert tx.status is TransactionStatus.PARTIALLY_REFUNDED
        assert tx.refunded_amount == usd("30.00")

        tx = sm.apply_refund(tx, usd("70.00"), NOW)
        assert tx.status is TransactionStatus.REFUNDED
        assert tx.refunded_amount == usd("100.00")

    def test_over_refund_raises(self) -> None:
        tx = sm.apply_refund(captured(), usd("30.00"), NOW)
        with pytest.raises(InvalidTransition):
            sm.apply_refund(tx, usd("70.01"), NOW)

    def test_refunded_never_exceeds_captured(self) -> None:
        tx = captured("50.00")
        for step in ("10.00", "15.00", "25.00"):
            tx = sm.apply_refund(tx, usd(step), NOW)
            assert tx.refunded_amount <= tx.captured_amount
        assert tx.status is TransactionStatus.REFUNDED

    def test_apply_refund_settled_only_for_refund_records(self) -> None:
        refund = new_tx(TransactionType.REFUND, "25.00")
        settled = sm.apply_refund_settled(refund, "re_1", NOW)
        assert settled.status is TransactionStatus.REFUNDED
        assert settled.gateway_transaction_id == "re_1"
        with pytest.raises(InvalidTransition):
            sm.apply_refund_settled(new_tx(), "re_1", NOW)

    def test_apply_failed_records_reason(self) -> None:
        tx = sm.apply_failed(authorized(), "processing_error", "Gateway timeout", NOW)
        assert tx.status is TransactionStatus.FAILED
        assert tx.error_code == "processing_error"
        assert tx.error_message == "Gateway timeout"
        assert tx.failed_at == NOW

    def test_apply_declined(self) -> None:
        tx = sm.apply_declined(new_tx(), "card_declined", None, NOW)
        assert tx.status is TransactionStatus.DECLINED
        assert tx.status.is_terminal()

    def test_mutators_do_not_change_the_input(self) -> None:
        tx = authorized()
        sm.apply_captured(tx, tx.amount, NOW)
        assert tx.status is TransactionStatus.AUTHORIZED


class TestFraudReview:
    """CAPTURED -> PENDING_REVIEW -> CAPTURED | FAILED."""

    def test_hold_then_approve(self) -> None:
        held = sm.apply_fraud_hold(captured(), NOW)
        assert held.status is TransactionStatus.PENDING_REVIEW
        assert sm.apply_fraud_approved(held, NOW).status is TransactionStatus.CAPTURED

    def test_hold_then_decline(self) -> None:
        declined = sm.apply_fraud_declined(sm.apply_fraud_hold(captured(), NOW), NOW)
        assert declined.status is TransactionStatus.FAILED
        assert declined.error_code == sm.FRAUD_DECLINED_CODE

    def test_hold_requires_captured(self) -> None:
        with pytest.raises(InvalidTransition):
            sm.apply_fraud_hold(authorized(), NOW)

    def test_decline_requires_review(self) -> None:
        with pytest.raises(InvalidTransition):
            sm.apply_fraud_declined(captured(), NOW)

    def test_approve_after_refund_during_review(self) -> None:
        held = sm.apply_fraud_hold(captured(), NOW)
        held = sm.apply_gateway_refund(held, usd("40.00"), NOW)
        approved = sm.apply_fraud_approved(held, NOW)
        assert approved.status is TransactionStatus.PARTIALLY_REFUNDED
        assert sm.refundable_amount(approved) == usd("60.00")


class TestGatewayRefund:
    """Recording refunds the gateway already executed."""

    def test_from_captured_advances_status(self) -> None:
        tx = sm.apply_gateway_refund(captured(), usd("25.00"), NOW)
        assert tx.status is TransactionStatus.PARTIALLY_REFUNDED
        assert tx.refunded_amount == usd("25.00")
        assert tx.refunded_at == NOW

        tx = sm.apply_gateway_refund(tx, usd("75.00"), NOW)
        assert tx.status is TransactionStatus.REFUNDED

    def test_under_fraud_hold_keeps_status(self) -> None:
        held = sm.apply_fraud_hold(captured(), NOW)
        tx = sm.apply_gateway_refund(held, usd("30.00"), NOW)
        assert tx.status is TransactionStatus.PENDING_REVIEW
        assert tx.refunded_amount == usd("30.00")

    def test_other_currency_raises(self) -> None:
        with pytest.raises(InvalidTransition):
            sm.apply_gateway_refund(captured(), Money.of("10.00", "EUR"), NOW)
