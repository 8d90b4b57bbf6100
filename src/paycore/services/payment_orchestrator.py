"""Payment orchestrator: purchase, authorize, capture, void, refund.

Every command runs inside the idempotency guard:

1. ``begin`` the key; a replay returns the stored response, a conflict
   raises ``DuplicateRequestError``.
2. Load or create the transaction and check the state-machine precondition.
3. Call the gateway under the retry policy (transient errors only).
4. Success: apply the mutator, persist, audit ``<OP>_SUCCESS``.
5. Failure: record FAILED, audit ``<OP>_FAILED``, raise ``GatewayError``.

Whatever the outcome, the guard is completed with the response the client
sees, so a retried request replays it instead of calling the gateway again.
"""

import datetime as dt
import time
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from paycore.models.enums import TransactionStatus, TransactionType
from paycore.models.errors import (
    DuplicateRequestError,
    ErrorCode,
    GatewayError,
    InternalError,
    InvalidTransactionStateError,
    NotFoundError,
    PaymentError,
    PaymentValidationError,
)
from paycore.models.idempotency import IdempotencyOutcomeKind
from paycore.models.money import Money
from paycore.models.payment import (
    CaptureRequest,
    GatewayResult,
    PaymentRequest,
    RefundRequest,
    TransactionResponse,
    VoidRequest,
)
from paycore.models.transaction import Transaction
from paycore.services import transaction_state as sm
from paycore.services.audit import AuditSink
from paycore.services.gateway import (
    GatewayClient,
    GatewayTerminalError,
    GatewayTransientError,
    is_transient,
)
from paycore.services.idempotency import IdempotencyGuard
from paycore.services.repositories import TransactionRepository
from paycore.utils.logging import get_correlation_id, get_logger, log_payment_operation
from paycore.utils.retry import retry_call

logger = get_logger(__name__)

ENTITY_TRANSACTION = "transaction"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class OperationResult(BaseModel):
    """Response of a guarded command, fresh or replayed."""

    status_code: int
    body: dict[str, Any]
    replayed: bool = Field(default=False, description="True when served from the idempotency store")


def run_guarded(
    guard: IdempotencyGuard,
    *,
    operation: str,
    idempotency_key: str,
    request_fingerprint: str,
    correlation_id: Optional[str],
    run: Callable[[], tuple[int, dict[str, Any]]],
) -> OperationResult:
    """Execute ``run`` at most once per idempotency key.

    ``run`` returns ``(status_code, body)`` on success and raises a
    ``PaymentError`` on a terminal failure. Unexpected exceptions are
    surfaced as ``InternalError``. In every case the guard is completed
    with the response the caller ends up seeing.
    """
    outcome = guard.begin(idempotency_key, request_fingerprint, correlation_id)
    if outcome.kind is IdempotencyOutcomeKind.REPLAY:
        return OperationResult(
            status_code=outcome.response_status or 200,
            body=outcome.response_body or {},
            replayed=True,
        )
    if outcome.kind is IdempotencyOutcomeKind.CONFLICT:
        raise DuplicateRequestError(
            details={"idempotency_key": idempotency_key, "reason": outcome.reason}
        )

    try:
        status_code, body = run()
    except PaymentError as e:
        guard.complete(
            idempotency_key, e.http_status, e.to_error_response().model_dump(mode="json")
        )
        raise
    except Exception as e:
        logger.exception("Unexpected failure during %s", operation)
        error = InternalError(details={"operation": operation})
        guard.complete(
            idempotency_key, error.http_status, error.to_error_response().model_dump(mode="json")
        )
        raise error from e
    guard.complete(idempotency_key, status_code, body)
    return OperationResult(status_code=status_code, body=body)


class PaymentOrchestrator:
    """Coordinates guard, state machine, gateway, store and audit for payments."""

    def __init__(
        self,
        transactions: TransactionRepository,
        guard: IdempotencyGuard,
        gateway: GatewayClient,
        audit: AuditSink,
        *,
        max_attempts: int = 3,
        initial_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._transactions = transactions
        self._guard = guard
        self._gateway = gateway
        self._audit = audit
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._sleep = sleep
        self._clock = clock

    # Reads

    def get_transaction(self, transaction_id: str) -> Transaction:
        tx = self._transactions.get(transaction_id)
        if tx is None:
            raise NotFoundError(details={"transaction_id": transaction_id})
        return tx

    def list_transactions_for_order(self, order_id: str) -> list[Transaction]:
        return self._transactions.find_by_order(order_id)

    def list_transactions_for_customer(self, customer_id: str) -> list[Transaction]:
        return self._transactions.find_by_customer(customer_id)

    # Commands

    def purchase(
        self,
        request: PaymentRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Authorize and capture in one gateway call."""
        return self._charge(
            TransactionType.PURCHASE, request, idempotency_key, request_fingerprint, correlation_id
        )

    def authorize(
        self,
        request: PaymentRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Place a hold on the card for later capture."""
        return self._charge(
            TransactionType.AUTHORIZE, request, idempotency_key, request_fingerprint, correlation_id
        )

    def capture(
        self,
        request: CaptureRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Capture an authorization, defaulting to the authorized amount."""
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            tx = self.get_transaction(request.transaction_id)
            if not sm.can_capture(tx):
                raise InvalidTransactionStateError(
                    details={"transaction_id": tx.transaction_id, "status": tx.status.value}
                )
            authorized = tx.authorized_amount or tx.amount
            amount = request.amount or authorized
            if amount.currency != authorized.currency or not (
                amount.is_positive() and amount <= authorized
            ):
                raise PaymentValidationError(
                    details={"amount": amount, "authorized_amount": authorized}
                )

            result = self._invoke(
                "capture",
                self._child_failure_record(
                    tx, TransactionType.CAPTURE, amount, idempotency_key, cid
                ),
                lambda: self._gateway.capture(
                    tx.gateway_transaction_id or "", amount, idempotency_key=idempotency_key
                ),
                cid,
                new_record=True,
            )
            now = self._clock()
            captured = self._transactions.update(
                tx.transaction_id,
                lambda t: t
                if t.status is TransactionStatus.CAPTURED
                else sm.apply_captured(t, amount, now),
            )
            self._record_success("capture", captured, cid, result)
            return 200, TransactionResponse.from_transaction(captured).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="capture",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    def void(
        self,
        request: VoidRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Void an authorization or an unsettled capture."""
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            tx = self.get_transaction(request.transaction_id)
            if not sm.can_void(tx):
                raise InvalidTransactionStateError(
                    details={"transaction_id": tx.transaction_id, "status": tx.status.value}
                )

            result = self._invoke(
                "void",
                self._child_failure_record(
                    tx, TransactionType.VOID, tx.amount, idempotency_key, cid, request.reason
                ),
                lambda: self._gateway.void(
                    tx.gateway_transaction_id or "", idempotency_key=idempotency_key
                ),
                cid,
                new_record=True,
            )
            now = self._clock()
            voided = self._transactions.update(
                tx.transaction_id,
                lambda t: t if t.status is TransactionStatus.VOIDED else sm.apply_voided(t, now),
            )
            self._record_success("void", voided, cid, result)
            return 200, TransactionResponse.from_transaction(voided).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="void",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    def refund(
        self,
        request: RefundRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str] = None,
    ) -> OperationResult:
        """Refund a captured transaction as a new REFUND transaction.

        A full refund takes the whole refundable balance. Partial amounts
        are checked against that balance before the gateway is called.
        """
        cid = correlation_id or get_correlation_id()

        def run() -> tuple[int, dict[str, Any]]:
            parent = self.get_transaction(request.transaction_id)
            if not sm.can_refund(parent):
                raise InvalidTransactionStateError(
                    details={"transaction_id": parent.transaction_id, "status": parent.status.value}
                )
            refundable = sm.refundable_amount(parent)
            amount = (
                refundable
                if request.is_full_refund() or request.amount is None
                else request.amount
            )
            if not sm.can_partial_refund(parent, amount):
                raise PaymentValidationError(
                    details={"amount": amount, "refundable_amount": refundable}
                )

            refund_tx = Transaction.new(
                type=TransactionType.REFUND,
                order_id=parent.order_id,
                customer_id=parent.customer_id,
                amount=amount,
                now=self._clock(),
                idempotency_key=idempotency_key,
                correlation_id=cid,
                parent_transaction_id=parent.transaction_id,
                card_last_four=parent.card_last_four,
                card_brand=parent.card_brand,
                description=request.reason,
            )
            self._insert(refund_tx)

            result = self._invoke(
                "refund",
                refund_tx,
                lambda: self._gateway.refund(
                    parent.gateway_transaction_id or "",
                    amount,
                    parent.card_last_four,
                    idempotency_key=idempotency_key,
                ),
                cid,
            )
            now = self._clock()
            # The gateway has moved the money: record it on the parent first,
            # whatever state a concurrent webhook left it in
            updated_parent = self._transactions.update(
                parent.transaction_id, lambda t: sm.apply_gateway_refund(t, amount, now)
            )
            if (
                not sm.can_refund(updated_parent)
                and updated_parent.status is not TransactionStatus.REFUNDED
            ):
                logger.warning(
                    "Refund %s recorded on %s while it is %s",
                    refund_tx.transaction_id,
                    updated_parent.transaction_id,
                    updated_parent.status.value,
                )
            settled = self._transactions.update(
                refund_tx.transaction_id,
                lambda t: t
                if t.status is TransactionStatus.REFUNDED
                else sm.apply_refund_settled(t, result.gateway_id or "", now),
            )
            self._record_success("refund", settled, cid, result)
            log_payment_operation(
                logger,
                "refund_applied",
                transaction_id=updated_parent.transaction_id,
                amount=amount,
                status=updated_parent.status.value,
                refundable=str(sm.refundable_amount(updated_parent)),
            )
            return 201, TransactionResponse.from_transaction(settled).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation="refund",
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    # Internals

    def _charge(
        self,
        tx_type: TransactionType,
        request: PaymentRequest,
        idempotency_key: str,
        request_fingerprint: str,
        correlation_id: Optional[str],
    ) -> OperationResult:
        cid = correlation_id or get_correlation_id()
        operation = tx_type.value

        def run() -> tuple[int, dict[str, Any]]:
            if not request.amount.is_positive():
                raise PaymentValidationError(details={"amount": request.amount})
            tx = Transaction.new(
                type=tx_type,
                order_id=request.order_id,
                customer_id=request.customer_id,
                amount=request.amount,
                now=self._clock(),
                idempotency_key=idempotency_key,
                correlation_id=cid,
                card_last_four=request.card_last_four,
                card_brand=request.card_brand,
                description=request.description,
            )
            self._insert(tx)

            charge = (
                self._gateway.purchase
                if tx_type is TransactionType.PURCHASE
                else self._gateway.authorize
            )
            result = self._invoke(
                operation,
                tx,
                lambda: charge(
                    request.amount,
                    request.card_token,
                    order_id=request.order_id,
                    reference=tx.transaction_id,
                    description=request.description,
                    idempotency_key=idempotency_key,
                ),
                cid,
            )

            now = self._clock()

            # A webhook may have moved the row already; only move it forward
            def apply(t: Transaction) -> Transaction:
                if t.status is TransactionStatus.PENDING:
                    t = sm.apply_authorized(t, result.gateway_id or "", result.auth_code, now)
                if tx_type is TransactionType.PURCHASE and t.status is TransactionStatus.AUTHORIZED:
                    t = sm.apply_captured(t, request.amount, now)
                return t

            stored = self._transactions.update(tx.transaction_id, apply)
            self._record_success(operation, stored, cid, result)
            return 201, TransactionResponse.from_transaction(stored).model_dump(mode="json")

        return run_guarded(
            self._guard,
            operation=operation,
            idempotency_key=idempotency_key,
            request_fingerprint=request_fingerprint,
            correlation_id=cid,
            run=run,
        )

    def _insert(self, tx: Transaction) -> None:
        if not self._transactions.insert_if_absent(tx):
            raise InternalError(details={"transaction_id": tx.transaction_id})

    def _child_failure_record(
        self,
        parent: Transaction,
        tx_type: TransactionType,
        amount: Money,
        idempotency_key: str,
        correlation_id: Optional[str],
        description: Optional[str] = None,
    ) -> Transaction:
        """Unsaved record for a failed capture or void against ``parent``."""
        return Transaction.new(
            type=tx_type,
            order_id=parent.order_id,
            customer_id=parent.customer_id,
            amount=amount,
            now=self._clock(),
            idempotency_key=idempotency_key,
            correlation_id=correlation_id,
            parent_transaction_id=parent.transaction_id,
            card_last_four=parent.card_last_four,
            card_brand=parent.card_brand,
            description=description,
        ).model_copy(update={"gateway_transaction_id": parent.gateway_transaction_id})

    def _call_gateway(self, fn: Callable[[], GatewayResult]) -> GatewayResult:
        return retry_call(
            fn,
            is_retryable=is_transient,
            max_attempts=self._max_attempts,
            initial_delay=self._initial_backoff,
            sleep=self._sleep,
        )

    def _invoke(
        self,
        operation: str,
        tx: Transaction,
        fn: Callable[[], GatewayResult],
        correlation_id: Optional[str],
        *,
        new_record: bool = False,
    ) -> GatewayResult:
        """Call the gateway; on any failure record it against ``tx`` and raise.

        ``new_record`` means ``tx`` is not stored yet and is inserted
        directly in FAILED state.
        """
        try:
            result = self._call_gateway(fn)
        except (GatewayTransientError, GatewayTerminalError) as e:
            self._record_failure(operation, tx, e.code, str(e), correlation_id, new_record)
            raise GatewayError(
                ErrorCode.GATEWAY_UNAVAILABLE,
                details={"transaction_id": tx.transaction_id, "gateway_code": e.code},
            ) from e
        except Exception as e:
            self._record_failure(
                operation,
                tx,
                ErrorCode.INTERNAL_ERROR.value,
                type(e).__name__,
                correlation_id,
                new_record,
            )
            raise InternalError(details={"transaction_id": tx.transaction_id}) from e

        if not result.success:
            code = result.code or "declined"
            self._record_failure(operation, tx, code, result.message, correlation_id, new_record)
            raise GatewayError(
                ErrorCode.GATEWAY_DECLINED,
                details={"transaction_id": tx.transaction_id, "gateway_code": code},
            )
        return result

    def _record_failure(
        self,
        operation: str,
        tx: Transaction,
        code: str,
        message: Optional[str],
        correlation_id: Optional[str],
        new_record: bool,
    ) -> None:
        now = self._clock()
        if new_record:
            failed = sm.apply_failed(tx, code, message, now)
            self._insert(failed)
        else:
            failed = self._transactions.update(
                tx.transaction_id,
                lambda t: t if t.status.is_terminal() else sm.apply_failed(t, code, message, now),
            )
        self._audit.record(
            ENTITY_TRANSACTION,
            failed.transaction_id,
            f"{operation.upper()}_FAILED",
            correlation_id,
            failed.status.value,
            {"error_code": code},
        )
        log_payment_operation(
            logger,
            operation,
            transaction_id=failed.transaction_id,
            order_id=failed.order_id,
            amount=failed.amount,
            status=failed.status.value,
            error=code,
        )

    def _record_success(
        self,
        operation: str,
        tx: Transaction,
        correlation_id: Optional[str],
        result: GatewayResult,
    ) -> None:
        self._audit.record(
            ENTITY_TRANSACTION,
            tx.transaction_id,
            f"{operation.upper()}_SUCCESS",
            correlation_id,
            tx.status.value,
            {"gateway_id": result.gateway_id or ""},
        )
        log_payment_operation(
            logger,
            operation,
            transaction_id=tx.transaction_id,
            order_id=tx.order_id,
            amount=tx.amount,
            status=tx.status.value,
            gateway_id=result.gateway_id,
        )
