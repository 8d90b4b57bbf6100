"""Unit tests for the idempotency guard.

Tests verify:
- Request fingerprints ignore key order but not method, path or body
- begin() claims a new key exactly once
- Completed keys replay the stored response
- In-flight keys and reused keys with another fingerprint conflict
- Expired records are taken over and purged
"""

from paycore.models.idempotency import IdempotencyOutcomeKind
from paycore.services.idempotency import (
    CONFLICT_FINGERPRINT_MISMATCH,
    CONFLICT_IN_FLIGHT,
    IdempotencyGuard,
    fingerprint,
)

FP = fingerprint("POST", "/api/payments/purchase", {"order_id": "ORD-1"})


class TestFingerprint:
    """Canonical request hashing."""

    def test_key_order_does_not_matter(self) -> None:
        a = fingerprint("POST", "/p", {"a": 1, "b": {"c": 2, "d": 3}})
        b = fingerprint("post", "/p", {"b": {"d": 3, "c": 2}, "a": 1})
        assert a == b

    def test_method_path_and_body_matter(self) -> None:
        base = fingerprint("POST", "/p", {"a": 1})
        assert base != fingerprint("PUT", "/p", {"a": 1})
        assert base != fingerprint("POST", "/q", {"a": 1})
        assert base != fingerprint("POST", "/p", {"a": 2})

    def test_bytes_and_empty_bodies(self) -> None:
        assert fingerprint("POST", "/p", b"raw") == fingerprint("POST", "/p", "raw")
        assert fingerprint("POST", "/p") == fingerprint("POST", "/p", b"")


class TestBegin:
    """STARTED / REPLAY / CONFLICT outcomes."""

    def test_new_key_is_started(self, guard: IdempotencyGuard) -> None:
        outcome = guard.begin("key-1", FP, "corr-1")
        assert outcome.kind is IdempotencyOutcomeKind.STARTED

        record = guard.get("key-1")
        assert record is not None
        assert record.processing is True
        assert record.completed is False
        assert record.correlation_id == "corr-1"

    def test_in_flight_key_conflicts(self, guard: IdempotencyGuard) -> None:
        guard.begin("key-1", FP)
        outcome = guard.begin("key-1", FP)
        assert outcome.kind is IdempotencyOutcomeKind.CONFLICT
        assert outcome.reason == CONFLICT_IN_FLIGHT

    def test_completed_key_replays(self, guard: IdempotencyGuard) -> None:
        guard.begin("key-1", FP)
        assert guard.complete("key-1", 201, {"transaction_id": "TXN-1", "status": "captured"})

        outcome = guard.begin("key-1", FP)
        assert outcome.kind is IdempotencyOutcomeKind.REPLAY
        assert outcome.response_status == 201
        assert outcome.response_body == {"transaction_id": "TXN-1", "status": "captured"}

        record = guard.get("key-1")
        assert record.completed is True
        assert record.processing is False

    def test_reused_key_with_other_request_conflicts(self, guard: IdempotencyGuard) -> None:
        guard.begin("key-1", FP)
        guard.complete("key-1", 201, {})
        other = fingerprint("POST", "/api/payments/purchase", {"order_id": "ORD-2"})

        outcome = guard.begin("key-1", other)
        assert outcome.kind is IdempotencyOutcomeKind.CONFLICT
        assert outcome.reason == CONFLICT_FINGERPRINT_MISMATCH

    def test_expired_key_is_taken_over(self, guard: IdempotencyGuard, clock) -> None:
        guard.begin("key-1", FP)
        clock.advance(hours=25)
        assert guard.begin("key-1", FP).kind is IdempotencyOutcomeKind.STARTED


class TestCompleteAndPurge:
    """complete() and purge_expired()."""

    def test_complete_missing_key_returns_false(self, guard: IdempotencyGuard) -> None:
        assert guard.complete("never-started", 200, {}) is False

    def test_failures_are_stored_too(self, guard: IdempotencyGuard) -> None:
        guard.begin("key-1", FP)
        guard.complete("key-1", 402, {"error_code": "ERR_PAY_005"})
        outcome = guard.begin("key-1", FP)
        assert outcome.response_status == 402
        assert outcome.response_body["error_code"] == "ERR_PAY_005"

    def test_purge_removes_only_expired(self, guard: IdempotencyGuard, clock) -> None:
        guard.begin("old-1", FP)
        guard.begin("old-2", FP)
        clock.advance(hours=25)
        guard.begin("fresh", FP)

        assert guard.purge_expired() == 2
        assert guard.get("old-1") is None
        assert guard.get("old-2") is None
        assert guard.get("fresh") is not None

    def test_custom_ttl(self, db, clock) -> None:
        short = IdempotencyGuard(db, ttl_hours=1, clock=clock)
        short.begin("key-1", FP)
        clock.advance(minutes=61)
        assert short.purge_expired() == 1
