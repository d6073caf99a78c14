from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ledger_relay.domain.delivery import (
    DeliveryCounts,
    DeliveryRecord,
    DeliveryState,
    FailureKind,
    apply_transition,
    count_bucket,
)
from ledger_relay.domain.events import RelayEvent, RelayEventType
from ledger_relay.primitives.exceptions import InvalidTransitionError

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _make_record(**overrides: object) -> DeliveryRecord:
    event = RelayEvent(
        id="evt-1",
        source_record_key="CAR10",
        event_type=RelayEventType.CREATED,
        payload={"key": "CAR10"},
    )
    record = DeliveryRecord.pending(event, NOW)
    return record.model_copy(update=overrides) if overrides else record


def _in_flight() -> DeliveryRecord:
    return apply_transition(_make_record(), DeliveryState.IN_FLIGHT, NOW)


def _retryable() -> DeliveryRecord:
    return apply_transition(
        _in_flight(),
        DeliveryState.FAILED,
        NOW,
        failure_kind=FailureKind.TRANSIENT,
        last_error="timeout",
        next_retry_at=NOW + timedelta(seconds=1),
    )


class TestHappyPath:
    def test_new_record_is_pending(self) -> None:
        record = _make_record()
        assert record.state == DeliveryState.PENDING
        assert record.attempts == 0
        assert record.version == 0
        assert not record.is_terminal

    def test_claim_increments_attempts_and_version(self) -> None:
        record = _in_flight()
        assert record.state == DeliveryState.IN_FLIGHT
        assert record.attempts == 1
        assert record.version == 1

    def test_delivered_sets_reference_and_timestamp(self) -> None:
        later = NOW + timedelta(seconds=5)
        record = apply_transition(
            _in_flight(), DeliveryState.DELIVERED, later, target_tx_ref="tx-1"
        )
        assert record.state == DeliveryState.DELIVERED
        assert record.target_tx_ref == "tx-1"
        assert record.delivered_at == later
        assert record.updated_at == later
        assert record.is_terminal

    def test_delivered_requires_reference(self) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(_in_flight(), DeliveryState.DELIVERED, NOW)


class TestFailures:
    def test_transient_failure_is_retryable(self) -> None:
        record = _retryable()
        assert record.is_retryable
        assert not record.is_terminal
        assert record.last_error == "timeout"
        assert record.next_retry_at == NOW + timedelta(seconds=1)

    def test_is_due_respects_next_retry_at(self) -> None:
        record = _retryable()
        assert not record.is_due(NOW)
        assert record.is_due(NOW + timedelta(seconds=1))

    def test_retry_claims_again(self) -> None:
        record = apply_transition(_retryable(), DeliveryState.IN_FLIGHT, NOW)
        assert record.attempts == 2
        assert record.next_retry_at is None

    def test_permanent_failure_is_terminal(self) -> None:
        record = apply_transition(
            _in_flight(),
            DeliveryState.FAILED,
            NOW,
            failure_kind=FailureKind.PERMANENT,
            last_error="rejected",
            next_retry_at=NOW,
        )
        assert record.is_terminal
        assert record.next_retry_at is None
        with pytest.raises(InvalidTransitionError):
            apply_transition(record, DeliveryState.IN_FLIGHT, NOW)

    def test_malformed_from_pending_keeps_attempts(self) -> None:
        record = apply_transition(
            _make_record(),
            DeliveryState.FAILED,
            NOW,
            failure_kind=FailureKind.MALFORMED_PAYLOAD,
            last_error="missing key",
        )
        assert record.attempts == 0
        assert record.failure_kind == FailureKind.MALFORMED_PAYLOAD
        assert record.is_terminal

    def test_pending_cannot_fail_transiently(self) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(
                _make_record(),
                DeliveryState.FAILED,
                NOW,
                failure_kind=FailureKind.TRANSIENT,
            )

    @pytest.mark.parametrize("kind", [FailureKind.EXHAUSTED, FailureKind.ABANDONED])
    def test_retryable_can_become_terminal(self, kind: FailureKind) -> None:
        record = apply_transition(
            _retryable(), DeliveryState.FAILED, NOW, failure_kind=kind
        )
        assert record.failure_kind == kind
        assert record.last_error == "timeout"
        assert record.is_terminal

    def test_retryable_cannot_be_reclassified_permanent(self) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(
                _retryable(),
                DeliveryState.FAILED,
                NOW,
                failure_kind=FailureKind.PERMANENT,
            )

    def test_failed_requires_kind(self) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(_in_flight(), DeliveryState.FAILED, NOW)


class TestMonotonicity:
    def _delivered(self) -> DeliveryRecord:
        return apply_transition(
            _in_flight(), DeliveryState.DELIVERED, NOW, target_tx_ref="tx-1"
        )

    @pytest.mark.parametrize(
        "to_state,fields",
        [
            (DeliveryState.IN_FLIGHT, {}),
            (DeliveryState.FAILED, {"failure_kind": FailureKind.PERMANENT}),
            (DeliveryState.DELIVERED, {"target_tx_ref": "tx-2"}),
        ],
    )
    def test_delivered_is_immutable(
        self, to_state: DeliveryState, fields: dict[str, object]
    ) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(self._delivered(), to_state, NOW, **fields)

    @pytest.mark.parametrize("record_factory", [_make_record, _in_flight, _retryable])
    def test_nothing_returns_to_pending(self, record_factory) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(record_factory(), DeliveryState.PENDING, NOW)

    def test_pending_cannot_be_delivered_directly(self) -> None:
        with pytest.raises(InvalidTransitionError):
            apply_transition(
                _make_record(), DeliveryState.DELIVERED, NOW, target_tx_ref="tx-1"
            )

    def test_unknown_fields_rejected(self) -> None:
        with pytest.raises(InvalidTransitionError, match="attempts"):
            apply_transition(_make_record(), DeliveryState.IN_FLIGHT, NOW, attempts=9)

    def test_original_snapshot_untouched(self) -> None:
        record = _make_record()
        apply_transition(record, DeliveryState.IN_FLIGHT, NOW)
        assert record.state == DeliveryState.PENDING
        assert record.attempts == 0


class TestCounts:
    @pytest.mark.parametrize(
        "state,kind,bucket",
        [
            (DeliveryState.PENDING, None, "pending"),
            (DeliveryState.IN_FLIGHT, None, "in_flight"),
            (DeliveryState.DELIVERED, None, "delivered"),
            (DeliveryState.FAILED, FailureKind.TRANSIENT, "failed"),
            (DeliveryState.FAILED, FailureKind.PERMANENT, "abandoned"),
            (DeliveryState.FAILED, FailureKind.MALFORMED_PAYLOAD, "abandoned"),
            (DeliveryState.FAILED, FailureKind.EXHAUSTED, "abandoned"),
        ],
    )
    def test_count_bucket(
        self, state: DeliveryState, kind: FailureKind | None, bucket: str
    ) -> None:
        assert count_bucket(state, kind) == bucket

    def test_total(self) -> None:
        counts = DeliveryCounts(pending=1, in_flight=2, delivered=3, failed=4, abandoned=5)
        assert counts.total == 15
        assert counts.failed_total == 9
