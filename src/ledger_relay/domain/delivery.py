"""DeliveryRecord — per-event delivery state machine.

Status transitions::

    Pending  → InFlight   (claim for an attempt; attempts += 1)
    Pending  → Failed     (terminal only, e.g. malformed payload)
    InFlight → Delivered  (target accepted; terminal and immutable)
    InFlight → Failed     (transient: retryable, otherwise terminal)
    Failed   → InFlight   (retry; retryable records only)
    Failed   → Failed     (retryable → terminal: exhausted or abandoned)

Records are immutable snapshots; :func:`apply_transition` returns the next
snapshot and is shared by every ``IDeliveryLedger`` implementation so the
rules are enforced identically in memory and in SQL.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..primitives.exceptions import InvalidTransitionError
from .events import RelayEvent


class DeliveryState(str, Enum):
    """Lifecycle states of a delivery record."""

    PENDING = "Pending"
    IN_FLIGHT = "InFlight"
    DELIVERED = "Delivered"
    FAILED = "Failed"


class FailureKind(str, Enum):
    """Why a record is ``Failed``. Only ``TRANSIENT`` failures are retried."""

    TRANSIENT = "Transient"
    PERMANENT = "Permanent"
    MALFORMED_PAYLOAD = "MalformedPayload"
    EXHAUSTED = "Exhausted"
    ABANDONED = "Abandoned"


TRANSITION_FIELDS = frozenset(
    {"last_error", "failure_kind", "next_retry_at", "target_tx_ref", "delivered_at"}
)


class DeliveryRecord(BaseModel):
    """Delivery progress of one ``RelayEvent``; owned by the delivery ledger."""

    model_config = ConfigDict(frozen=True)

    event: RelayEvent
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = Field(default=0, ge=0)
    last_error: str | None = None
    failure_kind: FailureKind | None = None
    next_retry_at: datetime | None = None
    target_tx_ref: str | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    delivered_at: datetime | None = None

    @classmethod
    def pending(cls, event: RelayEvent, now: datetime | None = None) -> DeliveryRecord:
        """New ``Pending`` record for a freshly ingested event."""
        ts = now or datetime.now(timezone.utc)
        return cls(event=event, created_at=ts, updated_at=ts)

    @property
    def event_id(self) -> str:
        return self.event.id

    @property
    def is_retryable(self) -> bool:
        return (
            self.state == DeliveryState.FAILED
            and self.failure_kind == FailureKind.TRANSIENT
        )

    @property
    def is_terminal(self) -> bool:
        if self.state == DeliveryState.DELIVERED:
            return True
        return self.state == DeliveryState.FAILED and not self.is_retryable

    def is_due(self, now: datetime) -> bool:
        """Retryable and its scheduled retry time has passed."""
        if not self.is_retryable:
            return False
        return self.next_retry_at is None or _aware(self.next_retry_at) <= _aware(now)


class DeliveryCounts(BaseModel):
    """Record counts per lifecycle bucket, for status and dashboards.

    ``failed`` holds retryable (``Transient``) failures only; terminal
    failures of every kind are under ``abandoned``. ``failed_total`` is the
    number of records in the ``Failed`` state.
    """

    model_config = ConfigDict(frozen=True)

    pending: int = 0
    in_flight: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0

    @property
    def failed_total(self) -> int:
        return self.failed + self.abandoned

    @property
    def total(self) -> int:
        return (
            self.pending + self.in_flight + self.delivered + self.failed + self.abandoned
        )


def _aware(ts: datetime) -> datetime:
    # SQLite drops tzinfo; stored timestamps are always UTC.
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def check_transition(
    record: DeliveryRecord, to_state: DeliveryState, fields: dict[str, Any]
) -> None:
    """Raise ``InvalidTransitionError`` unless *record* may move to *to_state*."""
    unknown = set(fields) - TRANSITION_FIELDS
    if unknown:
        raise InvalidTransitionError(
            f"Unsupported transition fields: {', '.join(sorted(unknown))}"
        )

    current = record.state
    kind = fields.get("failure_kind")

    if current == DeliveryState.DELIVERED:
        raise InvalidTransitionError(
            f"Record {record.event_id!r} is Delivered and immutable"
        )

    if to_state == DeliveryState.PENDING:
        raise InvalidTransitionError("No transition may return a record to Pending")

    if to_state == DeliveryState.DELIVERED:
        if current != DeliveryState.IN_FLIGHT:
            raise InvalidTransitionError(
                f"Cannot deliver record in {current.value} state"
            )
        if not fields.get("target_tx_ref"):
            raise InvalidTransitionError("Delivered requires a target_tx_ref")
        return

    if to_state == DeliveryState.IN_FLIGHT:
        if current == DeliveryState.PENDING or record.is_retryable:
            return
        raise InvalidTransitionError(
            f"Cannot start an attempt for record in {current.value} state "
            f"({record.failure_kind.value if record.failure_kind else 'no failure'})"
        )

    # to_state == FAILED
    if kind is None:
        raise InvalidTransitionError("Failed requires a failure_kind")
    kind = FailureKind(kind)
    if current == DeliveryState.IN_FLIGHT:
        return
    if current == DeliveryState.PENDING and kind != FailureKind.TRANSIENT:
        return
    if record.is_retryable and kind in (FailureKind.EXHAUSTED, FailureKind.ABANDONED):
        return
    raise InvalidTransitionError(
        f"Cannot fail record in {current.value} state with {kind.value}"
    )


def apply_transition(
    record: DeliveryRecord,
    to_state: DeliveryState,
    now: datetime,
    **fields: Any,
) -> DeliveryRecord:
    """Validate and return the next snapshot of *record*.

    Entering ``InFlight`` increments ``attempts``; ``Pending → Failed`` keeps
    attempts frozen. Every transition bumps ``version``.
    """
    check_transition(record, to_state, fields)

    update: dict[str, Any] = {
        "state": to_state,
        "version": record.version + 1,
        "updated_at": now,
    }

    if to_state == DeliveryState.IN_FLIGHT:
        update["attempts"] = record.attempts + 1
        update["next_retry_at"] = None
    elif to_state == DeliveryState.DELIVERED:
        update["target_tx_ref"] = fields["target_tx_ref"]
        update["delivered_at"] = fields.get("delivered_at") or now
        update["failure_kind"] = None
        update["next_retry_at"] = None
    else:
        kind = FailureKind(fields["failure_kind"])
        update["failure_kind"] = kind
        update["last_error"] = fields.get("last_error", record.last_error)
        update["next_retry_at"] = (
            fields.get("next_retry_at") if kind == FailureKind.TRANSIENT else None
        )

    return record.model_copy(update=update)


def count_bucket(state: DeliveryState, failure_kind: FailureKind | None) -> str:
    """Name of the ``DeliveryCounts`` field a record in *state* is counted under."""
    if state == DeliveryState.PENDING:
        return "pending"
    if state == DeliveryState.IN_FLIGHT:
        return "in_flight"
    if state == DeliveryState.DELIVERED:
        return "delivered"
    if failure_kind == FailureKind.TRANSIENT:
        return "failed"
    return "abandoned"
