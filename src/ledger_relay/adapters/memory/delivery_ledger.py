"""InMemoryDeliveryLedger — dict-backed fake for unit tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ...domain.delivery import (
    DeliveryCounts,
    DeliveryRecord,
    DeliveryState,
    apply_transition,
    count_bucket,
)
from ...ports.delivery_ledger import IDeliveryLedger
from ...primitives.exceptions import (
    RecordNotFoundError,
    StateConflictError,
    StorageUnavailableError,
)

if TYPE_CHECKING:
    import builtins
    from collections.abc import Callable

    from ...domain.events import RelayEvent


def _utc(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class InMemoryDeliveryLedger(IDeliveryLedger):
    """In-memory implementation of ``IDeliveryLedger``.

    A single ``asyncio.Lock`` serializes mutations, which gives
    ``transition`` its compare-and-set semantics within one event loop.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._records: dict[str, DeliveryRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._available = True

    def _check_available(self) -> None:
        if not self._available:
            raise StorageUnavailableError("In-memory delivery ledger is offline")

    async def put_if_absent(self, event: RelayEvent) -> bool:
        async with self._lock:
            self._check_available()
            if event.id in self._records:
                return False
            self._records[event.id] = DeliveryRecord.pending(event, self._clock())
            return True

    async def get(self, event_id: str) -> DeliveryRecord | None:
        self._check_available()
        return self._records.get(event_id)

    async def transition(
        self,
        event_id: str,
        from_state: DeliveryState,
        to_state: DeliveryState,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> DeliveryRecord:
        async with self._lock:
            self._check_available()
            current = self._records.get(event_id)
            if current is None:
                raise RecordNotFoundError(event_id)
            if current.state != from_state or (
                expected_version is not None and current.version != expected_version
            ):
                raise StateConflictError(
                    event_id,
                    from_state,
                    current.state,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            updated = apply_transition(current, to_state, self._clock(), **fields)
            self._records[event_id] = updated
            return updated

    def _select(
        self, state: DeliveryState, limit: int
    ) -> builtins.list[DeliveryRecord]:
        matched = sorted(
            (r for r in self._records.values() if r.state == state),
            key=lambda r: _utc(r.created_at),
        )
        return matched[:limit]

    async def list_pending(self, limit: int = 100) -> builtins.list[DeliveryRecord]:
        self._check_available()
        return self._select(DeliveryState.PENDING, limit)

    async def list_in_flight(self, limit: int = 100) -> builtins.list[DeliveryRecord]:
        self._check_available()
        return self._select(DeliveryState.IN_FLIGHT, limit)

    async def list_due_for_retry(
        self,
        now: datetime,
        max_attempts: int,
        limit: int = 100,
    ) -> builtins.list[DeliveryRecord]:
        self._check_available()
        due = [
            r
            for r in self._records.values()
            if r.is_due(now) and r.attempts < max_attempts
        ]
        due.sort(key=lambda r: _utc(r.next_retry_at or r.updated_at))
        return due[:limit]

    async def list_exhausted(
        self, max_attempts: int, limit: int = 100
    ) -> builtins.list[DeliveryRecord]:
        self._check_available()
        exhausted = [
            r
            for r in self._records.values()
            if r.is_retryable and r.attempts >= max_attempts
        ]
        return exhausted[:limit]

    async def find_by_state(
        self,
        states: builtins.list[DeliveryState],
        limit: int = 50,
        offset: int = 0,
    ) -> builtins.list[DeliveryRecord]:
        self._check_available()
        state_set = set(states)
        matched = sorted(
            (r for r in self._records.values() if r.state in state_set),
            key=lambda r: _utc(r.updated_at),
            reverse=True,
        )
        return matched[offset : offset + limit]

    async def count_by_state(self) -> DeliveryCounts:
        self._check_available()
        counts = {
            "pending": 0,
            "in_flight": 0,
            "delivered": 0,
            "failed": 0,
            "abandoned": 0,
        }
        for record in self._records.values():
            counts[count_bucket(record.state, record.failure_kind)] += 1
        return DeliveryCounts(**counts)

    async def purge(
        self,
        before: datetime,
        states: builtins.list[DeliveryState] | None = None,
    ) -> int:
        async with self._lock:
            self._check_available()
            state_set = set(states or [DeliveryState.DELIVERED])
            to_delete = [
                event_id
                for event_id, r in self._records.items()
                if r.is_terminal
                and r.state in state_set
                and _utc(r.updated_at) < _utc(before)
            ]
            for event_id in to_delete:
                del self._records[event_id]
            return len(to_delete)

    # ── Test helpers ─────────────────────────────────────────────

    def set_available(self, available: bool) -> None:
        """Simulate the backing store going offline or recovering."""
        self._available = available

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

