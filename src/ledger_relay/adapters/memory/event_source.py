"""InMemoryEventSource — IEventSource with replayable per-event-name logs for tests."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from ...ports.event_source import IEventSource

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ...domain.events import RawNotification


def _identity(notification: RawNotification) -> tuple[str, str, str, int]:
    return (
        notification.source_id,
        notification.tx_id,
        notification.event_name,
        notification.sequence,
    )


class InMemoryEventSource(IEventSource):
    """In-memory event feed with at-least-once semantics.

    Every ``subscribe`` call replays the unacknowledged notifications of the
    log from the start and then waits for new ones, like a ledger listener
    restarted from its last checkpoint. ``emit`` the same notification twice
    to simulate upstream redelivery.
    """

    def __init__(self) -> None:
        self._logs: dict[str, list[RawNotification]] = {}
        self._acked: set[tuple[str, str, str, int]] = set()
        self._changed = asyncio.Condition()
        self._closed = False

    async def emit(self, notification: RawNotification) -> None:
        """Append *notification* to its event-name log and wake subscribers."""
        async with self._changed:
            self._logs.setdefault(notification.event_name, []).append(notification)
            self._changed.notify_all()

    async def close(self) -> None:
        """End every subscription once it has drained its log."""
        async with self._changed:
            self._closed = True
            self._changed.notify_all()

    async def subscribe(self, event_name: str) -> AsyncIterator[RawNotification]:
        position = 0
        while True:
            async with self._changed:
                log = self._logs.setdefault(event_name, [])
                while position >= len(log) and not self._closed:
                    await self._changed.wait()
                if position >= len(log):
                    return
                notification = log[position]
            position += 1
            if _identity(notification) in self._acked:
                continue
            yield notification

    async def acknowledge(self, notification: RawNotification) -> None:
        self._acked.add(_identity(notification))

    # ── Test helpers ─────────────────────────────────────────────

    def is_acknowledged(self, notification: RawNotification) -> bool:
        return _identity(notification) in self._acked

    def reopen(self) -> None:
        """Allow new subscriptions after ``close`` (simulates a listener restart)."""
        self._closed = False
