"""IEventSource — subscription boundary of the source ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from ..domain.events import RawNotification


@runtime_checkable
class IEventSource(Protocol):
    """Pull-based view over the source ledger's push notifications.

    Adapters wrap the ledger SDK's callback listener into a lazy, possibly
    infinite async iterator. The feed is at-least-once and may be out of
    order; the relay tolerates both.
    """

    def subscribe(self, event_name: str) -> AsyncIterator[RawNotification]:
        """Yield notifications for *event_name*, resuming from the last ack."""
        ...

    async def acknowledge(self, notification: RawNotification) -> None:
        """Confirm *notification* is durably recorded and need not be redelivered."""
        ...
