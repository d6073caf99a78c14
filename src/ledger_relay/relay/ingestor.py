"""Ingestor — turn source-ledger notifications into Pending delivery records."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..domain.events import RelayEvent, derive_event_id
from ..instrumentation import get_hook_registry
from ..ports.background_worker import IBackgroundWorker
from ..primitives.exceptions import StorageUnavailableError
from ..settings import RelaySettings
from .retry import BackoffPolicy
from .translator import UNDECODABLE_KEY

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..domain.events import RawNotification, RelayEventType
    from ..ports.delivery_ledger import IDeliveryLedger
    from ..ports.event_source import IEventSource

logger = logging.getLogger("ledger_relay.ingestor")


class IngestOutcome(str, Enum):
    """Result of ingesting one notification."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


def decode_payload(payload: bytes | str | dict[str, Any]) -> dict[str, Any]:
    """Decode a notification payload into a dict.

    Anything that is not a JSON object is kept verbatim under
    ``UNDECODABLE_KEY`` so the translator can fail it visibly.
    """
    if isinstance(payload, dict):
        return dict(payload)
    if isinstance(payload, bytes):
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError:
            return {UNDECODABLE_KEY: payload.hex()}
    else:
        text = payload
    if not text.strip():
        return {}
    try:
        decoded = json.loads(text)
    except ValueError:
        return {UNDECODABLE_KEY: text}
    if not isinstance(decoded, dict):
        return {UNDECODABLE_KEY: text}
    return decoded


class Ingestor(IBackgroundWorker):
    """Single consumer of the source feed.

    For every notification: derive the deterministic event id, store a
    ``Pending`` record if the id is new, then acknowledge the notification.
    Redelivered notifications resolve to the same id and are discarded as
    duplicates. No submission happens here; *on_accepted* wakes the
    dispatcher.

    A ``StorageUnavailableError`` leaves the notification unacknowledged so
    the source redelivers it after restart; it stops the ingestor and is
    reported to *on_fatal*. Once started, a feed that fails or ends is
    subscribed again after a backoff delay until :meth:`stop`.
    """

    def __init__(
        self,
        source: IEventSource,
        ledger: IDeliveryLedger,
        settings: RelaySettings | None = None,
        *,
        on_accepted: Callable[[RelayEvent], None] | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = settings or RelaySettings()
        self._source = source
        self._ledger = ledger
        self._event_types: dict[str, RelayEventType] = dict(settings.event_types)
        self._key_field = settings.key_field
        self._on_accepted = on_accepted
        self._on_fatal = on_fatal
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._resubscribe = BackoffPolicy(
            base_delay=settings.resubscribe_delay,
            max_delay=settings.resubscribe_max_delay,
            jitter_ratio=settings.jitter_ratio,
        )
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def event_names(self) -> list[str]:
        return list(self._event_types)

    def to_event(self, notification: RawNotification) -> RelayEvent | None:
        """Build the ``RelayEvent`` for *notification*; ``None`` if unmapped."""
        event_type = self._event_types.get(notification.event_name)
        if event_type is None:
            return None
        payload = decode_payload(notification.payload)
        key = notification.record_key
        if not key:
            candidate = payload.get(self._key_field)
            key = str(candidate) if candidate not in (None, "") else ""
        return RelayEvent(
            id=derive_event_id(notification),
            source_record_key=key,
            event_type=event_type,
            payload=payload,
            observed_at=self._clock(),
            source_tx_id=notification.tx_id,
            event_name=notification.event_name,
            block_number=notification.block_number,
        )

    async def ingest(self, notification: RawNotification) -> IngestOutcome:
        """Record *notification* durably, then acknowledge it."""

        async def handler() -> IngestOutcome:
            event = self.to_event(notification)
            if event is None:
                logger.warning(
                    "Skipping notification %s/%s: unmapped event name %r",
                    notification.source_id,
                    notification.tx_id,
                    notification.event_name,
                )
                await self._source.acknowledge(notification)
                return IngestOutcome.SKIPPED

            created = await self._ledger.put_if_absent(event)
            await self._source.acknowledge(notification)
            if not created:
                logger.debug("Duplicate notification for event %s", event.id)
                return IngestOutcome.DUPLICATE

            logger.debug(
                "Accepted %s event %s for key %r",
                event.event_type.value,
                event.id,
                event.source_record_key,
            )
            if self._on_accepted is not None:
                self._on_accepted(event)
            return IngestOutcome.ACCEPTED

        return await get_hook_registry().execute_all(
            f"relay.ingest.{notification.event_name}",
            {
                "event.name": notification.event_name,
                "source.id": notification.source_id,
                "source.tx_id": notification.tx_id,
            },
            handler,
        )

    async def consume(self, event_name: str) -> None:
        """Consume the feed for *event_name* until it ends or is cancelled."""
        async for notification in self._source.subscribe(event_name):
            await self.ingest(notification)

    async def run(self) -> None:
        """Consume every mapped event name concurrently until all feeds end."""
        await asyncio.gather(*(self.consume(name) for name in self._event_types))

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._consume_guarded(name), name=f"ingest:{name}")
            for name in self._event_types
        ]
        logger.info("Ingestor started for %s", ", ".join(self._event_types))

    async def stop(self) -> None:
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Ingestor stopped")

    async def _consume_guarded(self, event_name: str) -> None:
        failures = 0
        while self._running:
            try:
                await self.consume(event_name)
            except StorageUnavailableError as exc:
                logger.error("Ingestor for %r halted: %s", event_name, exc)
                self._running = False
                if self._on_fatal is not None:
                    self._on_fatal(exc)
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                delay = self._resubscribe.delay_for(failures)
                failures += 1
                logger.warning(
                    "Feed for %r failed (%s: %s); re-subscribing in %.2fs",
                    event_name,
                    type(exc).__name__,
                    exc,
                    delay,
                )
            else:
                failures = 0
                delay = self._resubscribe.delay_for(0)
                logger.info(
                    "Feed for %r ended; re-subscribing in %.2fs", event_name, delay
                )
            await asyncio.sleep(delay)
