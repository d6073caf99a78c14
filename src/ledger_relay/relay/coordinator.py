"""RelayCoordinator — owns the relay pipeline and its operational lifecycle.

Pipeline::

    EventSource → Ingestor → DeliveryLedger (Pending)
        → dispatcher → workers: Translate → Submit
        → DeliveryLedger (Delivered | Failed) → RetryScheduler → workers

All relay progress lives in the delivery ledger; the coordinator itself only
holds scheduling state (queues of event ids), so a restarted process resumes
from the ledger alone.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from ..correlation import bind_relay_event
from ..domain.delivery import DeliveryState, FailureKind
from ..instrumentation import get_hook_registry
from ..ports.background_worker import IBackgroundWorker
from ..primitives.exceptions import (
    MalformedPayloadError,
    StateConflictError,
    StorageUnavailableError,
    TargetPermanentError,
    TargetTransientError,
)
from ..settings import RelaySettings
from .ingestor import Ingestor
from .retry import BackoffPolicy, RetryScheduler
from .submitter import Submitter
from .translator import Translator

if TYPE_CHECKING:
    import random
    from collections.abc import Callable

    from ..domain.delivery import DeliveryRecord
    from ..domain.events import RelayEvent
    from ..ports.delivery_ledger import IDeliveryLedger
    from ..ports.event_source import IEventSource
    from ..ports.target_ledger import ITargetLedger
    from .translator import TargetTransaction

logger = logging.getLogger("ledger_relay.coordinator")

INTERRUPTED_ERROR = "interrupted: delivery outcome unknown"


class RelayStatus(BaseModel):
    """Snapshot returned by :meth:`RelayCoordinator.status`.

    ``failed`` counts records still awaiting a retry, ``abandoned`` the
    terminal ones (exhausted, permanent, malformed or abandoned) and
    ``failed_total`` both.
    """

    model_config = ConfigDict(frozen=True)

    pending: int = 0
    in_flight: int = 0
    delivered: int = 0
    failed: int = 0
    abandoned: int = 0
    failed_total: int = 0
    queued: int = 0
    running: bool = False
    paused: bool = False
    halted: bool = False
    last_error: str | None = None


class RelayCoordinator(IBackgroundWorker):
    """Runs ingestion, dispatch, delivery workers and the retry scheduler.

    Lifecycle:

    - ``start()`` recovers ``InFlight`` records left by a previous process,
      then starts ``worker_count`` workers, the dispatcher, the retry
      scheduler and the ingestor.
    - ``pause()`` / ``resume()`` stop and restart pulling new work; attempts
      already running finish.
    - ``drain(timeout)`` pauses and waits for running attempts to resolve.
    - ``stop(timeout)`` drains, then cancels whatever is still running.
      Cancelled attempts stay ``InFlight`` and are recovered next start.
    - ``wait()`` blocks until the coordinator stops; it re-raises the
      ``StorageUnavailableError`` that halted it, if any.

    Usage::

        coordinator = RelayCoordinator(source, ledger, target, settings)
        await coordinator.start()
        ...
        print(await coordinator.status())
        await coordinator.stop()
    """

    def __init__(
        self,
        source: IEventSource,
        ledger: IDeliveryLedger,
        target: ITargetLedger,
        settings: RelaySettings | None = None,
        *,
        translator: Translator | None = None,
        submitter: Submitter | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings or RelaySettings()
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._translator = translator or Translator()
        self._submitter = submitter or Submitter(
            target,
            timeout=self._settings.submit_timeout,
            verify_ambiguous=self._settings.verify_ambiguous,
        )
        self._policy = BackoffPolicy(
            max_attempts=self._settings.max_attempts,
            base_delay=self._settings.base_delay,
            max_delay=self._settings.max_delay,
            jitter_ratio=self._settings.jitter_ratio,
            rng=rng,
        )
        self._scheduler = RetryScheduler(
            ledger,
            self._policy,
            self.enqueue,
            poll_interval=self._settings.poll_interval,
            batch_size=self._settings.batch_size,
            clock=self._clock,
            on_fatal=self._halt,
        )
        self._ingestor = Ingestor(
            source,
            ledger,
            self._settings,
            on_accepted=self._on_accepted,
            on_fatal=self._halt,
            clock=self._clock,
        )

        queue_count = self._settings.worker_count if self._settings.shard_by_key else 1
        self._queues: list[asyncio.Queue[str]] = [
            asyncio.Queue() for _ in range(queue_count)
        ]
        self._scheduled: set[str] = set()
        self._active = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._wake = asyncio.Event()
        self._stopped = asyncio.Event()

        self._workers: list[asyncio.Task[None]] = []
        self._dispatcher: asyncio.Task[None] | None = None
        self._halt_task: asyncio.Task[None] | None = None
        self._running = False
        self._halted = False
        self._fatal: BaseException | None = None
        self._last_error: str | None = None

    # ── Properties ───────────────────────────────────────────────

    @property
    def settings(self) -> RelaySettings:
        return self._settings

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def ingestor(self) -> Ingestor:
        return self._ingestor

    @property
    def running(self) -> bool:
        return self._running

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    @property
    def halted(self) -> bool:
        return self._halted

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        if self._halted:
            raise RuntimeError("Coordinator halted; create a new instance to restart")
        recovered = await self.recover()
        if recovered:
            logger.warning(
                "Recovered %d InFlight records with unknown outcome", recovered
            )

        self._running = True
        self._stopped.clear()
        self._resumed.set()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"relay-worker-{i}")
            for i in range(self._settings.worker_count)
        ]
        self._dispatcher = asyncio.create_task(
            self._dispatch_loop(), name="relay-dispatcher"
        )
        await self._scheduler.start()
        await self._ingestor.start()
        self._wake.set()
        self._scheduler.trigger()
        logger.info(
            "RelayCoordinator started (workers=%d, shard_by_key=%s)",
            self._settings.worker_count,
            self._settings.shard_by_key,
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop intake, drain running attempts for *timeout* seconds, then cancel."""
        if self._halt_task is not None:
            await self._halt_task
        if not self._running:
            self._stopped.set()
            return
        timeout = self._settings.shutdown_timeout if timeout is None else timeout
        await self._ingestor.stop()
        await self._scheduler.stop()
        drained = await self.drain(timeout)
        if not drained:
            logger.warning(
                "Shutdown timeout (%.1fs) reached with %d attempts running; "
                "cancelling them",
                timeout,
                self._active,
            )
        await self._shutdown_tasks()
        self._stopped.set()
        logger.info("RelayCoordinator stopped")

    def pause(self) -> None:
        """Stop pulling new work. Attempts already running finish normally."""
        if self._resumed.is_set():
            self._resumed.clear()
            logger.info("RelayCoordinator paused")

    def resume(self) -> None:
        if not self._resumed.is_set():
            self._resumed.set()
            self._wake.set()
            self._scheduler.trigger()
            logger.info("RelayCoordinator resumed")

    async def drain(self, timeout: float | None = None) -> bool:
        """Pause and wait until no attempt is running.

        Returns:
            True if every running attempt resolved within *timeout*.
        """
        self.pause()
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait(self) -> None:
        """Block until stopped; raise the fatal error if the coordinator halted."""
        await self._stopped.wait()
        if self._fatal is not None:
            raise self._fatal

    async def status(self) -> RelayStatus:
        counts = await self._ledger.count_by_state()
        return RelayStatus(
            **counts.model_dump(),
            failed_total=counts.failed_total,
            queued=len(self._scheduled),
            running=self._running,
            paused=self.paused,
            halted=self._halted,
            last_error=self._last_error,
        )

    # ── Recovery and scheduling ──────────────────────────────────

    async def recover(self) -> int:
        """Move every ``InFlight`` record to retryable ``Failed``.

        An ``InFlight`` record at startup belongs to an attempt whose outcome
        is unknown; re-attempting it is safe because target writes are
        idempotent.
        """
        recovered = 0
        while True:
            batch = await self._ledger.list_in_flight(self._settings.batch_size)
            if not batch:
                return recovered
            now = self._clock()
            for record in batch:
                try:
                    await self._ledger.transition(
                        record.event_id,
                        DeliveryState.IN_FLIGHT,
                        DeliveryState.FAILED,
                        expected_version=record.version,
                        failure_kind=FailureKind.TRANSIENT,
                        last_error=INTERRUPTED_ERROR,
                        next_retry_at=now,
                    )
                except StateConflictError:
                    continue
                recovered += 1

    def enqueue(self, records: list[DeliveryRecord]) -> int:
        """Queue *records* for processing; ids already queued are skipped."""
        if self._halted or self.paused:
            return 0
        queued = 0
        for record in records:
            if record.event_id in self._scheduled:
                continue
            self._scheduled.add(record.event_id)
            self._queue_for(record.event.source_record_key).put_nowait(record.event_id)
            queued += 1
        return queued

    async def dispatch_pending(self) -> int:
        """Queue one batch of ``Pending`` records, oldest first."""
        records = await self._ledger.list_pending(self._settings.batch_size)
        return self.enqueue(records)

    def _queue_for(self, record_key: str) -> asyncio.Queue[str]:
        if len(self._queues) == 1:
            return self._queues[0]
        hash_val = int(hashlib.sha256(record_key.encode()).hexdigest(), 16)
        return self._queues[hash_val % len(self._queues)]

    def _on_accepted(self, event: RelayEvent) -> None:
        self._wake.set()

    # ── Per-record processing ────────────────────────────────────

    async def process(self, event_id: str) -> DeliveryRecord | None:
        """Run one Translate → Submit pass for *event_id*.

        Returns the record after the pass, or ``None`` when the record is
        unknown or another worker advanced it first. Terminal records, and
        retryable ones whose ``next_retry_at`` has not passed yet, are
        returned unchanged.

        Raises:
            StorageUnavailableError: The delivery ledger is unreachable.
        """
        record = await self._ledger.get(event_id)
        if record is None:
            logger.warning("No delivery record for %s", event_id)
            return None
        if record.state != DeliveryState.PENDING and not record.is_retryable:
            return record
        if (
            record.is_retryable
            and self._policy.should_retry(record.attempts)
            and not record.is_due(self._clock())
        ):
            logger.debug("Retry of %s not due until %s", event_id, record.next_retry_at)
            return record

        attributes: dict[str, Any] = {
            "event.id": event_id,
            "event.type": record.event.event_type.value,
            "record.key": record.event.source_record_key,
            "delivery.attempts": record.attempts,
        }
        with bind_relay_event(event_id):
            try:
                return await get_hook_registry().execute_all(
                    f"relay.submit.{record.event.event_type.value}",
                    attributes,
                    lambda: self._attempt(record),
                )
            except StateConflictError as exc:
                logger.debug("Skipping %s: %s", event_id, exc)
                return None

    async def _attempt(self, record: DeliveryRecord) -> DeliveryRecord:
        if record.is_retryable and not self._policy.should_retry(record.attempts):
            return await self._exhaust(record)

        transaction: TargetTransaction | None = None
        malformed: MalformedPayloadError | None = None
        try:
            transaction = self._translator.translate(record.event)
        except MalformedPayloadError as exc:
            malformed = exc

        if malformed is not None and record.state == DeliveryState.PENDING:
            logger.warning("Event %s rejected: %s", record.event_id, malformed.reason)
            return await self._ledger.transition(
                record.event_id,
                DeliveryState.PENDING,
                DeliveryState.FAILED,
                expected_version=record.version,
                failure_kind=FailureKind.MALFORMED_PAYLOAD,
                last_error=malformed.reason,
            )

        claimed = await self._ledger.transition(
            record.event_id,
            record.state,
            DeliveryState.IN_FLIGHT,
            expected_version=record.version,
        )
        if malformed is not None:
            logger.warning("Event %s rejected: %s", record.event_id, malformed.reason)
            return await self._fail(
                claimed, FailureKind.MALFORMED_PAYLOAD, malformed.reason
            )

        assert transaction is not None
        try:
            tx_ref = await self._submitter.submit(transaction)
        except TargetPermanentError as exc:
            logger.warning(
                "Target rejected %s (key=%s): %s",
                record.event_id,
                record.event.source_record_key,
                exc,
            )
            return await self._fail(claimed, FailureKind.PERMANENT, str(exc))
        except TargetTransientError as exc:
            return await self._schedule_retry(claimed, str(exc))

        delivered = await self._ledger.transition(
            claimed.event_id,
            DeliveryState.IN_FLIGHT,
            DeliveryState.DELIVERED,
            expected_version=claimed.version,
            target_tx_ref=tx_ref,
        )
        logger.info(
            "Delivered %s (key=%s) as %s after %d attempt(s)",
            delivered.event_id,
            delivered.event.source_record_key,
            tx_ref,
            delivered.attempts,
        )
        return delivered

    async def _schedule_retry(
        self, claimed: DeliveryRecord, error: str
    ) -> DeliveryRecord:
        if not self._policy.should_retry(claimed.attempts):
            logger.warning(
                "Delivery of %s (key=%s) exhausted after %d attempts: %s",
                claimed.event_id,
                claimed.event.source_record_key,
                claimed.attempts,
                error,
            )
            return await self._fail(claimed, FailureKind.EXHAUSTED, error)

        retry_at = self._policy.next_retry_at(claimed.attempts, self._clock())
        logger.info(
            "Attempt %d for %s failed (%s); retrying at %s",
            claimed.attempts,
            claimed.event_id,
            error,
            retry_at.isoformat(),
        )
        return await self._ledger.transition(
            claimed.event_id,
            DeliveryState.IN_FLIGHT,
            DeliveryState.FAILED,
            expected_version=claimed.version,
            failure_kind=FailureKind.TRANSIENT,
            last_error=error,
            next_retry_at=retry_at,
        )

    async def _fail(
        self, claimed: DeliveryRecord, kind: FailureKind, error: str
    ) -> DeliveryRecord:
        return await self._ledger.transition(
            claimed.event_id,
            DeliveryState.IN_FLIGHT,
            DeliveryState.FAILED,
            expected_version=claimed.version,
            failure_kind=kind,
            last_error=error,
        )

    async def _exhaust(self, record: DeliveryRecord) -> DeliveryRecord:
        logger.warning(
            "Delivery of %s (key=%s) exhausted after %d attempts: %s",
            record.event_id,
            record.event.source_record_key,
            record.attempts,
            record.last_error,
        )
        return await self._ledger.transition(
            record.event_id,
            DeliveryState.FAILED,
            DeliveryState.FAILED,
            expected_version=record.version,
            failure_kind=FailureKind.EXHAUSTED,
            last_error=record.last_error,
        )

    # ── Background loops ─────────────────────────────────────────

    async def _worker_loop(self, index: int) -> None:
        queue = self._queues[index % len(self._queues)]
        while True:
            event_id = await queue.get()
            try:
                await self._resumed.wait()
                if self._halted:
                    continue
                self._active += 1
                self._idle.clear()
                try:
                    await self.process(event_id)
                finally:
                    self._active -= 1
                    if self._active == 0:
                        self._idle.set()
            except StorageUnavailableError as exc:
                self._halt(exc)
            except Exception:
                logger.exception("Worker %d failed processing %s", index, event_id)
            finally:
                self._scheduled.discard(event_id)
                queue.task_done()
                if queue.empty():
                    self._wake.set()

    async def _dispatch_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self._settings.poll_interval
                )
            self._wake.clear()
            if not self._running:
                break
            if self.paused or self._halted:
                continue
            try:
                await self.dispatch_pending()
            except StorageUnavailableError as exc:
                self._halt(exc)
                break
            except Exception:
                logger.exception("Dispatcher error")

    def _halt(self, exc: BaseException) -> None:
        if self._halted:
            return
        self._halted = True
        self._fatal = exc
        self._last_error = str(exc)
        self._resumed.clear()
        logger.error("RelayCoordinator halted: delivery ledger unavailable: %s", exc)
        self._halt_task = asyncio.get_running_loop().create_task(
            self._shutdown_after_halt()
        )

    async def _shutdown_after_halt(self) -> None:
        await self._ingestor.stop()
        await self._scheduler.stop()
        await self._shutdown_tasks()
        self._stopped.set()

    async def _shutdown_tasks(self) -> None:
        self._running = False
        self._wake.set()
        current = asyncio.current_task()
        tasks = [t for t in [*self._workers, self._dispatcher] if t is not None]
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._dispatcher = None
        self._active = 0
        self._idle.set()
        self._scheduled.clear()
        for queue in self._queues:
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()
