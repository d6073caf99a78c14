"""BackoffPolicy and RetryScheduler — when and how failed deliveries are re-fed."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..domain.delivery import DeliveryState, FailureKind
from ..instrumentation import get_hook_registry
from ..ports.background_worker import IBackgroundWorker
from ..primitives.exceptions import (
    ConfigurationError,
    StateConflictError,
    StorageUnavailableError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..domain.delivery import DeliveryRecord
    from ..ports.delivery_ledger import IDeliveryLedger

logger = logging.getLogger("ledger_relay.retry")

# Keeps 2 ** attempts finite; any realistic cap is reached long before.
_MAX_EXPONENT = 62
# (1 - r) * 2 >= 1 + r keeps consecutive jittered delays non-decreasing.
_MAX_JITTER_RATIO = 1 / 3


class BackoffPolicy:
    """Exponential backoff with symmetric jitter and an attempt ceiling.

    ``delay = base_delay * 2 ** attempts``, scaled by a random factor in
    ``[1 - jitter_ratio, 1 + jitter_ratio]`` and capped at ``max_delay``.
    With ``jitter_ratio <= 1/3`` the delays for consecutive attempts of one
    record never decrease.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 8,
        base_delay: float = 0.5,
        max_delay: float = 60.0,
        jitter_ratio: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ConfigurationError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ConfigurationError("base_delay must be <= max_delay")
        if not 0 <= jitter_ratio <= _MAX_JITTER_RATIO:
            raise ConfigurationError("jitter_ratio must be within [0, 1/3]")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()  # noqa: S311

    def should_retry(self, attempts: int) -> bool:
        """Return True while another attempt is allowed after *attempts* tries."""
        return attempts < self.max_attempts

    def delay_for(self, attempts: int) -> float:
        """Return the delay in seconds before the attempt following *attempts*."""
        exponent = min(max(attempts, 0), _MAX_EXPONENT)
        delay = self.base_delay * (2**exponent)
        if self.jitter_ratio:
            delay *= 1 + self._rng.uniform(-self.jitter_ratio, self.jitter_ratio)
        return float(max(0.0, min(delay, self.max_delay)))

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempts))


class RetryScheduler(IBackgroundWorker):
    """Background worker that re-queues failed deliveries once they are due.

    Each pass:

    1. Marks retryable records that reached ``max_attempts`` as terminal
       (``Exhausted``) and logs them for operators; nothing is dropped.
    2. Hands retryable records with ``next_retry_at <= now`` to *enqueue*.

    Uses trigger + polling fallback. Call :meth:`trigger` to scan immediately;
    otherwise runs every ``poll_interval`` seconds. Storage failures stop the
    loop and are reported to *on_fatal*.
    """

    def __init__(
        self,
        ledger: IDeliveryLedger,
        policy: BackoffPolicy,
        enqueue: Callable[[list[DeliveryRecord]], Awaitable[Any] | Any],
        *,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._ledger = ledger
        self._policy = policy
        self._enqueue = enqueue
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._on_fatal = on_fatal
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._trigger = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._running

    def trigger(self) -> None:
        """Wake the scheduler immediately."""
        self._trigger.set()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("RetryScheduler started (poll_interval=%.1fs)", self._poll_interval)

    async def stop(self) -> None:
        self._running = False
        self._trigger.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._task, timeout=5.0)
            self._task = None
        logger.info("RetryScheduler stopped")

    async def run_once(self) -> int:
        """Execute a single scan (useful in tests). Returns records re-queued."""
        return int(
            await get_hook_registry().execute_all(
                "relay.retry.scan",
                {"retry.max_attempts": self._policy.max_attempts},
                self._scan,
            )
        )

    async def _run_loop(self) -> None:
        while self._running:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    self._trigger.wait(), timeout=self._poll_interval
                )
            self._trigger.clear()
            if not self._running:
                break
            try:
                await self.run_once()
            except StorageUnavailableError as exc:
                logger.error("RetryScheduler halted: %s", exc)
                self._running = False
                if self._on_fatal is not None:
                    self._on_fatal(exc)
                break
            except Exception:
                logger.exception("RetryScheduler error")

    async def _scan(self) -> int:
        await self._abandon_exhausted()

        due = await self._ledger.list_due_for_retry(
            self._clock(), self._policy.max_attempts, self._batch_size
        )
        if not due:
            return 0
        logger.debug("RetryScheduler: %d records due for retry", len(due))
        result = self._enqueue(due)
        if inspect.isawaitable(result):
            await result
        return len(due)

    async def _abandon_exhausted(self) -> int:
        exhausted = await self._ledger.list_exhausted(
            self._policy.max_attempts, self._batch_size
        )
        marked = 0
        for record in exhausted:
            try:
                await self._ledger.transition(
                    record.event_id,
                    DeliveryState.FAILED,
                    DeliveryState.FAILED,
                    expected_version=record.version,
                    failure_kind=FailureKind.EXHAUSTED,
                    last_error=record.last_error,
                )
            except StateConflictError:
                continue
            marked += 1
            logger.warning(
                "Delivery of %s (key=%s) abandoned after %d attempts: %s",
                record.event_id,
                record.event.source_record_key,
                record.attempts,
                record.last_error,
            )
        return marked
