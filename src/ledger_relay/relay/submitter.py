"""Submitter — one bounded target-ledger write with error classification."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..primitives.exceptions import (
    TargetError,
    TargetPermanentError,
    TargetTransientError,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..ports.target_ledger import ITargetLedger
    from .translator import TargetTransaction

logger = logging.getLogger("ledger_relay.submitter")

# Failures where the write may or may not have been applied.
AMBIGUOUS_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
)


def classify_error(exc: BaseException) -> TargetError:
    """Map an arbitrary submit failure onto the relay's target error taxonomy.

    Already-classified errors pass through. Everything else (timeouts,
    connection failures, unexpected SDK errors) is treated as transient: an
    unknown failure is retried with backoff rather than dropped.
    """
    if isinstance(exc, TargetError):
        return exc
    if isinstance(exc, AMBIGUOUS_ERRORS):
        return TargetTransientError(f"{type(exc).__name__}: {exc}".rstrip(": "))
    return TargetTransientError(f"unexpected {type(exc).__name__}: {exc}")


class Submitter:
    """Invokes the target write for a ``TargetTransaction`` exactly once per call.

    Args:
        target: Target ledger adapter.
        timeout: Upper bound in seconds for one write (``None`` disables it).
        verify_ambiguous: After a timeout or connection reset, query the
            target and treat the attempt as delivered when it already holds
            this event's ``relay_event_id`` for the record key.
        classifier: Override for :func:`classify_error`, e.g. to recognise
            SDK-specific rejection errors as permanent.
    """

    def __init__(
        self,
        target: ITargetLedger,
        *,
        timeout: float | None = 30.0,
        verify_ambiguous: bool = True,
        classifier: Callable[[BaseException], TargetError] | None = None,
    ) -> None:
        self._target = target
        self._timeout = timeout
        self._verify_ambiguous = verify_ambiguous
        self._classify = classifier or classify_error

    async def submit(self, transaction: TargetTransaction) -> str:
        """Submit *transaction* and return the target transaction reference.

        Raises:
            TargetTransientError: Retryable failure.
            TargetPermanentError: Rejected by the target; never retried.
        """
        try:
            if self._timeout is None:
                return await self._target.submit(transaction)
            return await asyncio.wait_for(
                self._target.submit(transaction), timeout=self._timeout
            )
        except AMBIGUOUS_ERRORS as exc:
            tx_ref = await self._verify(transaction, exc)
            if tx_ref is not None:
                return tx_ref
            raise self._classify(exc) from exc
        except (TargetTransientError, TargetPermanentError):
            raise
        except Exception as exc:
            classified = self._classify(exc)
            if classified is exc:
                raise
            raise classified from exc

    async def _verify(
        self, transaction: TargetTransaction, exc: BaseException
    ) -> str | None:
        if not self._verify_ambiguous:
            return None
        try:
            stored = await self._target.query(transaction.record_key)
        except Exception as query_exc:  # noqa: BLE001
            logger.debug(
                "Verification query for %s failed: %s",
                transaction.event_id,
                query_exc,
            )
            return None

        if transaction.is_delete:
            applied = stored is None
        else:
            applied = (
                stored is not None
                and stored.get("relay_event_id") == transaction.event_id
            )
        if not applied:
            return None

        logger.info(
            "Ambiguous failure for %s (%s) but target already applied it",
            transaction.event_id,
            type(exc).__name__,
        )
        if stored is not None and stored.get("tx_ref"):
            return str(stored["tx_ref"])
        return f"verified:{transaction.event_id}"
