"""DeliveryAdminService — operator actions over delivery records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..domain.delivery import DeliveryState, FailureKind
from ..primitives.exceptions import (
    InvalidTransitionError,
    RecordNotFoundError,
    StateConflictError,
)

if TYPE_CHECKING:
    from datetime import datetime

    from ..domain.delivery import DeliveryCounts, DeliveryRecord
    from ..ports.delivery_ledger import IDeliveryLedger

logger = logging.getLogger("ledger_relay.admin")

_ALL_STATES = list(DeliveryState)


@dataclass(frozen=True)
class DeliveryStatistics:
    """Snapshot of delivery counts, suitable for dashboards and health checks.

    Attributes:
        counts: The per-bucket counts reported by the ledger.
        total: Sum of all buckets.
        needs_attention: Records an operator has to look at (terminal
            failures of any kind).
    """

    counts: DeliveryCounts
    total: int
    needs_attention: int


class DeliveryAdminService:
    """Administrative service for delivery records.

    Separate from ``RelayCoordinator``, which owns the operational path
    (dispatch, submit, retry). Nothing here submits to the target.

    Example::

        admin = DeliveryAdminService(ledger)

        stats = await admin.get_statistics()
        failed = await admin.list_records([DeliveryState.FAILED], limit=20)

        # Give up on a record that keeps failing transiently
        await admin.abandon(failed[0].event_id, reason="target key retired")

        # Retention: drop delivered records older than a cutoff
        deleted = await admin.purge(before=cutoff)
    """

    def __init__(self, ledger: IDeliveryLedger) -> None:
        self._ledger = ledger

    async def list_records(
        self,
        states: list[DeliveryState] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        """Return records in *states* (all states if empty), newest update first."""
        return await self._ledger.find_by_state(
            states or _ALL_STATES, limit=limit, offset=offset
        )

    async def get(self, event_id: str) -> DeliveryRecord:
        record = await self._ledger.get(event_id)
        if record is None:
            raise RecordNotFoundError(event_id)
        return record

    async def get_statistics(self) -> DeliveryStatistics:
        counts = await self._ledger.count_by_state()
        return DeliveryStatistics(
            counts=counts, total=counts.total, needs_attention=counts.abandoned
        )

    async def abandon(
        self, event_id: str, reason: str = "abandoned by operator"
    ) -> DeliveryRecord:
        """Make a retryable ``Failed`` record terminal so it is never retried.

        Raises:
            RecordNotFoundError: Unknown *event_id*.
            InvalidTransitionError: The record is not retryable ``Failed``.
            StateConflictError: The record changed concurrently.
        """
        record = await self.get(event_id)
        if not record.is_retryable:
            raise InvalidTransitionError(
                f"Only retryable Failed records can be abandoned; "
                f"{event_id!r} is {record.state.value}"
            )
        updated = await self._ledger.transition(
            event_id,
            DeliveryState.FAILED,
            DeliveryState.FAILED,
            expected_version=record.version,
            failure_kind=FailureKind.ABANDONED,
            last_error=reason,
        )
        logger.warning("Delivery of %s abandoned: %s", event_id, reason)
        return updated

    async def bulk_abandon(
        self, event_ids: list[str], reason: str = "abandoned by operator"
    ) -> tuple[int, int]:
        """Abandon several records; returns ``(abandoned, skipped)``."""
        abandoned = skipped = 0
        for event_id in event_ids:
            try:
                await self.abandon(event_id, reason)
            except (RecordNotFoundError, InvalidTransitionError, StateConflictError) as exc:
                logger.debug("bulk_abandon: skipping %s (%s)", event_id, exc)
                skipped += 1
                continue
            abandoned += 1
        return abandoned, skipped

    async def purge(
        self,
        before: datetime,
        states: list[DeliveryState] | None = None,
    ) -> int:
        """Delete terminal records last updated before *before*.

        Defaults to ``Delivered`` records only. Pending, InFlight and
        retryable records are never deleted.
        """
        deleted = await self._ledger.purge(before, states)
        if deleted:
            logger.info("Purged %d delivery records older than %s", deleted, before)
        return deleted
