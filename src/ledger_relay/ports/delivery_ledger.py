"""IDeliveryLedger — durable record of every relay event and its delivery state."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    import builtins
    from datetime import datetime

    from ..domain.delivery import DeliveryCounts, DeliveryRecord, DeliveryState
    from ..domain.events import RelayEvent


@runtime_checkable
class IDeliveryLedger(Protocol):
    """Source of truth for deduplication, delivery progress and resumption.

    ``transition`` is the single synchronization point of the relay: it is a
    compare-and-set on ``(event_id, from_state[, version])`` and must be
    atomic per record, which prevents two workers from double-submitting the
    same event.

    ``InMemoryDeliveryLedger`` ships in ``adapters.memory`` for unit tests;
    ``SQLAlchemyDeliveryLedger`` in ``adapters.sql`` is durable.

    Operational queries (used by the coordinator and retry scheduler):
        - ``list_pending`` / ``list_in_flight`` / ``list_due_for_retry``
        - ``list_exhausted`` — retryable records that hit the attempt ceiling.

    Administrative queries (used by ``DeliveryAdminService``):
        - ``find_by_state`` — paginated listing.
        - ``count_by_state`` — counts for the status surface.
        - ``purge`` — explicit retention of terminal records.

    Every method raises ``StorageUnavailableError`` when the backing store
    cannot be reached.
    """

    async def put_if_absent(self, event: RelayEvent) -> bool:
        """Create a ``Pending`` record for *event* unless its id is already known.

        Returns:
            True if a new record was created, False for a duplicate id.
        """
        ...

    async def get(self, event_id: str) -> DeliveryRecord | None:
        """Fetch a single record by event id."""
        ...

    async def transition(
        self,
        event_id: str,
        from_state: DeliveryState,
        to_state: DeliveryState,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> DeliveryRecord:
        """Atomically move a record from *from_state* to *to_state*.

        Args:
            event_id: Record to update.
            from_state: State the caller observed; the update only applies if
                the stored state still matches.
            to_state: Target state.
            expected_version: Optional stricter guard on the record version.
            **fields: ``last_error``, ``failure_kind``, ``next_retry_at``,
                ``target_tx_ref`` or ``delivered_at``.

        Returns:
            The record after the transition.

        Raises:
            RecordNotFoundError: Unknown *event_id*.
            StateConflictError: Stored state or version differs.
            InvalidTransitionError: The move breaks the monotonic lifecycle.
        """
        ...

    async def list_pending(self, limit: int = 100) -> builtins.list[DeliveryRecord]:
        """Return ``Pending`` records, oldest first."""
        ...

    async def list_in_flight(self, limit: int = 100) -> builtins.list[DeliveryRecord]:
        """Return ``InFlight`` records, oldest first."""
        ...

    async def list_due_for_retry(
        self,
        now: datetime,
        max_attempts: int,
        limit: int = 100,
    ) -> builtins.list[DeliveryRecord]:
        """Return retryable ``Failed`` records with ``attempts < max_attempts``
        and ``next_retry_at <= now``, earliest retry first."""
        ...

    async def list_exhausted(
        self, max_attempts: int, limit: int = 100
    ) -> builtins.list[DeliveryRecord]:
        """Return retryable ``Failed`` records with ``attempts >= max_attempts``."""
        ...

    async def find_by_state(
        self,
        states: builtins.list[DeliveryState],
        limit: int = 50,
        offset: int = 0,
    ) -> builtins.list[DeliveryRecord]:
        """Return records in any of *states*, most recently updated first."""
        ...

    async def count_by_state(self) -> DeliveryCounts:
        """Return record counts; terminal failures are counted as abandoned."""
        ...

    async def purge(
        self,
        before: datetime,
        states: builtins.list[DeliveryState] | None = None,
    ) -> int:
        """Delete terminal records last updated before *before*.

        Args:
            before: UTC threshold.
            states: Restrict to these states (default: ``Delivered`` only).
                Non-terminal records are never purged.

        Returns:
            Number of records deleted.
        """
        ...
