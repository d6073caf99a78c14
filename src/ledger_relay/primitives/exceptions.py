"""Domain and infrastructure exceptions for ledger-relay."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..domain.delivery import DeliveryState


class RelayError(Exception):
    """Root exception for the entire relay engine."""


class DomainError(RelayError):
    """Base class for all domain-related errors."""


class ConcurrencyError(RelayError):
    """Base class for all concurrency-related conflicts."""


class InfrastructureError(RelayError):
    """Base class for all infrastructure-related errors."""


class PersistenceError(InfrastructureError):
    """Base class for all persistence-related errors."""


class ConfigurationError(RelayError, ValueError):
    """Raised when relay settings are invalid or inconsistent."""


# ── Delivery ledger ──────────────────────────────────────────────────


class RecordNotFoundError(DomainError):
    """Raised when no delivery record exists for an event id."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"DeliveryRecord with id={event_id!r} not found")


class StateConflictError(ConcurrencyError):
    """Raised when a compare-and-set transition finds an unexpected state.

    Another worker already advanced the record; callers treat this as a no-op.
    """

    def __init__(
        self,
        event_id: str,
        expected: DeliveryState,
        actual: DeliveryState,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.event_id = event_id
        self.expected = expected
        self.actual = actual
        self.expected_version = expected_version
        self.actual_version = actual_version

        msg = (
            f"Record {event_id!r} is {actual.value}, expected {expected.value}"
        )
        if expected_version is not None and expected_version != actual_version:
            msg += f" (version {actual_version}, expected {expected_version})"
        super().__init__(msg)


class InvalidTransitionError(DomainError):
    """Raised when a transition would break the monotonic delivery lifecycle.

    E.g. leaving ``Delivered``, or retrying a terminal failure.
    """


class StorageUnavailableError(PersistenceError):
    """Raised when durable delivery state cannot be read or written.

    Fatal to the affected operation; the coordinator halts on it.
    """


# ── Translation / submission ─────────────────────────────────────────


class MalformedPayloadError(DomainError):
    """Raised when an event payload cannot be decoded into the target shape.

    Terminal: retrying a structurally invalid payload cannot succeed.
    """

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Malformed payload for event {event_id!r}: {reason}")


class TargetError(InfrastructureError):
    """Base class for failures reported by the target ledger."""


class TargetTransientError(TargetError):
    """Network, timeout or target-unavailable failure. Eligible for retry."""


class TargetPermanentError(TargetError):
    """Rejected by target business logic. Never retried."""
