"""ledger-relay — reliable event relay from one ledger to another.

At-least-once delivery without duplicate side effects, durable delivery
state, retry with backoff and restart recovery. The durable SQL ledger
lives in ``ledger_relay.adapters.sql``.
"""

from __future__ import annotations

# ── Adapters ────────────────────────────────────────────────────
from .adapters.memory import (
    InMemoryDeliveryLedger,
    InMemoryEventSource,
    InMemoryTargetLedger,
)
from .correlation import RelayEventIdFilter, bind_relay_event, get_relay_event_id

# ── Domain ──────────────────────────────────────────────────────
from .domain import (
    DeliveryCounts,
    DeliveryRecord,
    DeliveryState,
    FailureKind,
    RawNotification,
    RelayEvent,
    RelayEventType,
    derive_event_id,
)
from .instrumentation import (
    HookRegistration,
    HookRegistry,
    InstrumentationHook,
    get_hook_registry,
    set_hook_registry,
)

# ── Ports ───────────────────────────────────────────────────────
from .ports import IBackgroundWorker, IDeliveryLedger, IEventSource, ITargetLedger

# ── Exceptions ──────────────────────────────────────────────────
from .primitives.exceptions import (
    ConcurrencyError,
    ConfigurationError,
    DomainError,
    InfrastructureError,
    InvalidTransitionError,
    MalformedPayloadError,
    PersistenceError,
    RecordNotFoundError,
    RelayError,
    StateConflictError,
    StorageUnavailableError,
    TargetError,
    TargetPermanentError,
    TargetTransientError,
)

# ── Relay ───────────────────────────────────────────────────────
from .relay import (
    BackoffPolicy,
    DeliveryAdminService,
    DeliveryStatistics,
    IngestOutcome,
    Ingestor,
    RelayCoordinator,
    RelayStatus,
    RetryScheduler,
    Submitter,
    TargetOperation,
    TargetTransaction,
    Translator,
)
from .settings import RelaySettings

__version__ = "0.1.0"

__all__ = [
    "BackoffPolicy",
    "ConcurrencyError",
    "ConfigurationError",
    "DeliveryAdminService",
    "DeliveryCounts",
    "DeliveryRecord",
    "DeliveryState",
    "DeliveryStatistics",
    "DomainError",
    "FailureKind",
    "HookRegistration",
    "HookRegistry",
    "IBackgroundWorker",
    "IDeliveryLedger",
    "IEventSource",
    "ITargetLedger",
    "InMemoryDeliveryLedger",
    "InMemoryEventSource",
    "InMemoryTargetLedger",
    "InfrastructureError",
    "IngestOutcome",
    "Ingestor",
    "InstrumentationHook",
    "InvalidTransitionError",
    "MalformedPayloadError",
    "PersistenceError",
    "RawNotification",
    "RecordNotFoundError",
    "RelayCoordinator",
    "RelayError",
    "RelayEvent",
    "RelayEventIdFilter",
    "RelayEventType",
    "RelaySettings",
    "RelayStatus",
    "RetryScheduler",
    "StateConflictError",
    "StorageUnavailableError",
    "Submitter",
    "TargetError",
    "TargetPermanentError",
    "TargetOperation",
    "TargetTransaction",
    "TargetTransientError",
    "Translator",
    "bind_relay_event",
    "derive_event_id",
    "get_hook_registry",
    "get_relay_event_id",
    "set_hook_registry",
]
