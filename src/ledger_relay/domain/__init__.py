"""Domain: relay events and the delivery state machine."""

from __future__ import annotations

from .delivery import (
    DeliveryCounts,
    DeliveryRecord,
    DeliveryState,
    FailureKind,
    apply_transition,
    check_transition,
    count_bucket,
)
from .events import RawNotification, RelayEvent, RelayEventType, derive_event_id

__all__ = [
    "DeliveryCounts",
    "DeliveryRecord",
    "DeliveryState",
    "FailureKind",
    "RawNotification",
    "RelayEvent",
    "RelayEventType",
    "apply_transition",
    "check_transition",
    "count_bucket",
    "derive_event_id",
]
