"""RawNotification and RelayEvent — what the source emits and what the relay tracks."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_ID_SEPARATOR = "\x1f"


class RelayEventType(str, Enum):
    """Kind of state change observed on the source ledger."""

    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


class RawNotification(BaseModel):
    """A ledger-emitted notification as delivered by the event source adapter.

    The feed is at-least-once: the same notification may arrive again, and
    notifications may arrive out of source-commit order.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., description="Emitting contract, e.g. 'fabcar'")
    tx_id: str = Field(..., min_length=1)
    event_name: str = Field(..., min_length=1)
    sequence: int = Field(default=0, ge=0, description="Event index within the tx")
    block_number: int | None = None
    payload: bytes | str | dict[str, Any] = Field(default_factory=dict)
    record_key: str | None = None
    ack_token: str | None = None


def derive_event_id(notification: RawNotification) -> str:
    """Return the deterministic dedup id for *notification*.

    Built only from the source identity of the event (emitting contract,
    transaction id, event name, sequence), never from delivery metadata, so a
    redelivered notification always resolves to the same id.
    """
    parts = (
        notification.source_id,
        notification.tx_id,
        notification.event_name,
        str(notification.sequence),
    )
    return hashlib.sha256(_ID_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


class RelayEvent(BaseModel):
    """Immutable, normalized record of one logical source-ledger event."""

    model_config = ConfigDict(frozen=True)

    id: str
    source_record_key: str
    event_type: RelayEventType
    payload: dict[str, Any] = Field(default_factory=dict)
    observed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source_tx_id: str = ""
    event_name: str = ""
    block_number: int | None = None
