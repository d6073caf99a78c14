"""RelaySettings — validated configuration for the relay engine.

Loading settings from files, environment or a CLI belongs to the embedding
application; it builds this model, e.g. ``RelaySettings(**mapping)``.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .domain.events import RelayEventType


def _default_event_types() -> dict[str, RelayEventType]:
    return {
        "Created": RelayEventType.CREATED,
        "Updated": RelayEventType.UPDATED,
        "Deleted": RelayEventType.DELETED,
    }


class RelaySettings(BaseModel):
    """Tunables for ingestion, delivery, retry and shutdown."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    worker_count: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=8, ge=1, description="Ceiling incl. first try")
    base_delay: float = Field(default=0.5, ge=0, description="Backoff base (s)")
    max_delay: float = Field(default=60.0, ge=0, description="Backoff cap (s)")
    jitter_ratio: float = Field(default=0.2, ge=0, le=0.33)
    poll_interval: float = Field(default=1.0, gt=0)
    batch_size: int = Field(default=100, ge=1)
    submit_timeout: float | None = Field(default=30.0, gt=0)
    shutdown_timeout: float = Field(default=10.0, ge=0)
    resubscribe_delay: float = Field(
        default=1.0, gt=0, description="First wait before re-subscribing a feed (s)"
    )
    resubscribe_max_delay: float = Field(default=30.0, gt=0)
    shard_by_key: bool = Field(
        default=False,
        description="Route every event of a record key to one worker, in order",
    )
    verify_ambiguous: bool = Field(
        default=True,
        description="Query the target after a timeout before scheduling a retry",
    )
    key_field: str = Field(default="key", min_length=1)
    event_types: dict[str, RelayEventType] = Field(default_factory=_default_event_types)

    @model_validator(mode="after")
    def _check_delays(self) -> RelaySettings:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay must be <= max_delay")
        if self.resubscribe_delay > self.resubscribe_max_delay:
            raise ValueError("resubscribe_delay must be <= resubscribe_max_delay")
        if not self.event_types:
            raise ValueError("event_types must map at least one event name")
        return self
