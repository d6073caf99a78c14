from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ...domain.delivery import DeliveryState, FailureKind
from ...domain.events import RelayEventType
from .json_type import JSONType


class Base(DeclarativeBase):
    """Declarative base for the relay's tables."""


class DeliveryRecordModel(Base):
    """
    One row per relay event: the immutable event columns plus its
    mutable delivery state. ``version`` backs the compare-and-set update.
    """

    __tablename__ = "relay_deliveries"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source_record_key: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[RelayEventType] = mapped_column(Enum(RelayEventType))
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    observed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    source_tx_id: Mapped[str] = mapped_column(String, default="")
    event_name: Mapped[str] = mapped_column(String, default="")
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    state: Mapped[DeliveryState] = mapped_column(
        Enum(DeliveryState), default=DeliveryState.PENDING, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    failure_kind: Mapped[FailureKind | None] = mapped_column(
        Enum(FailureKind), nullable=True
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    target_tx_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_relay_deliveries_retry", "state", "failure_kind", "next_retry_at"),
        Index("ix_relay_deliveries_pending", "state", "created_at"),
    )
