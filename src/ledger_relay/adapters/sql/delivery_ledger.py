"""
SQLAlchemy implementation of the durable delivery ledger.
"""

from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from ...domain.delivery import (
    DeliveryCounts,
    DeliveryRecord,
    DeliveryState,
    FailureKind,
    apply_transition,
    count_bucket,
)
from ...domain.events import RelayEvent
from ...ports.delivery_ledger import IDeliveryLedger
from ...primitives.exceptions import (
    RecordNotFoundError,
    StateConflictError,
    StorageUnavailableError,
)
from .models import DeliveryRecordModel

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.sql.elements import ColumnElement

_STORAGE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def _aware(ts: datetime | None) -> datetime | None:
    if ts is None:
        return None
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class SQLAlchemyDeliveryLedger(IDeliveryLedger):
    """
    Delivery ledger backed by a relational table (``relay_deliveries``).

    Every operation runs in its own short transaction obtained from the
    session factory. ``transition`` reads the row, validates the move with
    the shared domain rules and then issues
    ``UPDATE ... WHERE event_id = :id AND state = :from AND version = :v``;
    a zero row count means another writer won the race.

    Connectivity and driver failures surface as ``StorageUnavailableError``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @contextlib.asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session, session.begin():
                yield session
        except _STORAGE_ERRORS as exc:
            raise StorageUnavailableError(f"Delivery ledger unavailable: {exc}") from exc

    # -- mapping ------------------------------------------------------------

    def _to_record(self, model: DeliveryRecordModel) -> DeliveryRecord:
        event = RelayEvent(
            id=model.event_id,
            source_record_key=model.source_record_key,
            event_type=model.event_type,
            payload=model.payload or {},
            observed_at=_aware(model.observed_at),
            source_tx_id=model.source_tx_id or "",
            event_name=model.event_name or "",
            block_number=model.block_number,
        )
        return DeliveryRecord(
            event=event,
            state=model.state,
            attempts=model.attempts,
            last_error=model.last_error,
            failure_kind=model.failure_kind,
            next_retry_at=_aware(model.next_retry_at),
            target_tx_ref=model.target_tx_ref,
            version=model.version,
            created_at=_aware(model.created_at),
            updated_at=_aware(model.updated_at),
            delivered_at=_aware(model.delivered_at),
        )

    @staticmethod
    def _delivery_values(record: DeliveryRecord) -> dict[str, Any]:
        return {
            "state": record.state,
            "attempts": record.attempts,
            "last_error": record.last_error,
            "failure_kind": record.failure_kind,
            "next_retry_at": record.next_retry_at,
            "target_tx_ref": record.target_tx_ref,
            "version": record.version,
            "updated_at": record.updated_at,
            "delivered_at": record.delivered_at,
        }

    # -- writes -------------------------------------------------------------

    async def put_if_absent(self, event: RelayEvent) -> bool:
        record = DeliveryRecord.pending(event, self._clock())
        model = DeliveryRecordModel(
            event_id=event.id,
            source_record_key=event.source_record_key,
            event_type=event.event_type,
            payload=event.payload,
            observed_at=event.observed_at,
            source_tx_id=event.source_tx_id,
            event_name=event.event_name,
            block_number=event.block_number,
            created_at=record.created_at,
            **self._delivery_values(record),
        )
        try:
            async with self._transaction() as session:
                session.add(model)
        except IntegrityError:
            return False
        return True

    async def transition(
        self,
        event_id: str,
        from_state: DeliveryState,
        to_state: DeliveryState,
        *,
        expected_version: int | None = None,
        **fields: Any,
    ) -> DeliveryRecord:
        async with self._transaction() as session:
            model = await session.get(DeliveryRecordModel, event_id)
            if model is None:
                raise RecordNotFoundError(event_id)
            current = self._to_record(model)
            if current.state != from_state or (
                expected_version is not None and current.version != expected_version
            ):
                raise StateConflictError(
                    event_id,
                    from_state,
                    current.state,
                    expected_version=expected_version,
                    actual_version=current.version,
                )

            updated = apply_transition(current, to_state, self._clock(), **fields)
            stmt = (
                update(DeliveryRecordModel)
                .where(
                    DeliveryRecordModel.event_id == event_id,
                    DeliveryRecordModel.state == from_state,
                    DeliveryRecordModel.version == current.version,
                )
                .values(**self._delivery_values(updated))
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            if result.rowcount != 1:
                raise StateConflictError(
                    event_id,
                    from_state,
                    current.state,
                    expected_version=current.version,
                    actual_version=None,
                )
            return updated

    async def purge(
        self,
        before: datetime,
        states: list[DeliveryState] | None = None,
    ) -> int:
        terminal = or_(
            DeliveryRecordModel.state == DeliveryState.DELIVERED,
            and_(
                DeliveryRecordModel.state == DeliveryState.FAILED,
                DeliveryRecordModel.failure_kind != FailureKind.TRANSIENT,
            ),
        )
        stmt = delete(DeliveryRecordModel).where(
            DeliveryRecordModel.state.in_(states or [DeliveryState.DELIVERED]),
            DeliveryRecordModel.updated_at < before,
            terminal,
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return int(result.rowcount or 0)

    # -- reads --------------------------------------------------------------

    async def get(self, event_id: str) -> DeliveryRecord | None:
        async with self._transaction() as session:
            model = await session.get(DeliveryRecordModel, event_id)
            return self._to_record(model) if model is not None else None

    async def _select(
        self,
        *criteria: ColumnElement[bool],
        order_by: Any,
        limit: int,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        stmt = (
            select(DeliveryRecordModel)
            .where(*criteria)
            .order_by(order_by)
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [self._to_record(m) for m in result.scalars().all()]

    async def list_pending(self, limit: int = 100) -> list[DeliveryRecord]:
        return await self._select(
            DeliveryRecordModel.state == DeliveryState.PENDING,
            order_by=DeliveryRecordModel.created_at,
            limit=limit,
        )

    async def list_in_flight(self, limit: int = 100) -> list[DeliveryRecord]:
        return await self._select(
            DeliveryRecordModel.state == DeliveryState.IN_FLIGHT,
            order_by=DeliveryRecordModel.created_at,
            limit=limit,
        )

    async def list_due_for_retry(
        self,
        now: datetime,
        max_attempts: int,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        return await self._select(
            DeliveryRecordModel.state == DeliveryState.FAILED,
            DeliveryRecordModel.failure_kind == FailureKind.TRANSIENT,
            DeliveryRecordModel.attempts < max_attempts,
            or_(
                DeliveryRecordModel.next_retry_at.is_(None),
                DeliveryRecordModel.next_retry_at <= now,
            ),
            order_by=DeliveryRecordModel.next_retry_at,
            limit=limit,
        )

    async def list_exhausted(
        self, max_attempts: int, limit: int = 100
    ) -> list[DeliveryRecord]:
        return await self._select(
            DeliveryRecordModel.state == DeliveryState.FAILED,
            DeliveryRecordModel.failure_kind == FailureKind.TRANSIENT,
            DeliveryRecordModel.attempts >= max_attempts,
            order_by=DeliveryRecordModel.updated_at,
            limit=limit,
        )

    async def find_by_state(
        self,
        states: list[DeliveryState],
        limit: int = 50,
        offset: int = 0,
    ) -> list[DeliveryRecord]:
        return await self._select(
            DeliveryRecordModel.state.in_(states),
            order_by=DeliveryRecordModel.updated_at.desc(),
            limit=limit,
            offset=offset,
        )

    async def count_by_state(self) -> DeliveryCounts:
        stmt = select(
            DeliveryRecordModel.state,
            DeliveryRecordModel.failure_kind,
            func.count().label("cnt"),
        ).group_by(DeliveryRecordModel.state, DeliveryRecordModel.failure_kind)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            rows = result.all()

        counts: dict[str, int] = {}
        for row in rows:
            bucket = count_bucket(row.state, row.failure_kind)
            counts[bucket] = counts.get(bucket, 0) + row.cnt
        return DeliveryCounts(**counts)
