"""SQLAlchemyDeliveryLedger against a SQLite file database."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ledger_relay.adapters.sql import DeliveryRecordModel, SQLAlchemyDeliveryLedger
from ledger_relay.domain.delivery import DeliveryState, FailureKind
from ledger_relay.domain.events import RelayEvent, RelayEventType
from ledger_relay.primitives.exceptions import (
    InvalidTransitionError,
    RecordNotFoundError,
    StateConflictError,
    StorageUnavailableError,
)


def _make_event(event_id: str = "evt-1", key: str = "CAR10") -> RelayEvent:
    return RelayEvent(
        id=event_id,
        source_record_key=key,
        event_type=RelayEventType.CREATED,
        payload={"key": key, "make": "Honda", "owner": "Tomoko"},
        source_tx_id="tx-1",
        event_name="Created",
        block_number=12,
    )


async def _fail_transiently(
    ledger: SQLAlchemyDeliveryLedger, event_id: str, retry_at, attempts: int = 1
) -> None:
    for _ in range(attempts):
        record = await ledger.get(event_id)
        assert record is not None
        await ledger.transition(event_id, record.state, DeliveryState.IN_FLIGHT)
        await ledger.transition(
            event_id,
            DeliveryState.IN_FLIGHT,
            DeliveryState.FAILED,
            failure_kind=FailureKind.TRANSIENT,
            last_error="timeout",
            next_retry_at=retry_at,
        )


class TestPersistence:
    @pytest.mark.asyncio
    async def test_round_trips_event_and_state(
        self, sql_ledger: SQLAlchemyDeliveryLedger, clock
    ) -> None:
        event = _make_event()
        assert await sql_ledger.put_if_absent(event) is True

        record = await sql_ledger.get("evt-1")
        assert record is not None
        assert record.event.payload == event.payload
        assert record.event.event_type is RelayEventType.CREATED
        assert record.event.block_number == 12
        assert record.state == DeliveryState.PENDING
        assert record.created_at == clock()

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(
        self, sql_ledger: SQLAlchemyDeliveryLedger, session_factory
    ) -> None:
        assert await sql_ledger.put_if_absent(_make_event()) is True
        assert await sql_ledger.put_if_absent(_make_event()) is False

        async with session_factory() as session:
            rows = (await session.execute(select(DeliveryRecordModel))).scalars().all()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_ledger: SQLAlchemyDeliveryLedger) -> None:
        assert await sql_ledger.get("missing") is None


class TestTransition:
    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self, sql_ledger: SQLAlchemyDeliveryLedger, clock
    ) -> None:
        await sql_ledger.put_if_absent(_make_event())
        claimed = await sql_ledger.transition(
            "evt-1", DeliveryState.PENDING, DeliveryState.IN_FLIGHT, expected_version=0
        )
        assert claimed.attempts == 1

        clock.advance(2)
        delivered = await sql_ledger.transition(
            "evt-1",
            DeliveryState.IN_FLIGHT,
            DeliveryState.DELIVERED,
            expected_version=claimed.version,
            target_tx_ref="tx-000001",
        )

        stored = await sql_ledger.get("evt-1")
        assert stored is not None
        assert stored.state == delivered.state == DeliveryState.DELIVERED
        assert stored.target_tx_ref == "tx-000001"
        assert stored.delivered_at == clock()
        assert stored.version == 2

    @pytest.mark.asyncio
    async def test_state_conflict(self, sql_ledger: SQLAlchemyDeliveryLedger) -> None:
        await sql_ledger.put_if_absent(_make_event())
        await sql_ledger.transition("evt-1", DeliveryState.PENDING, DeliveryState.IN_FLIGHT)
        with pytest.raises(StateConflictError):
            await sql_ledger.transition(
                "evt-1", DeliveryState.PENDING, DeliveryState.IN_FLIGHT
            )

    @pytest.mark.asyncio
    async def test_version_conflict(self, sql_ledger: SQLAlchemyDeliveryLedger) -> None:
        await sql_ledger.put_if_absent(_make_event())
        with pytest.raises(StateConflictError):
            await sql_ledger.transition(
                "evt-1",
                DeliveryState.PENDING,
                DeliveryState.IN_FLIGHT,
                expected_version=5,
            )

    @pytest.mark.asyncio
    async def test_invalid_transition_not_persisted(
        self, sql_ledger: SQLAlchemyDeliveryLedger
    ) -> None:
        await sql_ledger.put_if_absent(_make_event())
        with pytest.raises(InvalidTransitionError):
            await sql_ledger.transition(
                "evt-1",
                DeliveryState.PENDING,
                DeliveryState.FAILED,
                failure_kind=FailureKind.TRANSIENT,
            )
        record = await sql_ledger.get("evt-1")
        assert record is not None
        assert record.state == DeliveryState.PENDING

    @pytest.mark.asyncio
    async def test_unknown_record(self, sql_ledger: SQLAlchemyDeliveryLedger) -> None:
        with pytest.raises(RecordNotFoundError):
            await sql_ledger.transition(
                "missing", DeliveryState.PENDING, DeliveryState.IN_FLIGHT
            )


class TestQueries:
    @pytest.mark.asyncio
    async def test_retry_and_exhaustion_queries(
        self, sql_ledger: SQLAlchemyDeliveryLedger, clock
    ) -> None:
        now = clock()
        for event_id in ("due", "later", "spent", "pending"):
            await sql_ledger.put_if_absent(_make_event(event_id))
        await _fail_transiently(sql_ledger, "due", now)
        await _fail_transiently(sql_ledger, "later", now + timedelta(minutes=5))
        await _fail_transiently(sql_ledger, "spent", now, attempts=3)

        due = await sql_ledger.list_due_for_retry(now, max_attempts=3)
        assert [r.event_id for r in due] == ["due"]
        assert due[0].next_retry_at == now

        exhausted = await sql_ledger.list_exhausted(max_attempts=3)
        assert [r.event_id for r in exhausted] == ["spent"]

        pending = await sql_ledger.list_pending()
        assert [r.event_id for r in pending] == ["pending"]

    @pytest.mark.asyncio
    async def test_list_in_flight(self, sql_ledger: SQLAlchemyDeliveryLedger) -> None:
        await sql_ledger.put_if_absent(_make_event("a"))
        await sql_ledger.put_if_absent(_make_event("b"))
        await sql_ledger.transition("b", DeliveryState.PENDING, DeliveryState.IN_FLIGHT)
        assert [r.event_id for r in await sql_ledger.list_in_flight()] == ["b"]

    @pytest.mark.asyncio
    async def test_find_by_state_and_counts(
        self, sql_ledger: SQLAlchemyDeliveryLedger, clock
    ) -> None:
        for event_id in ("a", "b", "c"):
            await sql_ledger.put_if_absent(_make_event(event_id))
            clock.advance(1)
        await _fail_transiently(sql_ledger, "b", clock())
        await sql_ledger.transition(
            "c",
            DeliveryState.PENDING,
            DeliveryState.FAILED,
            failure_kind=FailureKind.MALFORMED_PAYLOAD,
        )

        failed = await sql_ledger.find_by_state([DeliveryState.FAILED], limit=10)
        assert {r.event_id for r in failed} == {"b", "c"}

        counts = await sql_ledger.count_by_state()
        assert (counts.pending, counts.failed, counts.abandoned) == (1, 1, 1)
        assert counts.total == 3

    @pytest.mark.asyncio
    async def test_purge_only_terminal(
        self, sql_ledger: SQLAlchemyDeliveryLedger, clock
    ) -> None:
        for event_id in ("done", "retry", "pending"):
            await sql_ledger.put_if_absent(_make_event(event_id))
        await sql_ledger.transition("done", DeliveryState.PENDING, DeliveryState.IN_FLIGHT)
        await sql_ledger.transition(
            "done",
            DeliveryState.IN_FLIGHT,
            DeliveryState.DELIVERED,
            target_tx_ref="tx-1",
        )
        await _fail_transiently(sql_ledger, "retry", clock())
        clock.advance(60)

        deleted = await sql_ledger.purge(clock(), list(DeliveryState))

        assert deleted == 1
        assert await sql_ledger.get("done") is None
        assert await sql_ledger.get("retry") is not None
        assert await sql_ledger.get("pending") is not None


class TestAvailability:
    @pytest.mark.asyncio
    async def test_unreachable_database_raises_storage_unavailable(
        self, tmp_path
    ) -> None:
        missing = tmp_path / "no-such-dir" / "relay.db"
        engine = create_async_engine(f"sqlite+aiosqlite:///{missing}")
        ledger = SQLAlchemyDeliveryLedger(async_sessionmaker(engine))
        try:
            with pytest.raises(StorageUnavailableError):
                await ledger.put_if_absent(_make_event())
            with pytest.raises(StorageUnavailableError):
                await ledger.count_by_state()
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_missing_table_raises_storage_unavailable(self, tmp_path) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        ledger = SQLAlchemyDeliveryLedger(async_sessionmaker(engine))
        try:
            with pytest.raises(StorageUnavailableError):
                await ledger.get("evt-1")
        finally:
            await engine.dispose()
