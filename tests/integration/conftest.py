"""Fixtures for the SQLAlchemy delivery ledger (SQLite via aiosqlite)."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from ledger_relay.adapters.sql import Base, SQLAlchemyDeliveryLedger


@pytest.fixture()
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
def sql_ledger(session_factory, clock) -> SQLAlchemyDeliveryLedger:
    return SQLAlchemyDeliveryLedger(session_factory, clock=clock)
