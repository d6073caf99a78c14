"""Shared fixtures for ledger-relay tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ledger_relay.adapters.memory import (
    InMemoryDeliveryLedger,
    InMemoryEventSource,
    InMemoryTargetLedger,
)
from ledger_relay.instrumentation import set_hook_registry
from ledger_relay.settings import RelaySettings


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryDeliveryLedger:
    return InMemoryDeliveryLedger(clock=clock)


@pytest.fixture
def source() -> InMemoryEventSource:
    return InMemoryEventSource()


@pytest.fixture
def target() -> InMemoryTargetLedger:
    return InMemoryTargetLedger()


@pytest.fixture
def fast_settings() -> RelaySettings:
    """Settings with millisecond timings and no jitter."""
    return RelaySettings(
        worker_count=2,
        max_attempts=5,
        base_delay=0.01,
        max_delay=0.05,
        jitter_ratio=0.0,
        poll_interval=0.01,
        submit_timeout=1.0,
        shutdown_timeout=1.0,
    )


@pytest.fixture(autouse=True)
def _reset_hook_registry():
    yield
    set_hook_registry(None)
