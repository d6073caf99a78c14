"""InMemoryTargetLedger — upsert-semantics fake of the target ledger for tests."""

from __future__ import annotations

import asyncio
import itertools
from typing import TYPE_CHECKING, Any

from ...ports.target_ledger import ITargetLedger
from ...primitives.exceptions import TargetPermanentError, TargetTransientError

if TYPE_CHECKING:
    from ...relay.translator import TargetTransaction


class InMemoryTargetLedger(ITargetLedger):
    """In-memory implementation of ``ITargetLedger``.

    Writes are upserts keyed by record key, so replaying a transaction is
    harmless. Failure modes can be switched on to exercise the relay:

    - ``set_available(False)``: every call raises ``TargetTransientError``.
    - ``reject(key, reason)``: writes for *key* raise ``TargetPermanentError``.
    - ``lose_responses(n)``: the next *n* writes are applied but the caller
      sees a ``TimeoutError`` (the ambiguous case).
    - ``latency``: seconds each write takes (for cancellation tests).
    """

    def __init__(self, *, latency: float = 0.0) -> None:
        self._state: dict[str, dict[str, Any]] = {}
        self._available = True
        self._rejections: dict[str, str] = {}
        self._lost_responses = 0
        self._sequence = itertools.count(1)
        self.latency = latency
        self.submitted: list[TargetTransaction] = []

    async def submit(self, transaction: TargetTransaction) -> str:
        self.submitted.append(transaction)
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self._available:
            raise TargetTransientError("target ledger unavailable")
        reason = self._rejections.get(transaction.record_key)
        if reason is not None:
            raise TargetPermanentError(reason)

        tx_ref = f"tx-{next(self._sequence):06d}"
        if transaction.is_delete:
            self._state.pop(transaction.record_key, None)
        else:
            self._state[transaction.record_key] = {
                **transaction.arguments,
                "tx_ref": tx_ref,
            }

        if self._lost_responses > 0:
            self._lost_responses -= 1
            raise TimeoutError("response lost")
        return tx_ref

    async def query(self, record_key: str) -> dict[str, Any] | None:
        if not self._available:
            raise TargetTransientError("target ledger unavailable")
        stored = self._state.get(record_key)
        return dict(stored) if stored is not None else None

    # ── Test helpers ─────────────────────────────────────────────

    def set_available(self, available: bool) -> None:
        self._available = available

    def reject(self, record_key: str, reason: str = "rejected by contract") -> None:
        self._rejections[record_key] = reason

    def lose_responses(self, count: int = 1) -> None:
        self._lost_responses = count

    def record(self, record_key: str) -> dict[str, Any] | None:
        return self._state.get(record_key)

    def submissions_for(self, event_id: str) -> int:
        return sum(1 for tx in self.submitted if tx.event_id == event_id)
