"""ITargetLedger — transaction boundary of the target ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..relay.translator import TargetTransaction


@runtime_checkable
class ITargetLedger(Protocol):
    """Write and query operations exposed by the target ledger.

    ``submit`` must have upsert semantics keyed by ``record_key``: invoking it
    twice with the same arguments leaves the same state as invoking it once.
    The relay cannot tell a lost response from a lost request, so this is an
    integration prerequisite rather than something the relay can enforce.
    """

    async def submit(self, transaction: TargetTransaction) -> str:
        """Invoke the transaction and return the target transaction reference.

        Raises:
            TargetTransientError: The target was unreachable or timed out.
            TargetPermanentError: The target's contract rejected the request.
        """
        ...

    async def query(self, record_key: str) -> dict[str, Any] | None:
        """Return the current state stored for *record_key*, or ``None``."""
        ...
