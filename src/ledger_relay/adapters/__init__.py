"""Adapters: in-memory fakes and the SQLAlchemy-backed delivery ledger.

The SQL adapter lives in ``ledger_relay.adapters.sql`` and is imported
explicitly so in-memory use does not require a database driver.
"""

from .memory import InMemoryDeliveryLedger, InMemoryEventSource, InMemoryTargetLedger

__all__ = [
    "InMemoryDeliveryLedger",
    "InMemoryEventSource",
    "InMemoryTargetLedger",
]
