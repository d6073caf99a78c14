from .delivery_ledger import InMemoryDeliveryLedger
from .event_source import InMemoryEventSource
from .target_ledger import InMemoryTargetLedger

__all__ = [
    "InMemoryDeliveryLedger",
    "InMemoryEventSource",
    "InMemoryTargetLedger",
]
