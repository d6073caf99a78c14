from .background_worker import IBackgroundWorker
from .delivery_ledger import IDeliveryLedger
from .event_source import IEventSource
from .target_ledger import ITargetLedger

__all__ = [
    "IBackgroundWorker",
    "IDeliveryLedger",
    "IEventSource",
    "ITargetLedger",
]
