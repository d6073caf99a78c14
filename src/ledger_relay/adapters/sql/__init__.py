"""Durable delivery ledger on SQLAlchemy (async)."""

from .delivery_ledger import SQLAlchemyDeliveryLedger
from .json_type import JSONType
from .models import Base, DeliveryRecordModel

__all__ = [
    "Base",
    "DeliveryRecordModel",
    "JSONType",
    "SQLAlchemyDeliveryLedger",
]
