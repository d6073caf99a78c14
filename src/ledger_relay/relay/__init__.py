"""Relay engine: ingestion, translation, submission, retry and coordination."""

from __future__ import annotations

from .admin import DeliveryAdminService, DeliveryStatistics
from .coordinator import RelayCoordinator, RelayStatus
from .ingestor import IngestOutcome, Ingestor, decode_payload
from .retry import BackoffPolicy, RetryScheduler
from .submitter import Submitter, classify_error
from .translator import (
    UNDECODABLE_KEY,
    TargetOperation,
    TargetTransaction,
    Translator,
)

__all__ = [
    "UNDECODABLE_KEY",
    "BackoffPolicy",
    "DeliveryAdminService",
    "DeliveryStatistics",
    "IngestOutcome",
    "Ingestor",
    "RelayCoordinator",
    "RelayStatus",
    "RetryScheduler",
    "Submitter",
    "TargetOperation",
    "TargetTransaction",
    "Translator",
    "classify_error",
    "decode_payload",
]
