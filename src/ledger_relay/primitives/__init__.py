"""Primitives: exceptions."""

from __future__ import annotations

from .exceptions import (
    ConcurrencyError,
    ConfigurationError,
    DomainError,
    InfrastructureError,
    InvalidTransitionError,
    MalformedPayloadError,
    PersistenceError,
    RecordNotFoundError,
    RelayError,
    StateConflictError,
    StorageUnavailableError,
    TargetError,
    TargetPermanentError,
    TargetTransientError,
)

__all__ = [
    "ConcurrencyError",
    "ConfigurationError",
    "DomainError",
    "InfrastructureError",
    "InvalidTransitionError",
    "MalformedPayloadError",
    "PersistenceError",
    "RecordNotFoundError",
    "RelayError",
    "StateConflictError",
    "StorageUnavailableError",
    "TargetError",
    "TargetPermanentError",
    "TargetTransientError",
]
