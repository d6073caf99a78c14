"""Relay event correlation — which event the current task is working on."""

from __future__ import annotations

import contextlib
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

_relay_event_id: ContextVar[str | None] = ContextVar("relay_event_id", default=None)


def get_relay_event_id() -> str | None:
    """Get the relay event id bound to the current context."""
    return _relay_event_id.get()


@contextlib.contextmanager
def bind_relay_event(event_id: str) -> Iterator[None]:
    """Bind *event_id* to the current context for the duration of the block."""
    token = _relay_event_id.set(event_id)
    try:
        yield
    finally:
        _relay_event_id.reset(token)


class RelayEventIdFilter(logging.Filter):
    """Logging filter that stamps records with ``relay_event_id``.

    Usage::

        handler.addFilter(RelayEventIdFilter())
        handler.setFormatter(logging.Formatter("%(relay_event_id)s %(message)s"))
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.relay_event_id = get_relay_event_id() or "-"
        return True
