"""Instrumentation hooks around relay operations (tracing, metrics, audit).

Operations emitted by the relay:

- ``relay.ingest.<event_name>`` — one notification through the ingestor.
- ``relay.submit.<event_type>`` — one translate-and-submit attempt.
- ``relay.retry.scan`` — one retry-scheduler pass.
"""

from __future__ import annotations

import fnmatch
import logging
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger("ledger_relay.instrumentation")


@runtime_checkable
class InstrumentationHook(Protocol):
    """Protocol for instrumentation hooks."""

    async def __call__(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Wrap an operation with instrumentation."""
        ...


class HookRegistration:
    """A registered hook with operation-pattern and event-type filtering."""

    def __init__(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        event_types: list[str] | None = None,
        predicate: Callable[[str, dict[str, Any]], bool] | None = None,
    ) -> None:
        self.hook = hook
        self.priority = priority
        self.operations = operations or []
        self.event_types = event_types or []
        self.predicate = predicate

    def matches(self, operation: str, attributes: dict[str, Any]) -> bool:
        if self.predicate is not None and not self.predicate(operation, attributes):
            return False
        if self.operations and not any(
            fnmatch.fnmatch(operation, pattern) for pattern in self.operations
        ):
            return False
        if self.event_types:
            event_type = attributes.get("event.type")
            return event_type is None or event_type in self.event_types
        return True


class HookRegistry:
    """Registry of instrumentation hooks, executed as a priority-ordered chain."""

    def __init__(self) -> None:
        self._registrations: list[HookRegistration] = []

    def register(
        self,
        hook: InstrumentationHook,
        *,
        priority: int = 0,
        operations: list[str] | None = None,
        event_types: list[str] | None = None,
        predicate: Callable[[str, dict[str, Any]], bool] | None = None,
    ) -> HookRegistration:
        registration = HookRegistration(
            hook,
            priority=priority,
            operations=operations,
            event_types=event_types,
            predicate=predicate,
        )
        self._registrations.append(registration)
        self._registrations.sort(key=lambda r: r.priority)
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    async def execute_all(
        self,
        operation: str,
        attributes: dict[str, Any],
        next_handler: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *next_handler* wrapped by every matching hook, lowest priority outermost."""
        matching = [r for r in self._registrations if r.matches(operation, attributes)]
        if not matching:
            return await next_handler()

        async def pipeline(index: int = 0) -> Any:
            if index >= len(matching):
                return await next_handler()
            return await matching[index].hook(
                operation,
                attributes,
                lambda: pipeline(index + 1),
            )

        return await pipeline()

    def clear(self) -> None:
        self._registrations.clear()


_hook_registry_var: ContextVar[HookRegistry | None] = ContextVar(
    "relay_hook_registry", default=None
)
_default_registry = HookRegistry()


def get_hook_registry() -> HookRegistry:
    """Return the registry for the current context, or the process default.

    Relay workers run in tasks that copy the context at creation, so a
    registry set before ``RelayCoordinator.start`` is seen by every worker.
    """
    registry = _hook_registry_var.get()
    return registry if registry is not None else _default_registry


def set_hook_registry(registry: HookRegistry | None) -> None:
    """Set (or with ``None`` reset) the registry for the current context."""
    _hook_registry_var.set(registry)
