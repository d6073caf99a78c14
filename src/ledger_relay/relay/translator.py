"""Translator — map a RelayEvent payload onto target-ledger transaction arguments."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..domain.events import RelayEventType
from ..primitives.exceptions import MalformedPayloadError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from ..domain.events import RelayEvent

UNDECODABLE_KEY = "__undecodable__"


class TargetOperation(str, Enum):
    """Effect a target write has on the relayed record."""

    UPSERT = "upsert"
    DELETE = "delete"


class TargetTransaction(BaseModel):
    """Arguments for one target-ledger write, ready for the submitter.

    *function* is the target's entry point and may be named freely;
    *operation* says whether it upserts or deletes the record.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str
    function: str
    record_key: str
    operation: TargetOperation = TargetOperation.UPSERT
    arguments: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_delete(self) -> bool:
        return self.operation == TargetOperation.DELETE


class Translator:
    """Pure mapping from ``RelayEvent`` to ``TargetTransaction``.

    Each event type may register a pydantic model describing the payload
    shape the target expects. ``Created`` and ``Updated`` events become an
    upsert of the relayed record, ``Deleted`` events a delete. Every
    transaction carries ``relay_event_id`` so the target can report which
    event it last applied (used by the submitter to verify ambiguous writes).

    Usage::

        class CarPayload(BaseModel):
            make: str
            model: str
            colour: str
            owner: str

        translator = Translator({RelayEventType.CREATED: CarPayload})
        tx = translator.translate(event)

    Raises ``MalformedPayloadError`` when the payload cannot be decoded into
    the registered shape. Business semantics are not validated.
    """

    def __init__(
        self,
        schemas: Mapping[RelayEventType, type[BaseModel]] | None = None,
        *,
        upsert_function: str = "storeRelayedRecord",
        delete_function: str = "deleteRelayedRecord",
    ) -> None:
        self._schemas: dict[RelayEventType, type[BaseModel]] = dict(schemas or {})
        self._upsert_function = upsert_function
        self._delete_function = delete_function

    def register(self, event_type: RelayEventType, schema: type[BaseModel]) -> None:
        """Register or replace the payload schema for *event_type*."""
        self._schemas[event_type] = schema

    def translate(self, event: RelayEvent) -> TargetTransaction:
        if not event.source_record_key:
            raise MalformedPayloadError(event.id, "missing source record key")
        if UNDECODABLE_KEY in event.payload:
            raise MalformedPayloadError(event.id, "payload is not a JSON object")

        arguments = self._decode(event)
        arguments["relay_event_id"] = event.id

        if event.event_type == RelayEventType.DELETED:
            operation, function = TargetOperation.DELETE, self._delete_function
        else:
            operation, function = TargetOperation.UPSERT, self._upsert_function
        return TargetTransaction(
            event_id=event.id,
            function=function,
            record_key=event.source_record_key,
            operation=operation,
            arguments=arguments,
        )

    def _decode(self, event: RelayEvent) -> dict[str, Any]:
        schema = self._schemas.get(event.event_type)
        if schema is None:
            return dict(event.payload)
        try:
            return schema.model_validate(event.payload).model_dump(mode="json")
        except ValidationError as exc:
            raise MalformedPayloadError(event.id, _summarize(exc)) from exc


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    )
