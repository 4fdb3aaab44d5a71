"""Classification of stream payloads into full and partial updates.

The server marks a differential update only by shape: ``{"data": ..., "fields": [...]}``.
A full object that happens to carry both keys with a list ``fields`` is read as
partial; callers accept that ambiguity until the wire format grows a tag.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")

DataCallback = Callable[[Any], None]
PartialDataCallback = Callable[[Any, list[str]], None]


@dataclass(frozen=True, slots=True)
class FullUpdate(Generic[T]):
    data: T

    @property
    def changed_fields(self) -> list[str]:
        if isinstance(self.data, Mapping):
            return [str(key) for key in self.data]
        return []


@dataclass(frozen=True, slots=True)
class PartialUpdate(Generic[T]):
    data: T
    fields: tuple[str, ...]

    @property
    def changed_fields(self) -> list[str]:
        return list(self.fields)


UpdateEvent = FullUpdate[Any] | PartialUpdate[Any]


def is_partial_envelope(parsed: Any) -> bool:
    return isinstance(parsed, Mapping) and "data" in parsed and isinstance(parsed.get("fields"), list)


def decode_update(parsed: Any) -> UpdateEvent:
    if is_partial_envelope(parsed):
        return PartialUpdate(data=parsed["data"], fields=tuple(str(name) for name in parsed["fields"]))
    return FullUpdate(data=parsed)


def dispatch_update(
    update: UpdateEvent,
    *,
    on_data: DataCallback | None = None,
    on_partial_data: PartialDataCallback | None = None,
) -> bool:
    """Deliver ``update`` to exactly one of the registered callbacks.

    Partial updates prefer ``on_partial_data``; full updates prefer ``on_data``.
    When only the other callback is registered it receives the update instead,
    with a full update reported as every field changed. Returns whether a
    callback ran.
    """
    if isinstance(update, PartialUpdate):
        if on_partial_data is not None:
            on_partial_data(update.data, update.changed_fields)
            return True
        if on_data is not None:
            on_data(update.data)
            return True
        return False
    if on_data is not None:
        on_data(update.data)
        return True
    if on_partial_data is not None:
        on_partial_data(update.data, update.changed_fields)
        return True
    return False


__all__ = [
    "FullUpdate",
    "PartialUpdate",
    "UpdateEvent",
    "decode_update",
    "dispatch_update",
    "is_partial_envelope",
]
