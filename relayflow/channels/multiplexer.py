"""Per-event-name listener sets for streams carrying several resource types."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("relayflow.channels")

Listener = Callable[[Any], None]


class UpdateMultiplexer:
    """Routes named stream events to the listeners registered for that name.

    Listeners are looked up at delivery time, so a listener registered while
    the stream is live receives every later event of its type.
    """

    def __init__(self) -> None:
        # dict keys keep registration order and set semantics
        self._listeners: dict[str, dict[Listener, None]] = {}

    def add(self, event_name: str, listener: Listener) -> Callable[[], None]:
        self._listeners.setdefault(event_name, {})[listener] = None

        def _unsubscribe() -> None:
            listeners = self._listeners.get(event_name)
            if listeners is None:
                return
            listeners.pop(listener, None)
            if not listeners:
                self._listeners.pop(event_name, None)

        return _unsubscribe

    def has_listeners(self, event_name: str) -> bool:
        return bool(self._listeners.get(event_name))

    def event_names(self) -> list[str]:
        return list(self._listeners)

    def dispatch(
        self,
        event_name: str,
        data: Any,
        *,
        should_continue: Callable[[], bool] | None = None,
    ) -> int:
        """Call each listener for ``event_name``; returns how many ran.

        ``should_continue`` is re-checked before every listener so a listener
        that stops the owning channel prevents the rest from running.
        """
        listeners = self._listeners.get(event_name)
        if not listeners:
            logger.debug("stream_event_unrouted", extra={"event": event_name})
            return 0
        delivered = 0
        for listener in list(listeners):
            if should_continue is not None and not should_continue():
                break
            listener(data)
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._listeners.clear()


__all__ = ["Listener", "UpdateMultiplexer"]
