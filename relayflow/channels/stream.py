"""Reconnecting server-sent event channel for one remote resource."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from typing import Any, Protocol

from relayflow.errors import MessageDecodeError, TransportError
from relayflow.sse import DEFAULT_EVENT, SSEEvent

from .decoder import DataCallback, PartialDataCallback, UpdateEvent, decode_update, dispatch_update
from .multiplexer import Listener, UpdateMultiplexer
from .state import ChannelState, ReconnectBudget

logger = logging.getLogger("relayflow.channels")

_TIMER_RECONNECT = "reconnect"
_TIMER_STOP = "stop"


class EventSource(Protocol):
    """Minimal surface of an open event stream."""

    def __aiter__(self) -> AsyncIterator[SSEEvent]: ...

    async def aclose(self) -> None: ...


SourceFactory = Callable[[], Awaitable[EventSource | None]]


class EventChannel:
    """One subscription to an update stream, surviving transient failures.

    The channel owns its :class:`ChannelState` and a single timer slot used
    either for the reconnect backoff or for a deferred stop. Every state
    transition clears the slot and every timer callback re-checks the state,
    so a timer that already fired for the current loop turn stays inert after
    ``stop()``.
    """

    def __init__(
        self,
        create_source: SourceFactory,
        *,
        auto_reconnect: bool = True,
        max_reconnects: int = 5,
        reconnect_delay_s: float = 1.0,
        on_data: DataCallback | None = None,
        on_partial_data: PartialDataCallback | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_start: Callable[[], None] | None = None,
        on_stop: Callable[[], None] | None = None,
        name: str = "stream",
    ) -> None:
        self.name = name
        self._create_source = create_source
        self._auto_reconnect = auto_reconnect
        self._budget = ReconnectBudget(max_attempts=max_reconnects, delay_s=reconnect_delay_s)
        self._on_data = on_data
        self._on_partial_data = on_partial_data
        self._on_error = on_error
        self._on_start = on_start
        self._on_stop = on_stop
        self._multiplexer = UpdateMultiplexer()
        self._state = ChannelState.IDLE
        self._source: EventSource | None = None
        self._reader: asyncio.Task[None] | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._timer_kind: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._started = False

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def budget(self) -> ReconnectBudget:
        return self._budget

    @property
    def stopped(self) -> bool:
        return self._state is ChannelState.STOPPED

    @property
    def deferred_stop_pending(self) -> bool:
        return self._timer_kind == _TIMER_STOP

    def add_event_listener(self, event_name: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for named events; returns an unsubscribe callable."""
        return self._multiplexer.add(event_name, listener)

    async def connect(self) -> None:
        if self._state in (ChannelState.CONNECTING, ChannelState.CONNECTED, ChannelState.STOPPED):
            return
        self._transition(ChannelState.CONNECTING)
        await self._open()

    def stop(self) -> None:
        if self._state is ChannelState.STOPPED:
            return
        self._transition(ChannelState.STOPPED)
        self._teardown_source()
        logger.debug("stream_stopped", extra={"channel": self.name})
        if self._on_stop is not None:
            self._invoke(self._on_stop)

    def stop_after(self, delay_s: float) -> None:
        """Stop once ``delay_s`` elapses unless cancelled first.

        Only a connected channel lingers; in any other state there is nothing
        in flight to wait for and the channel stops immediately.
        """
        if self._state is ChannelState.STOPPED:
            return
        if self._state is not ChannelState.CONNECTED:
            self.stop()
            return
        self._clear_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_s, self._on_stop_due)
        self._timer_kind = _TIMER_STOP

    def cancel_deferred_stop(self) -> None:
        if self._timer_kind == _TIMER_STOP:
            self._clear_timer()

    async def aclose(self) -> None:
        """Stop and wait for the transport teardown to finish."""
        self.stop()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- transport lifecycle -------------------------------------------------

    async def _open(self) -> None:
        try:
            source = await self._create_source()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._state is ChannelState.CONNECTING:
                self._handle_transport_error(exc)
            return
        if self._state is not ChannelState.CONNECTING:
            if source is not None:
                self._spawn(self._close_source(source))
            return
        if source is None:
            self._handle_transport_error(TransportError("Event source unavailable"))
            return

        self._source = source
        self._budget.record_success()
        self._transition(ChannelState.CONNECTED)
        logger.debug("stream_connected", extra={"channel": self.name})
        if not self._started:
            self._started = True
            if self._on_start is not None:
                self._invoke(self._on_start)
        if self._state is ChannelState.CONNECTED and self._source is source:
            self._reader = self._spawn(self._read(source))

    async def _read(self, source: EventSource) -> None:
        try:
            async for event in source:
                if not self._is_current(source):
                    return
                self._handle_event(event)
                if not self._is_current(source):
                    return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._is_current(source):
                self._handle_transport_error(exc)
            return
        if self._is_current(source):
            self._handle_transport_error(TransportError("Event stream closed by server"))

    def _handle_transport_error(self, exc: Exception) -> None:
        logger.warning(
            "stream_transport_error",
            extra={"channel": self.name, "error": str(exc), "attempts": self._budget.attempts},
        )
        self._emit_error(exc)
        if self._state is ChannelState.STOPPED:
            return
        self._teardown_source()
        if self._timer_kind == _TIMER_STOP or not self._auto_reconnect or self._budget.exhausted:
            if self._budget.exhausted:
                logger.warning(
                    "stream_reconnect_budget_exhausted",
                    extra={"channel": self.name, "max_reconnects": self._budget.max_attempts},
                )
            self.stop()
            return
        self._transition(ChannelState.RECONNECTING)
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._budget.delay_s, self._on_reconnect_due)
        self._timer_kind = _TIMER_RECONNECT

    def _on_reconnect_due(self) -> None:
        self._timer = None
        self._timer_kind = None
        if self._state is not ChannelState.RECONNECTING:
            return
        self._budget.record_attempt()
        logger.info("stream_reconnecting", extra={"channel": self.name, "attempt": self._budget.attempts})
        self._transition(ChannelState.CONNECTING)
        self._spawn(self._open())

    def _on_stop_due(self) -> None:
        self._timer = None
        self._timer_kind = None
        self.stop()

    def _teardown_source(self) -> None:
        source, self._source = self._source, None
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
        if source is not None:
            self._spawn(self._close_source(source))

    async def _close_source(self, source: EventSource) -> None:
        try:
            await source.aclose()
        except Exception:
            logger.warning("stream_close_failed", extra={"channel": self.name}, exc_info=True)

    # -- message handling ----------------------------------------------------

    def _handle_event(self, event: SSEEvent) -> None:
        try:
            parsed = json.loads(event.data)
        except ValueError as exc:
            self._emit_error(MessageDecodeError(event.data, str(exc)))
            return
        update = decode_update(parsed)
        if event.event == DEFAULT_EVENT:
            self._deliver(update)
            return
        try:
            self._multiplexer.dispatch(event.event, update.data, should_continue=self._is_live)
        except Exception:
            logger.exception("stream_listener_failed", extra={"channel": self.name, "event": event.event})

    def _deliver(self, update: UpdateEvent) -> None:
        try:
            dispatch_update(update, on_data=self._on_data, on_partial_data=self._on_partial_data)
        except Exception:
            logger.exception("stream_callback_failed", extra={"channel": self.name})

    # -- helpers ---------------------------------------------------------------

    def _transition(self, state: ChannelState) -> None:
        self._clear_timer()
        self._state = state

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_kind = None

    def _is_live(self) -> bool:
        return self._state is ChannelState.CONNECTED

    def _is_current(self, source: EventSource) -> bool:
        return self._source is source and self._state is ChannelState.CONNECTED

    def _emit_error(self, exc: Exception) -> None:
        if self._on_error is not None:
            self._invoke(self._on_error, exc)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("stream_callback_failed", extra={"channel": self.name})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = ["EventChannel", "EventSource", "SourceFactory"]
