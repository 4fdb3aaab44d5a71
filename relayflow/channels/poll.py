"""Polling channel for runtimes that cannot hold a long-lived stream open."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

from .state import ChannelState

logger = logging.getLogger("relayflow.channels")


class PollChannel:
    """Calls ``poll_function`` immediately and then every ``interval_s``.

    At most one poll is in flight; a tick that finds one still running is
    skipped. ``max_retries`` consecutive failures stop the channel for good.
    """

    def __init__(
        self,
        poll_function: Callable[[], Awaitable[Any]],
        *,
        interval_s: float = 2.0,
        max_retries: int = 5,
        on_data: Callable[[Any], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_start: Callable[[], None] | None = None,
        on_stop: Callable[[], None] | None = None,
        name: str = "poll",
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.name = name
        self._poll_function = poll_function
        self._interval_s = interval_s
        self._max_retries = max_retries
        self._on_data = on_data
        self._on_error = on_error
        self._on_start = on_start
        self._on_stop = on_stop
        self._state = ChannelState.IDLE
        self._consecutive_errors = 0
        self._ticker: asyncio.Task[None] | None = None
        self._in_flight: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ChannelState.CONNECTED

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    def start(self) -> None:
        if self._state is not ChannelState.IDLE:
            return
        self._state = ChannelState.CONNECTED
        self._consecutive_errors = 0
        logger.debug("poll_started", extra={"channel": self.name, "interval_s": self._interval_s})
        if self._on_start is not None:
            self._invoke(self._on_start)
        if self._state is ChannelState.CONNECTED:
            self._ticker = self._spawn(self._tick())

    def stop(self) -> None:
        if self._state is ChannelState.STOPPED:
            return
        self._state = ChannelState.STOPPED
        current = asyncio.current_task()
        for task in (self._ticker, self._in_flight):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._ticker = None
        self._in_flight = None
        logger.debug("poll_stopped", extra={"channel": self.name})
        if self._on_stop is not None:
            self._invoke(self._on_stop)

    async def aclose(self) -> None:
        self.stop()
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _tick(self) -> None:
        while self._state is ChannelState.CONNECTED:
            if self._in_flight is None:
                self._in_flight = self._spawn(self._poll_once())
            else:
                logger.debug("poll_tick_skipped", extra={"channel": self.name})
            await asyncio.sleep(self._interval_s)

    async def _poll_once(self) -> None:
        try:
            data = await self._poll_function()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._in_flight = None
            if self._state is not ChannelState.CONNECTED:
                return
            self._consecutive_errors += 1
            logger.warning(
                "poll_failed",
                extra={"channel": self.name, "error": str(exc), "consecutive_errors": self._consecutive_errors},
            )
            if self._on_error is not None:
                self._invoke(self._on_error, exc)
            if self._state is ChannelState.CONNECTED and self._consecutive_errors >= self._max_retries:
                logger.warning("poll_retries_exhausted", extra={"channel": self.name, "max_retries": self._max_retries})
                self.stop()
            return
        self._in_flight = None
        if self._state is not ChannelState.CONNECTED:
            return
        self._consecutive_errors = 0
        if self._on_data is not None:
            self._invoke(self._on_data, data)

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("poll_callback_failed", extra={"channel": self.name})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = ["PollChannel"]
