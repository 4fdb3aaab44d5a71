"""At-most-once execution of client-side tool invocations."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import ChatMessage

logger = logging.getLogger("relayflow.tools")

ToolHandler = Callable[[dict[str, Any]], Any]
ResultSubmitter = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


def not_available_result(name: str) -> str:
    return json.dumps(
        {
            "status": "not_available",
            "message": f'Client tool "{name}" is not available in this environment',
        }
    )


def error_result(exc: BaseException) -> str:
    return json.dumps({"error": str(exc)})


class ToolDispatcher:
    """Executes every awaiting client tool invocation exactly once.

    The server holds the conversation until each awaiting invocation gets a
    result, so every recognized invocation produces exactly one report: the
    handler's output, a structured error, or a "not available" notice. An id
    is recorded before its handler starts, which makes near-simultaneous
    redeliveries of the same message no-ops.
    """

    def __init__(
        self,
        submit_result: ResultSubmitter,
        handlers: Mapping[str, ToolHandler] | None = None,
    ) -> None:
        self._submit_result = submit_result
        self._handlers: dict[str, ToolHandler] = dict(handlers or {})
        self._dispatched: set[str] = set()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def handlers(self) -> Mapping[str, ToolHandler]:
        return dict(self._handlers)

    @property
    def has_handlers(self) -> bool:
        return bool(self._handlers)

    @property
    def pending(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def register(self, name: str, handler: ToolHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def is_dispatched(self, invocation_id: str) -> bool:
        return invocation_id in self._dispatched

    def dispatch(
        self,
        message: ChatMessage,
        *,
        on_tool_call: Callable[[ToolCall], None] | None = None,
    ) -> list[ToolCall]:
        """Start handling every new awaiting invocation in ``message``.

        Invocations without a registered handler go to ``on_tool_call`` when
        given (the caller then reports via ``submit_tool_result``); otherwise
        a "not available" result is reported straight away.
        """
        started: list[ToolCall] = []
        for invocation in message.tool_invocations:
            if not invocation.awaits_local_execution:
                continue
            if invocation.id in self._dispatched:
                logger.debug("tool_invocation_duplicate", extra={"invocation_id": invocation.id})
                continue
            self._dispatched.add(invocation.id)
            function = invocation.function
            call = ToolCall(
                id=invocation.id,
                name=function.name if function is not None else "",
                args=dict(function.arguments) if function is not None else {},
            )
            started.append(call)
            handler = self._handlers.get(call.name)
            if handler is not None:
                logger.info("tool_invocation_dispatched", extra={"invocation_id": call.id, "tool": call.name})
                self._spawn(self._execute(call, handler))
            elif on_tool_call is not None:
                try:
                    on_tool_call(call)
                except Exception:
                    logger.exception("tool_callback_failed", extra={"invocation_id": call.id, "tool": call.name})
            else:
                logger.warning("tool_handler_missing", extra={"invocation_id": call.id, "tool": call.name})
                self._spawn(self._report(call, not_available_result(call.name)))
        return started

    def reset(self) -> None:
        self._dispatched.clear()

    async def drain(self) -> None:
        """Wait for every handler started so far to finish reporting."""
        while True:
            current = asyncio.current_task()
            pending = [task for task in self._tasks if task is not current and not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _execute(self, call: ToolCall, handler: ToolHandler) -> None:
        try:
            outcome = handler(call.args)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            result = outcome if isinstance(outcome, str) else json.dumps(outcome, default=str)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "tool_handler_failed",
                extra={"invocation_id": call.id, "tool": call.name, "error": str(exc)},
            )
            result = error_result(exc)
        await self._report(call, result)

    async def _report(self, call: ToolCall, result: str) -> None:
        try:
            await self._submit_result(call.id, result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("tool_result_submit_failed", extra={"invocation_id": call.id, "tool": call.name})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


__all__ = ["ToolCall", "ToolDispatcher", "ToolHandler", "error_result", "not_available_result"]
