"""Drive a submitted task from creation to a terminal status."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import ValidationError

from .channels import EventChannel, EventSource
from .errors import StreamDisconnectedError, TaskCancelledError, TaskFailedError
from .files import FilesAPI
from .models import TERMINAL_TASK_STATUSES, Task, TaskStatus, parse_status

logger = logging.getLogger("relayflow.runs")


class RequestClient(Protocol):
    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any: ...

    async def create_event_source(self, path: str) -> EventSource | None: ...


ChannelFactory = Callable[..., EventChannel]


@dataclass(slots=True)
class RunOptions:
    """Per-call behaviour of :meth:`RunCoordinator.run`."""

    on_update: Callable[[Task], None] | None = None
    on_partial_update: Callable[[Task, list[str]], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    wait: bool = True
    auto_reconnect: bool = True
    max_reconnects: int = 5
    reconnect_delay_s: float = 1.0


def failure_message(error: Any) -> str:
    """Human-readable reason from a task's ``error`` field, which may be a string or an object."""
    if isinstance(error, Mapping):
        message = error.get("message") or error.get("error")
        if message:
            return str(message)
    if error:
        return str(error)
    return "task failed"


def _salvage_snapshot(task_id: str, data: Mapping[str, Any], status: TaskStatus) -> Task:
    """Best-effort snapshot of an update that failed validation, keeping only fields that pass."""
    values: dict[str, Any] = {"id": task_id, "status": status}
    for name in Task.model_fields:
        if name in values or name not in data:
            continue
        try:
            Task.model_validate({"id": task_id, name: data[name]})
        except ValidationError:
            continue
        values[name] = data[name]
    return Task.model_validate(values)


class RunCoordinator:
    """Submits ``/apps/run`` requests and follows the task stream to completion.

    The returned task resolves on COMPLETED, raises :class:`TaskFailedError`
    or :class:`TaskCancelledError` on the other terminal statuses, and raises
    :class:`StreamDisconnectedError` when the stream gives up first. Transport
    errors while reconnecting only reach ``on_error``.
    """

    def __init__(
        self,
        http: RequestClient,
        files: FilesAPI | None = None,
        *,
        channel_factory: ChannelFactory = EventChannel,
    ) -> None:
        self._http = http
        self._files = files
        self._channel_factory = channel_factory

    async def run(self, params: Mapping[str, Any], options: RunOptions | None = None) -> Task:
        options = options or RunOptions()
        payload = dict(params)
        if self._files is not None and "input" in payload:
            payload["input"] = await self._files.process_input(payload["input"])
        created = await self._http.request("post", "/apps/run", json_body=payload)
        task = Task.model_validate(created)
        logger.info("run_submitted", extra={"task_id": task.id, "app": payload.get("app"), "wait": options.wait})
        if not options.wait:
            return task
        return await self.wait_for_task(task.id, options)

    async def wait_for_task(self, task_id: str, options: RunOptions | None = None) -> Task:
        """Follow an existing task's stream until it reaches a terminal status."""
        options = options or RunOptions()
        future: asyncio.Future[Task] = asyncio.get_running_loop().create_future()
        channel: EventChannel

        def _handle(data: Any, fields: list[str] | None) -> None:
            if future.done():
                return
            if isinstance(data, Mapping):
                all_fields = [str(key) for key in data]
                # Completion is read off the raw payload so a malformed field never hides it.
                status = parse_status(data.get("status"))
                payload: Any = {"id": task_id, **data}
            else:
                all_fields, status, payload = [], TaskStatus.UNKNOWN, data
            try:
                snapshot = Task.model_validate(payload)
            except ValidationError as exc:
                logger.warning("run_update_invalid", extra={"task_id": task_id, "error": str(exc)})
                _forward_error(exc)
                if status not in TERMINAL_TASK_STATUSES:
                    return
                snapshot = _salvage_snapshot(task_id, data, status)
            else:
                self._forward_update(options, snapshot, fields, all_fields)
            if future.done():
                return
            if snapshot.status is TaskStatus.COMPLETED:
                future.set_result(snapshot)
            elif snapshot.status is TaskStatus.FAILED:
                future.set_exception(TaskFailedError(failure_message(snapshot.error), task=snapshot))
            elif snapshot.status is TaskStatus.CANCELLED:
                future.set_exception(TaskCancelledError("task cancelled", task=snapshot))
            else:
                return
            logger.info("run_settled", extra={"task_id": task_id, "status": snapshot.status.name})
            channel.stop()

        def _forward_error(exc: Exception) -> None:
            if options.on_error is None:
                return
            try:
                options.on_error(exc)
            except Exception:
                logger.exception("run_callback_failed", extra={"task_id": task_id})

        def _on_stop() -> None:
            if not future.done():
                future.set_exception(
                    StreamDisconnectedError(f"Task {task_id} stream stopped before a terminal status")
                )

        async def _create_source() -> EventSource | None:
            return await self._http.create_event_source(f"/tasks/{task_id}/stream")

        channel = self._channel_factory(
            _create_source,
            auto_reconnect=options.auto_reconnect,
            max_reconnects=options.max_reconnects,
            reconnect_delay_s=options.reconnect_delay_s,
            on_data=lambda data: _handle(data, None),
            on_partial_data=_handle,
            on_error=_forward_error,
            on_stop=_on_stop,
            name=f"task:{task_id}",
        )
        await channel.connect()
        try:
            return await future
        finally:
            if not channel.stopped:
                channel.stop()

    @staticmethod
    def _forward_update(
        options: RunOptions,
        snapshot: Task,
        fields: list[str] | None,
        all_fields: list[str],
    ) -> None:
        try:
            if fields is not None and options.on_partial_update is not None:
                options.on_partial_update(snapshot, fields)
            elif options.on_update is not None:
                options.on_update(snapshot)
            elif options.on_partial_update is not None:
                options.on_partial_update(snapshot, all_fields)
        except Exception:
            logger.exception("run_callback_failed", extra={"task_id": snapshot.id})


__all__ = ["RequestClient", "RunCoordinator", "RunOptions", "failure_message"]
