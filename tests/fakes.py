"""In-memory stand-ins for the HTTP layer and event sources."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any

from relayflow.errors import TransportError
from relayflow.models import File
from relayflow.sse import SSEEvent

_END = object()


class FakeEventSource:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    def push(self, data: Any, *, event: str = "message") -> None:
        payload = data if isinstance(data, str) else json.dumps(data)
        self._queue.put_nowait(SSEEvent(data=payload, event=event))

    def fail(self, exc: Exception | None = None) -> None:
        self._queue.put_nowait(exc or TransportError("connection reset"))

    def end(self) -> None:
        self._queue.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[SSEEvent]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def aclose(self) -> None:
        self.close_count += 1


class SourceFactory:
    """Scripted ``create_source`` coroutine; unscripted calls open a fresh source."""

    def __init__(self, *outcomes: FakeEventSource | Exception | None) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0
        self.sources: list[FakeEventSource] = []
        self.always_fail: Exception | None = None

    @property
    def latest(self) -> FakeEventSource:
        return self.sources[-1]

    async def __call__(self) -> FakeEventSource | None:
        self.calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        outcome = self._outcomes.pop(0) if self._outcomes else FakeEventSource()
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            self.sources.append(outcome)
        return outcome


class FakeHttp:
    """Scripted ``request``/``create_event_source`` pair.

    Responses registered with :meth:`on` are consumed in order; the last one
    repeats. A response may be an exception to raise or a callable receiving
    the JSON body.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, Any]] = []
        self.streams: dict[str, list[FakeEventSource]] = {}
        self.stream_error: Exception | None = None
        self._routes: dict[tuple[str, str], list[Any]] = {}

    def on(self, method: str, path: str, *responses: Any) -> None:
        self._routes.setdefault((method.lower(), path), []).extend(responses)

    def requests_to(self, method: str, path: str) -> list[Any]:
        return [body for verb, target, body in self.calls if verb == method.lower() and target == path]

    def stream(self, path: str) -> FakeEventSource:
        return self.streams[path][-1]

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Any | None = None,
        json_body: Any | None = None,
    ) -> Any:
        self.calls.append((method.lower(), path, json_body))
        responses = self._routes.get((method.lower(), path))
        if not responses:
            raise AssertionError(f"unexpected request {method.upper()} {path}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(json_body)
        return response

    async def create_event_source(self, path: str) -> FakeEventSource:
        if self.stream_error is not None:
            raise self.stream_error
        source = FakeEventSource()
        self.streams.setdefault(path, []).append(source)
        return source


class FakeFiles:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.uploaded: list[Any] = []

    async def upload_many(self, items: list[Any]) -> list[File]:
        if self.error is not None:
            raise self.error
        files = []
        for index, item in enumerate(items):
            if isinstance(item, File):
                files.append(item)
                continue
            self.uploaded.append(item)
            content_type = "image/png" if isinstance(item, bytes) and item.startswith(b"\x89PNG") else "text/plain"
            files.append(File(uri=f"https://files.test/{len(self.uploaded)}-{index}", content_type=content_type))
        return files

    async def process_input(self, value: Any) -> Any:
        return value


async def wait_until(predicate: Callable[[], Any], *, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds, failing after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def settle(turns: int = 10) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)
