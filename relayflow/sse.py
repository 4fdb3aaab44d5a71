"""Server-sent event framing and an httpx-backed event source."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import TransportError

DEFAULT_EVENT = "message"


@dataclass(frozen=True, slots=True)
class SSEEvent:
    data: str
    event: str = DEFAULT_EVENT
    id: str | None = None
    retry_ms: int | None = None


def format_sse(data: object, *, event: str | None = None, event_id: str | None = None) -> bytes:
    """Encode one SSE event block."""
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event is not None:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in payload.split("\n"))
    return ("\n".join(lines) + "\n\n").encode()


class SSEDecoder:
    """Incremental line decoder following the EventSource dispatch rules."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []
        self._id: str | None = None
        self._retry: int | None = None

    def feed(self, line: str) -> SSEEvent | None:
        line = line.rstrip("\r")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(
            data="\n".join(self._data),
            event=self._event or DEFAULT_EVENT,
            id=self._id,
            retry_ms=self._retry,
        )
        self._event = None
        self._data = []
        return event


async def iter_sse_events(lines: AsyncIterator[str]) -> AsyncIterator[SSEEvent]:
    decoder = SSEDecoder()
    async for line in lines:
        event = decoder.feed(line)
        if event is not None:
            yield event
    # a stream may end without the trailing blank line
    event = decoder.feed("")
    if event is not None:
        yield event


class HttpxEventSource:
    """One open ``text/event-stream`` response.

    Iterating yields :class:`SSEEvent` values until the server closes the
    stream; the caller treats the end of iteration as a dropped connection.
    """

    def __init__(self, response: httpx.Response, *, owned_client: httpx.AsyncClient | None = None) -> None:
        self._response = response
        self._owned_client = owned_client
        self._closed = False

    @classmethod
    async def open(
        cls,
        client: httpx.AsyncClient,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        owned_client: httpx.AsyncClient | None = None,
    ) -> HttpxEventSource:
        request_headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if headers:
            request_headers.update(headers)
        request = client.build_request("GET", url, headers=request_headers, params=params)
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            if owned_client is not None:
                await owned_client.aclose()
            raise TransportError(f"Event stream request failed: {exc}") from exc
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            if owned_client is not None:
                await owned_client.aclose()
            detail = body.decode("utf-8", errors="replace")[:500]
            raise TransportError(f"Event stream failed ({response.status_code}): {detail}")
        return cls(response, owned_client=owned_client)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[SSEEvent]:
        try:
            async for event in iter_sse_events(self._response.aiter_lines()):
                yield event
        except httpx.HTTPError as exc:
            if self._closed:
                return
            raise TransportError(f"Event stream interrupted: {exc}") from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._response.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()


__all__ = ["DEFAULT_EVENT", "HttpxEventSource", "SSEDecoder", "SSEEvent", "format_sse", "iter_sse_events"]
