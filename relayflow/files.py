"""File uploads: record creation followed by a PUT to the pre-signed URL."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
import re
from collections.abc import Awaitable, Iterable, Mapping
from pathlib import Path
from typing import Any, TypeVar

import httpx

from .errors import RelayError, UploadError
from .http import HttpClient
from .models import File

logger = logging.getLogger("relayflow.files")

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_DATA_URI = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)

UploadSource = bytes | bytearray | str | Path
T = TypeVar("T")


def _decode_source(
    data: UploadSource,
    *,
    filename: str | None,
    content_type: str | None,
) -> tuple[bytes, str, str | None]:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data), content_type or DEFAULT_CONTENT_TYPE, filename
    if isinstance(data, Path):
        try:
            content = data.read_bytes()
        except OSError as exc:
            raise UploadError(f"Cannot read {data}: {exc}", filename=filename or data.name) from exc
        guessed, _ = mimetypes.guess_type(data.name)
        return content, content_type or guessed or DEFAULT_CONTENT_TYPE, filename or data.name
    if isinstance(data, str):
        match = _DATA_URI.match(data)
        encoded = data
        if match is not None:
            content_type = content_type or match.group(1)
            encoded = match.group(2)
        elif data.startswith("data:"):
            raise UploadError("Invalid base64 data URI format", filename=filename)
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise UploadError(f"Invalid base64 payload: {exc}", filename=filename) from exc
        return content, content_type or DEFAULT_CONTENT_TYPE, filename
    raise UploadError(f"Unsupported upload source: {type(data).__name__}", filename=filename)


async def _run_all(coros: Iterable[Awaitable[T]]) -> list[T]:
    """Await ``coros`` together; the first failure cancels the rest and is re-raised on its own."""
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(coro) for coro in coros]
    except ExceptionGroup as exc_group:
        first = next(
            (exc for exc in exc_group.exceptions if isinstance(exc, UploadError)),
            exc_group.exceptions[0],
        )
        raise first from None
    return [task.result() for task in tasks]


def is_data_uri(value: str) -> bool:
    return _DATA_URI.match(value) is not None


class FilesAPI:
    def __init__(self, http: HttpClient) -> None:
        self._http = http

    async def get(self, file_id: str) -> File:
        return File.model_validate(await self._http.request("get", f"/files/{file_id}"))

    async def upload(
        self,
        data: UploadSource,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        path: str | None = None,
    ) -> File:
        """Upload ``data`` and return the stored file record.

        Accepts raw bytes, a :class:`~pathlib.Path`, a ``data:`` URI or a bare
        base64 string. Every failure surfaces as :class:`UploadError`.
        """
        content, resolved_type, resolved_name = _decode_source(data, filename=filename, content_type=content_type)
        record = {
            "uri": "",
            "filename": resolved_name,
            "content_type": resolved_type,
            "path": path,
            "size": len(content),
        }
        try:
            created = await self._http.request("post", "/files", json_body={"files": [record]})
        except (RelayError, httpx.HTTPError) as exc:
            raise UploadError(f"Could not create file record: {exc}", filename=resolved_name) from exc
        if not isinstance(created, list) or not created:
            raise UploadError("Server returned no file record", filename=resolved_name)
        file = File.model_validate(created[0])
        if not file.upload_url:
            raise UploadError("No upload URL provided by the server", filename=resolved_name)

        try:
            response = await self._http.client.put(
                file.upload_url,
                content=content,
                headers={"Content-Type": resolved_type},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Failed to upload file content: {exc}", filename=resolved_name) from exc
        if response.status_code >= 400:
            raise UploadError(
                f"Failed to upload file content: HTTP {response.status_code} {response.reason_phrase}",
                filename=resolved_name,
            )
        logger.debug("file_uploaded", extra={"uri": file.uri, "size": len(content)})
        return file

    async def upload_many(self, items: list[UploadSource | File]) -> list[File]:
        """Upload every pending item concurrently; already-uploaded files pass through."""

        async def _resolve(item: UploadSource | File) -> File:
            if isinstance(item, File):
                return item
            return await self.upload(item)

        return await _run_all(_resolve(item) for item in items)

    async def process_input(self, value: Any) -> Any:
        """Replace embedded file payloads in ``value`` with uploaded URIs.

        Bytes, paths and ``data:`` URIs are uploaded; mappings and sequences
        are walked recursively; everything else is returned unchanged.
        """
        if isinstance(value, Mapping):
            keys = list(value)
            processed = await _run_all(self.process_input(value[key]) for key in keys)
            return dict(zip(keys, processed, strict=True))
        if isinstance(value, (list, tuple)):
            return await _run_all(self.process_input(item) for item in value)
        if isinstance(value, (bytes, bytearray, Path)):
            return (await self.upload(value)).uri
        if isinstance(value, str) and is_data_uri(value):
            return (await self.upload(value)).uri
        return value


__all__ = ["FilesAPI", "UploadSource", "is_data_uri"]
