"""Exception hierarchy for relayflow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from .models import Task


class RelayError(Exception):
    """Base class for every error raised by relayflow."""


class APIError(RelayError):
    """An HTTP request returned a non-2xx status or ``success=false``."""

    def __init__(self, status_code: int, message: str, *, response_body: str | None = None) -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.response_body = response_body


class RequirementsNotMetError(APIError):
    """HTTP 412 carrying structured requirement errors (secrets, integrations, scopes)."""

    def __init__(
        self,
        errors: list[dict[str, Any]],
        *,
        status_code: int = 412,
        response_body: str | None = None,
    ) -> None:
        message = "requirements not met"
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            message = str(errors[0]["message"])
        super().__init__(status_code, message, response_body=response_body)
        self.errors = errors


class TransportError(RelayError):
    """Connection-level failure on an event stream or poll."""


class MessageDecodeError(TransportError):
    """An inbound stream message was not valid JSON."""

    def __init__(self, raw: str, detail: str) -> None:
        super().__init__(f"Invalid JSON in stream message: {detail}")
        self.raw = raw


class StreamDisconnectedError(TransportError):
    """The channel stopped before the unit of work reached a terminal status."""


class TerminalFailure(RelayError):
    """The remote unit of work ended in a failed or cancelled state."""

    def __init__(self, message: str, *, task: Task | None = None) -> None:
        super().__init__(message)
        self.task = task


class TaskFailedError(TerminalFailure):
    pass


class TaskCancelledError(TerminalFailure):
    pass


class UploadError(RelayError):
    """An attachment or input file could not be uploaded."""

    def __init__(self, message: str, *, filename: str | None = None) -> None:
        super().__init__(message)
        self.filename = filename


__all__ = [
    "APIError",
    "MessageDecodeError",
    "RelayError",
    "RequirementsNotMetError",
    "StreamDisconnectedError",
    "TaskCancelledError",
    "TaskFailedError",
    "TerminalFailure",
    "TransportError",
    "UploadError",
]
