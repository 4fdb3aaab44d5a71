"""Wire models and status vocabulary for tasks, chats and files."""

from __future__ import annotations

import json
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskStatus(IntEnum):
    UNKNOWN = 0
    RECEIVED = 1
    QUEUED = 2
    SCHEDULED = 3
    PREPARING = 4
    SERVING = 5
    SETTING_UP = 6
    RUNNING = 7
    UPLOADING = 8
    COMPLETED = 9
    FAILED = 10
    CANCELLED = 11
    CANCELLING = 12


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

# String names are reserved for the API's planned move away from integer statuses.
_STATUS_NAMES = {status.name.lower(): status for status in TaskStatus}

CHAT_STATUS_BUSY = "busy"

TOOL_TYPE_CLIENT = "client"
TOOL_INVOCATION_AWAITING_INPUT = "awaiting_input"


def parse_status(value: Any) -> TaskStatus:
    """Normalize an integer or string task status, mapping unknown values to UNKNOWN."""
    if value is None or isinstance(value, bool):
        return TaskStatus.UNKNOWN
    if isinstance(value, int):
        try:
            return TaskStatus(value)
        except ValueError:
            return TaskStatus.UNKNOWN
    if isinstance(value, str):
        return _STATUS_NAMES.get(value.strip().lower(), TaskStatus.UNKNOWN)
    return TaskStatus.UNKNOWN


def is_terminal_status(value: Any) -> bool:
    return parse_status(value) in TERMINAL_TASK_STATUSES


def is_chat_busy(status: Any) -> bool:
    return status == CHAT_STATUS_BUSY


class Task(BaseModel):
    """Stable snapshot of a task; unknown wire fields are dropped."""

    id: str
    status: TaskStatus = TaskStatus.UNKNOWN
    created_at: Any | None = None
    updated_at: Any | None = None
    input: Any | None = None
    output: Any | None = None
    logs: Any | None = None
    error: Any | None = None
    session_id: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> TaskStatus:
        return parse_status(value)


class ToolFunction(BaseModel):
    name: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="allow")

    @field_validator("arguments", mode="before")
    @classmethod
    def _default_arguments(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            # some providers send arguments as a JSON-encoded string
            return json.loads(value) if value.strip() else {}
        return value


class ToolInvocation(BaseModel):
    id: str
    type: str | None = None
    status: str | None = None
    function: ToolFunction | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def awaits_local_execution(self) -> bool:
        return self.type == TOOL_TYPE_CLIENT and self.status == TOOL_INVOCATION_AWAITING_INPUT


class ChatMessage(BaseModel):
    id: str
    chat_id: str | None = None
    role: str | None = None
    status: str | None = None
    content: Any | None = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    @field_validator("tool_invocations", mode="before")
    @classmethod
    def _default_invocations(cls, value: Any) -> Any:
        return [] if value is None else value


class Chat(BaseModel):
    id: str | None = None
    status: str | None = None
    chat_messages: list[ChatMessage] | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_busy(self) -> bool:
        return is_chat_busy(self.status)


class File(BaseModel):
    id: str | None = None
    uri: str
    filename: str | None = None
    content_type: str | None = None
    path: str | None = None
    size: int | None = None
    upload_url: str | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_image(self) -> bool:
        return bool(self.content_type and self.content_type.startswith("image/"))


__all__ = [
    "CHAT_STATUS_BUSY",
    "Chat",
    "ChatMessage",
    "File",
    "TERMINAL_TASK_STATUSES",
    "TOOL_INVOCATION_AWAITING_INPUT",
    "TOOL_TYPE_CLIENT",
    "Task",
    "TaskStatus",
    "ToolFunction",
    "ToolInvocation",
    "is_chat_busy",
    "is_terminal_status",
    "parse_status",
]
