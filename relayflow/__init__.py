"""Public package surface for relayflow."""

from __future__ import annotations

from .agents import ChatCoordinator, SendMessageResult, WaitSettings
from .channels import ChannelState, EventChannel, FullUpdate, PartialUpdate, PollChannel
from .client import RelayClient
from .config import ClientConfig
from .errors import (
    APIError,
    MessageDecodeError,
    RelayError,
    RequirementsNotMetError,
    StreamDisconnectedError,
    TaskCancelledError,
    TaskFailedError,
    TransportError,
    UploadError,
)
from .models import Chat, ChatMessage, File, Task, TaskStatus, ToolInvocation
from .runs import RunCoordinator, RunOptions
from .tools import ToolCall, ToolDispatcher

__all__ = [
    "__version__",
    "APIError",
    "ChannelState",
    "Chat",
    "ChatCoordinator",
    "ChatMessage",
    "ClientConfig",
    "EventChannel",
    "File",
    "FullUpdate",
    "MessageDecodeError",
    "PartialUpdate",
    "PollChannel",
    "RelayClient",
    "RelayError",
    "RequirementsNotMetError",
    "RunCoordinator",
    "RunOptions",
    "SendMessageResult",
    "StreamDisconnectedError",
    "Task",
    "TaskCancelledError",
    "TaskFailedError",
    "TaskStatus",
    "ToolCall",
    "ToolDispatcher",
    "ToolInvocation",
    "TransportError",
    "UploadError",
    "WaitSettings",
]

__version__ = "0.1.0"
