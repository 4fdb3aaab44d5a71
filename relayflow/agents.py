"""Agent chat turns: send a message, then follow the chat until it goes idle."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .channels import EventChannel, EventSource, PollChannel
from .config import ClientConfig
from .files import FilesAPI, UploadSource
from .models import Chat, ChatMessage, File
from .runs import RequestClient
from .tools import ToolCall, ToolDispatcher, ToolHandler

logger = logging.getLogger("relayflow.agents")

CHATS_EVENT = "chats"
CHAT_MESSAGES_EVENT = "chat_messages"

AgentConfig = str | Mapping[str, Any]


@dataclass(slots=True)
class WaitSettings:
    stream: bool = True
    poll_interval_s: float = 2.0
    poll_max_retries: int = 5
    max_reconnects: int = 5
    reconnect_delay_s: float = 1.0
    idle_linger_s: float = 2.0

    @classmethod
    def from_config(cls, config: ClientConfig) -> WaitSettings:
        return cls(
            stream=config.stream,
            poll_interval_s=config.poll_interval_s,
            poll_max_retries=config.poll_max_retries,
            max_reconnects=config.max_reconnects,
            reconnect_delay_s=config.reconnect_delay_s,
            idle_linger_s=config.idle_linger_s,
        )


@dataclass(frozen=True, slots=True)
class SendMessageResult:
    user_message: ChatMessage
    assistant_message: ChatMessage


@dataclass(slots=True)
class _TurnCallbacks:
    on_message: Callable[[ChatMessage], None] | None = None
    on_chat: Callable[[Chat], None] | None = None
    on_tool_call: Callable[[ToolCall], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    @property
    def any(self) -> bool:
        return any((self.on_message, self.on_chat, self.on_tool_call))

    def chat(self, chat: Chat) -> None:
        _call_user(self.on_chat, chat)

    def message(self, message: ChatMessage) -> None:
        _call_user(self.on_message, message)

    def error(self, exc: Exception) -> None:
        _call_user(self.on_error, exc)


def _call_user(callback: Callable[[Any], None] | None, value: Any) -> None:
    if callback is None:
        return
    try:
        callback(value)
    except Exception:
        logger.exception("chat_callback_failed")


class ChatCoordinator:
    """One conversation with an agent, driven turn by turn.

    ``agent`` is either a template reference (``"namespace/name@version"``)
    or an ad-hoc agent config mapping. Tool handlers registered through
    ``tools`` answer client tool invocations; each invocation id is handled
    at most once per conversation until :meth:`reset`.
    """

    def __init__(
        self,
        http: RequestClient,
        files: FilesAPI,
        agent: AgentConfig,
        *,
        name: str | None = None,
        tools: Mapping[str, ToolHandler] | None = None,
        settings: WaitSettings | None = None,
        channel_factory: Callable[..., EventChannel] = EventChannel,
        poller_factory: Callable[..., PollChannel] = PollChannel,
    ) -> None:
        self._http = http
        self._files = files
        self._agent = agent
        self._agent_name = name
        self._settings = settings or WaitSettings()
        self._channel_factory = channel_factory
        self._poller_factory = poller_factory
        self._dispatcher = ToolDispatcher(self.submit_tool_result, tools)
        self._chat_id: str | None = None
        self._channel: EventChannel | PollChannel | None = None
        self._wait: asyncio.Future[None] | None = None

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def channel(self) -> EventChannel | PollChannel | None:
        return self._channel

    @property
    def waiting(self) -> bool:
        return self._wait is not None and not self._wait.done()

    async def send_message(
        self,
        text: str,
        *,
        files: Sequence[UploadSource | File] | None = None,
        on_message: Callable[[ChatMessage], None] | None = None,
        on_chat: Callable[[Chat], None] | None = None,
        on_tool_call: Callable[[ToolCall], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        stream: bool | None = None,
        poll_interval_s: float | None = None,
        wait: bool | None = None,
    ) -> SendMessageResult:
        """Post ``text`` to the agent and, when waiting, follow the chat until idle.

        Attachments are uploaded first and concurrently; an upload failure
        raises :class:`~relayflow.errors.UploadError` before anything is
        posted. Waiting defaults to on when polling or when any callback or
        tool handler is registered.
        """
        images, attachments = await self._upload_attachments(files)
        body = self._build_body(text, images, attachments)
        callbacks = _TurnCallbacks(on_message, on_chat, on_tool_call, on_error)
        use_stream = self._settings.stream if stream is None else stream
        if wait is None:
            wait = not use_stream or callbacks.any or self._dispatcher.has_handlers
        interval_s = poll_interval_s or self._settings.poll_interval_s

        waiter: asyncio.Future[None] | None = None
        # Existing chat: attach before posting so no update slips past.
        if self._chat_id is not None and wait:
            waiter = await self._begin_wait(use_stream, callbacks, interval_s)
        try:
            response = await self._http.request("post", "/agents/run", json_body=body)
        except BaseException:
            if waiter is not None:
                self.disconnect()
            raise

        user_message = ChatMessage.model_validate(response["user_message"])
        assistant_message = ChatMessage.model_validate(response["assistant_message"])
        if self._chat_id is None and assistant_message.chat_id:
            self._chat_id = assistant_message.chat_id
            logger.info("chat_created", extra={"chat_id": self._chat_id})
            if wait:
                waiter = await self._begin_wait(use_stream, callbacks, interval_s)

        if waiter is not None:
            try:
                await waiter
            except asyncio.CancelledError:
                self.disconnect()
                raise
        return SendMessageResult(user_message=user_message, assistant_message=assistant_message)

    async def start_streaming(
        self,
        *,
        on_message: Callable[[ChatMessage], None] | None = None,
        on_chat: Callable[[Chat], None] | None = None,
        on_tool_call: Callable[[ToolCall], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> asyncio.Future[None] | None:
        """Attach to the current chat's stream; the returned future resolves on idle."""
        if self._chat_id is None:
            return None
        callbacks = _TurnCallbacks(on_message, on_chat, on_tool_call, on_error)
        return await self._begin_wait(True, callbacks, self._settings.poll_interval_s)

    async def get_chat(self, chat_id: str | None = None) -> Chat | None:
        target = chat_id or self._chat_id
        if target is None:
            return None
        return Chat.model_validate(await self._http.request("get", f"/chats/{target}"))

    async def submit_tool_result(self, invocation_id: str, result: str | Mapping[str, Any]) -> None:
        payload = result if isinstance(result, str) else json.dumps(result)
        await self._http.request("post", f"/tools/{invocation_id}", json_body={"result": payload})

    async def stop_generation(self) -> None:
        """Stop waiting locally, then ask the server to stop generating.

        The local teardown always happens; a failing server call still raises.
        """
        chat_id = self._chat_id
        self.disconnect()
        if chat_id is None:
            return
        await self._http.request("post", f"/chats/{chat_id}/stop")

    def disconnect(self) -> None:
        """Stop the active stream or poller; any pending wait returns."""
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.stop()
        self._finish_wait(self._wait)

    def reset(self) -> None:
        self.disconnect()
        self._chat_id = None
        self._dispatcher.reset()

    # -- waiting ---------------------------------------------------------------

    async def _begin_wait(
        self,
        use_stream: bool,
        callbacks: _TurnCallbacks,
        interval_s: float,
    ) -> asyncio.Future[None]:
        self.disconnect()
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._wait = future
        if use_stream:
            await self._stream_until_idle(future, callbacks)
        else:
            self._poll_until_idle(future, callbacks, interval_s)
        return future

    async def _stream_until_idle(self, future: asyncio.Future[None], callbacks: _TurnCallbacks) -> None:
        chat_id = self._chat_id

        async def _create_source() -> EventSource | None:
            return await self._http.create_event_source(f"/chats/{chat_id}/stream")

        def _on_chat(data: Any) -> None:
            chat = _validate(Chat, data)
            if chat is None:
                return
            callbacks.chat(chat)
            if self._channel is not channel or chat.status is None:
                return
            if chat.is_busy:
                channel.cancel_deferred_stop()
                return
            self._finish_wait(future)
            if not self._dispatcher.pending:
                channel.stop_after(self._settings.idle_linger_s)

        def _on_message(data: Any) -> None:
            message = _validate(ChatMessage, data)
            if message is None or (message.chat_id and message.chat_id != chat_id):
                return
            callbacks.message(message)
            if self._channel is not channel:
                return
            self._dispatcher.dispatch(message, on_tool_call=callbacks.on_tool_call)

        channel = self._channel_factory(
            _create_source,
            auto_reconnect=True,
            max_reconnects=self._settings.max_reconnects,
            reconnect_delay_s=self._settings.reconnect_delay_s,
            on_error=callbacks.error,
            on_stop=lambda: self._on_channel_stopped(channel, future),
            name=f"chat:{chat_id}",
        )
        channel.add_event_listener(CHATS_EVENT, _on_chat)
        channel.add_event_listener(CHAT_MESSAGES_EVENT, _on_message)
        self._channel = channel
        await channel.connect()

    def _poll_until_idle(
        self,
        future: asyncio.Future[None],
        callbacks: _TurnCallbacks,
        interval_s: float,
    ) -> None:
        chat_id = self._chat_id
        previous_status: str | None = None
        seen_status = False

        async def _poll() -> Chat | None:
            # Cheap status probe first; the full chat is fetched only on change.
            probe = await self._http.request("get", f"/chats/{chat_id}/status")
            status = probe.get("status") if isinstance(probe, Mapping) else None
            if seen_status and status == previous_status:
                return None
            return Chat.model_validate(await self._http.request("get", f"/chats/{chat_id}"))

        def _on_data(chat: Chat | None) -> None:
            nonlocal previous_status, seen_status
            if chat is None:
                return
            previous_status = chat.status
            seen_status = True
            callbacks.chat(chat)
            for message in chat.chat_messages or []:
                if self._channel is not poller:
                    return
                callbacks.message(message)
                if self._channel is not poller:
                    return
                self._dispatcher.dispatch(message, on_tool_call=callbacks.on_tool_call)
            if self._channel is not poller:
                return
            if not chat.is_busy:
                self._finish_wait(future)
                self._channel = None
                poller.stop()

        poller = self._poller_factory(
            _poll,
            interval_s=interval_s,
            max_retries=self._settings.poll_max_retries,
            on_data=_on_data,
            on_error=callbacks.error,
            on_stop=lambda: self._on_channel_stopped(poller, future),
            name=f"chat:{chat_id}",
        )
        self._channel = poller
        poller.start()

    def _on_channel_stopped(self, channel: EventChannel | PollChannel, future: asyncio.Future[None]) -> None:
        if self._channel is channel:
            # Stopped on its own (retry budget exhausted) rather than by us.
            self._channel = None
            if not future.done():
                logger.warning("chat_wait_abandoned", extra={"chat_id": self._chat_id, "channel": channel.name})
        self._finish_wait(future)

    def _finish_wait(self, future: asyncio.Future[None] | None) -> None:
        if future is None:
            return
        if not future.done():
            future.set_result(None)
        if self._wait is future:
            self._wait = None

    # -- request assembly ------------------------------------------------------

    async def _upload_attachments(
        self,
        files: Sequence[UploadSource | File] | None,
    ) -> tuple[list[str] | None, list[str] | None]:
        if not files:
            return None, None
        uploaded = await self._files.upload_many(list(files))
        images = [item.uri for item in uploaded if item.is_image]
        others = [item.uri for item in uploaded if not item.is_image]
        return images or None, others or None

    def _build_body(self, text: str, images: list[str] | None, attachments: list[str] | None) -> dict[str, Any]:
        message_input = {
            "text": text,
            "images": images,
            "files": attachments,
            "role": "user",
            "context": [],
            "system_prompt": "",
            "context_size": 0,
        }
        if isinstance(self._agent, str):
            return {"chat_id": self._chat_id, "agent": self._agent, "input": message_input}
        config = dict(self._agent)
        return {
            "chat_id": self._chat_id,
            "agent_config": config,
            "agent_name": self._agent_name or config.get("name"),
            "input": message_input,
        }


def _validate(model: type[Chat] | type[ChatMessage], data: Any) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("chat_update_invalid", extra={"model": model.__name__, "error": str(exc)})
        return None


__all__ = ["AgentConfig", "ChatCoordinator", "SendMessageResult", "WaitSettings"]
