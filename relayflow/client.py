"""Entry point tying configuration, transport and coordinators together."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from .agents import AgentConfig, ChatCoordinator, WaitSettings
from .channels import EventChannel
from .config import ClientConfig
from .files import FilesAPI
from .http import HttpClient
from .models import Chat, Task
from .runs import RunCoordinator, RunOptions
from .tools import ToolHandler

logger = logging.getLogger("relayflow.client")


class TasksAPI:
    def __init__(self, http: HttpClient, runs: RunCoordinator) -> None:
        self._http = http
        self._runs = runs

    async def get(self, task_id: str) -> Task:
        return Task.model_validate(await self._http.request("get", f"/tasks/{task_id}"))

    async def cancel(self, task_id: str) -> None:
        await self._http.request("post", f"/tasks/{task_id}/cancel")
        logger.info("task_cancel_requested", extra={"task_id": task_id})

    async def stream(self, task_id: str, options: RunOptions | None = None) -> Task:
        """Attach to an already submitted task and wait for its terminal status."""
        return await self._runs.wait_for_task(task_id, options)


class ChatsAPI:
    def __init__(self, http: HttpClient) -> None:
        self._http = http

    async def get(self, chat_id: str) -> Chat:
        return Chat.model_validate(await self._http.request("get", f"/chats/{chat_id}"))

    async def status(self, chat_id: str) -> str | None:
        payload = await self._http.request("get", f"/chats/{chat_id}/status")
        return payload.get("status") if isinstance(payload, Mapping) else None

    async def stop(self, chat_id: str) -> None:
        await self._http.request("post", f"/chats/{chat_id}/stop")


class RelayClient:
    """Async client for tasks, agent chats and file uploads.

    Either pass a ready :class:`ClientConfig` or its fields as keyword
    arguments. Use as an async context manager to close the owned httpx
    client on exit.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        channel_factory: Callable[..., EventChannel] = EventChannel,
        **options: Any,
    ) -> None:
        if config is None:
            config = ClientConfig(**options)
        elif options:
            raise TypeError("Pass either a ClientConfig or keyword options, not both")
        self.config = config
        self.http = HttpClient(config, client=http_client)
        self.files = FilesAPI(self.http)
        self._channel_factory = channel_factory
        self._runs = RunCoordinator(self.http, self.files, channel_factory=channel_factory)
        self.tasks = TasksAPI(self.http, self._runs)
        self.chats = ChatsAPI(self.http)

    async def __aenter__(self) -> RelayClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    async def run(
        self,
        params: Mapping[str, Any],
        options: RunOptions | None = None,
        **overrides: Any,
    ) -> Task:
        """Submit an app run; keyword overrides build :class:`RunOptions` inline."""
        if overrides:
            if options is not None:
                raise TypeError("Pass either RunOptions or keyword options, not both")
            overrides.setdefault("max_reconnects", self.config.max_reconnects)
            overrides.setdefault("reconnect_delay_s", self.config.reconnect_delay_s)
            options = RunOptions(**overrides)
        elif options is None:
            options = RunOptions(
                max_reconnects=self.config.max_reconnects,
                reconnect_delay_s=self.config.reconnect_delay_s,
            )
        return await self._runs.run(params, options)

    def agent(
        self,
        config: AgentConfig,
        *,
        name: str | None = None,
        tools: Mapping[str, ToolHandler] | None = None,
    ) -> ChatCoordinator:
        return ChatCoordinator(
            self.http,
            self.files,
            config,
            name=name,
            tools=tools,
            settings=WaitSettings.from_config(self.config),
            channel_factory=self._channel_factory,
        )


__all__ = ["ChatsAPI", "RelayClient", "TasksAPI"]
