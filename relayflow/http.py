"""HTTP request function and event-source factory backed by httpx."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import urlencode

import httpx

from .config import ClientConfig
from .errors import APIError, RequirementsNotMetError
from .sse import HttpxEventSource

logger = logging.getLogger("relayflow.http")

PROXY_TARGET_HEADER = "x-inf-target-url"
PROXY_TARGET_PARAM = "__inf_target"


def _error_detail(payload: Any, body: str) -> str:
    if isinstance(payload, Mapping):
        error = payload.get("error")
        if isinstance(error, Mapping) and error.get("message"):
            return str(error["message"])
        if error:
            return str(error)
        if payload.get("message"):
            return str(payload["message"])
        return json.dumps(payload)[:500]
    if body:
        return body[:500]
    return "Request failed"


def _raise_for_response(response: httpx.Response, body: str, payload: Any) -> None:
    if 200 <= response.status_code < 300:
        return
    if (
        response.status_code == 412
        and isinstance(payload, Mapping)
        and isinstance(payload.get("errors"), list)
    ):
        raise RequirementsNotMetError(payload["errors"], status_code=412, response_body=body)
    raise APIError(response.status_code, _error_detail(payload, body), response_body=body)


class HttpClient:
    """Issues API requests and opens event streams against one deployment.

    In proxy mode requests go to ``proxy_url`` with the real target carried in
    the ``x-inf-target-url`` header and no credentials attached.
    """

    def __init__(self, config: ClientConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = client
        self._owns_client = client is None

    @property
    def base_url(self) -> str:
        return self.config.base_url

    @property
    def client(self) -> httpx.AsyncClient:
        """Underlying httpx client; carries no credentials of its own."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def target_url(self, path: str, params: Mapping[str, Any] | None = None) -> str:
        url = f"{self.config.base_url}{path}"
        if params:
            query = {key: str(value) for key, value in params.items() if value is not None}
            if query:
                url = f"{url}?{urlencode(query)}"
        return url

    def _headers(self, target: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.config.headers)
        if self.config.proxy_mode:
            headers[PROXY_TARGET_HEADER] = target
        elif self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        """Send one API request and return the unwrapped ``data`` field."""
        target = self.target_url(path, params)
        url = self.config.proxy_url if self.config.proxy_mode else target
        client = self.client
        logger.debug("http_request", extra={"method": method.upper(), "path": path})
        response = await client.request(
            method.upper(),
            url,  # type: ignore[arg-type]
            headers=self._headers(target),
            content=None if json_body is None else json.dumps(json_body),
        )
        body = response.text
        try:
            payload = json.loads(body) if body else None
        except json.JSONDecodeError:
            payload = None
        _raise_for_response(response, body, payload)
        if not isinstance(payload, Mapping) or not payload.get("success"):
            message = None
            if isinstance(payload, Mapping) and isinstance(payload.get("error"), Mapping):
                message = payload["error"].get("message")
            if not message:
                message = f"Request failed (success=false). Response: {body[:500]}"
            raise APIError(response.status_code, message, response_body=body)
        return payload.get("data")

    async def create_event_source(self, path: str) -> HttpxEventSource:
        target = self.target_url(path)
        headers = dict(self.config.headers)
        params: dict[str, str] | None = None
        if self.config.proxy_mode:
            url = self.config.proxy_url or ""
            params = {PROXY_TARGET_PARAM: target}
            headers[PROXY_TARGET_HEADER] = target
        else:
            url = target
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
        # Streams never time out between events, so each one gets a dedicated
        # client unless a client was injected.
        owned: httpx.AsyncClient | None = None
        if self._client is not None and not self._owns_client:
            client = self._client
        else:
            client = owned = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_s, read=None))
        return await HttpxEventSource.open(client, url, headers=headers, params=params, owned_client=owned)


__all__ = ["HttpClient", "PROXY_TARGET_HEADER", "PROXY_TARGET_PARAM"]
