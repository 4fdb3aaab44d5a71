from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_BASE_URL = "https://api.inference.sh"

ENV_API_KEY = "RELAYFLOW_API_KEY"
ENV_BASE_URL = "RELAYFLOW_BASE_URL"
ENV_PROXY_URL = "RELAYFLOW_PROXY_URL"


@dataclass(slots=True)
class ClientConfig:
    api_key: str | None = None
    base_url: str = DEFAULT_BASE_URL
    proxy_url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout_s: float | None = 30.0
    # Default transport for chat waits: stream (True) or poll (False).
    stream: bool = True
    poll_interval_s: float = 2.0
    poll_max_retries: int = 5
    max_reconnects: int = 5
    reconnect_delay_s: float = 1.0
    idle_linger_s: float = 2.0

    def __post_init__(self) -> None:
        if not self.api_key and not self.proxy_url:
            raise ValueError("Either api_key or proxy_url is required")
        self.base_url = self.base_url.rstrip("/")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if self.poll_max_retries < 1:
            raise ValueError("poll_max_retries must be at least 1")
        if self.max_reconnects < 0:
            raise ValueError("max_reconnects must be non-negative")
        if self.reconnect_delay_s < 0 or self.idle_linger_s < 0:
            raise ValueError("delays must be non-negative")

    @property
    def proxy_mode(self) -> bool:
        return bool(self.proxy_url)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> ClientConfig:
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        if env.get(ENV_API_KEY):
            values["api_key"] = env[ENV_API_KEY]
        if env.get(ENV_BASE_URL):
            values["base_url"] = env[ENV_BASE_URL]
        if env.get(ENV_PROXY_URL):
            values["proxy_url"] = env[ENV_PROXY_URL]
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


__all__ = ["ClientConfig", "DEFAULT_BASE_URL"]
