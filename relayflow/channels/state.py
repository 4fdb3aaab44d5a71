"""Lifecycle state and reconnect policy shared by update channels."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ChannelState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(slots=True)
class ReconnectBudget:
    """Bounded patience before the first successful connection, unbounded after.

    ``attempts`` counts reconnects since the last successful open. Once the
    channel has connected at least once, errors always retry.
    """

    max_attempts: int = 5
    delay_s: float = 1.0
    attempts: int = 0
    has_connected: bool = False

    @property
    def exhausted(self) -> bool:
        return not self.has_connected and self.attempts >= self.max_attempts

    def record_attempt(self) -> None:
        self.attempts += 1

    def record_success(self) -> None:
        self.has_connected = True
        self.attempts = 0


__all__ = ["ChannelState", "ReconnectBudget"]
