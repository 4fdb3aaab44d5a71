"""Update channels: reconnecting event streams and polling loops."""

from .decoder import FullUpdate, PartialUpdate, UpdateEvent, decode_update, dispatch_update, is_partial_envelope
from .multiplexer import UpdateMultiplexer
from .poll import PollChannel
from .state import ChannelState, ReconnectBudget
from .stream import EventChannel, EventSource, SourceFactory

__all__ = [
    "ChannelState",
    "EventChannel",
    "EventSource",
    "FullUpdate",
    "PartialUpdate",
    "PollChannel",
    "ReconnectBudget",
    "SourceFactory",
    "UpdateEvent",
    "UpdateMultiplexer",
    "decode_update",
    "dispatch_update",
    "is_partial_envelope",
]
