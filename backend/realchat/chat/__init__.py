"""Real-time chat: gatekeeper, presence, message pipeline and history replay."""
from .connection import Connection
from .gatekeeper import ConnectionGatekeeper
from .history import HistoryReplay
from .pipeline import MessagePipeline
from .presence import MessageClock, PresenceTracker, Room

__all__ = [
    "Connection",
    "ConnectionGatekeeper",
    "HistoryReplay",
    "MessageClock",
    "MessagePipeline",
    "PresenceTracker",
    "Room",
]
