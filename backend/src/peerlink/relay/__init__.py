"""In-memory signalling relay: sessions, rooms, routing and fan-out."""

from .broadcast import BroadcastEngine, Outbox, is_open, safe_send_text  # noqa: F401
from .protocol import MalformedMessageError  # noqa: F401
from .rooms import RoomDirectory  # noqa: F401
from .router import MessageRouter  # noqa: F401
from .service import (  # noqa: F401
    SignalingRelay,
    get_relay,
    shutdown_relay,
    startup_relay,
)
from .sessions import ConnectionRegistry, Session, SessionState  # noqa: F401

__all__ = [
    "BroadcastEngine",
    "ConnectionRegistry",
    "MalformedMessageError",
    "MessageRouter",
    "Outbox",
    "RoomDirectory",
    "Session",
    "SessionState",
    "SignalingRelay",
    "get_relay",
    "is_open",
    "safe_send_text",
    "shutdown_relay",
    "startup_relay",
]
