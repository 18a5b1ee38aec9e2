"""WebSocket transport for the signalling relay."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from fastapi import APIRouter, WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.config import Settings, get_settings
from peerlink.relay import MessageRouter, get_relay

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

relay = get_relay()
message_router = MessageRouter(
    relay,
    max_message_bytes=settings.max_message_bytes,
    max_username_length=settings.max_username_length,
    max_room_id_length=settings.max_room_id_length,
)

PING_MESSAGE = {"type": "ping"}


@dataclass
class KeepalivePolicy:
    """When to wake up on an idle socket and whether to ping it.

    A zero ``timeout`` disables keepalive entirely. A zero ``interval`` pings
    on every idle wake-up.
    """

    timeout: float = 0.0
    interval: float = 0.0
    last_activity: float = field(default_factory=time.monotonic)
    last_ping: float | None = None

    @classmethod
    def from_settings(cls, config: Settings) -> "KeepalivePolicy":
        return cls(
            timeout=float(config.websocket_keepalive_timeout_seconds or 0),
            interval=float(config.websocket_keepalive_ping_interval_seconds or 0),
        )

    @property
    def enabled(self) -> bool:
        return self.timeout > 0

    def ping_due(self, now: float) -> bool:
        if self.interval <= 0:
            return True
        if now - self.last_activity < self.interval:
            return False
        return self.last_ping is None or now - self.last_ping >= self.interval

    def mark_activity(self, now: float) -> None:
        self.last_activity = now
        self.last_ping = None

    def mark_ping(self, now: float) -> None:
        self.last_ping = now


async def receive_frame(websocket: WebSocket) -> str | bytes:
    """Return the next text or binary frame from *websocket*."""

    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is not None:
        return text
    return message.get("bytes") or b""


async def relay_frames(websocket: WebSocket, policy: KeepalivePolicy) -> AsyncIterator[str | bytes]:
    """Yield client frames until the socket goes away.

    Pings are queued on the connection's outbox so they never interleave
    with relay traffic being written to the same socket.
    """

    while True:
        try:
            if policy.enabled:
                frame = await asyncio.wait_for(receive_frame(websocket), timeout=policy.timeout)
            else:
                frame = await receive_frame(websocket)
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                return
            now = time.monotonic()
            if policy.ping_due(now):
                if not await relay.broadcaster.send(websocket, PING_MESSAGE):
                    return
                policy.mark_ping(now)
            continue
        except (RuntimeError, WebSocketDisconnect):
            return
        policy.mark_activity(time.monotonic())
        yield frame


@router.websocket("/signal")
async def websocket_signal(websocket: WebSocket) -> None:
    """Relay join/signal/leave messages for one client."""

    await websocket.accept()
    await relay.connect(websocket)
    client = websocket.client
    logger.info("New client connected from %s", f"{client.host}:{client.port}" if client else "unknown")

    try:
        async for frame in relay_frames(websocket, KeepalivePolicy.from_settings(settings)):
            await message_router.dispatch(websocket, frame)
    finally:
        await relay.disconnect(websocket)
