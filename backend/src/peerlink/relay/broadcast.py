"""Fan-out of roster/presence messages and direct peer delivery."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict

from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import relay_messages_total, relay_signals_dropped_total

from .protocol import build_user_list, encode_message
from .rooms import RoomDirectory
from .sessions import ConnectionRegistry

logger = logging.getLogger(__name__)


def is_open(connection: Any) -> bool:
    """Return ``True`` when both sides of the connection are still connected."""

    if getattr(connection, "application_state", None) != WebSocketState.CONNECTED:
        return False
    return getattr(connection, "client_state", WebSocketState.CONNECTED) == WebSocketState.CONNECTED


async def safe_send_text(connection: Any, data: str) -> bool:
    """Send a pre-serialised frame, skipping closed connections.

    Returns True if the frame was handed to the transport, False otherwise.
    """
    if not is_open(connection):
        return False
    try:
        await connection.send_text(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class Outbox:
    """Ordered outbound queue of one connection, drained by a single writer task."""

    def __init__(self, connection: Any) -> None:
        self.connection = connection
        self._queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue()
        self._task = asyncio.create_task(self._drain(), name=f"relay-outbox-{id(connection):x}")

    def put(self, message_type: str, data: str) -> None:
        self._queue.put_nowait((message_type, data))

    def close(self) -> None:
        """Stop the writer once the frames already queued have been attempted."""
        self._queue.put_nowait(None)

    async def flush(self) -> None:
        await self._queue.join()

    async def cancel(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                message_type, data = item
                if await safe_send_text(self.connection, data):
                    relay_messages_total.labels("out", message_type).inc()
                elif message_type == "signal":
                    relay_signals_dropped_total.inc()
            finally:
                self._queue.task_done()


class BroadcastEngine:
    """Deliver relay messages to room members or a single connection.

    The ``*_locked`` methods run while the relay lock is held: they read
    membership and enqueue the encoded frame in one step, so every member
    sees membership changes in the order they were applied. The writer tasks
    do the actual sending, so a slow peer never holds the lock.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        directory: RoomDirectory,
        lock: asyncio.Lock,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._lock = lock
        self._outboxes: Dict[Any, Outbox] = {}

    def discard_locked(self, connection: Any) -> None:
        outbox = self._outboxes.pop(connection, None)
        if outbox is not None:
            outbox.close()

    def send_locked(self, connection: Any, message: dict[str, Any]) -> bool:
        if not is_open(connection):
            return False
        self._outbox(connection).put(message["type"], encode_message(message))
        return True

    def broadcast_to_room_locked(
        self,
        room_id: str,
        message: dict[str, Any],
        *,
        exclude: Any | None = None,
    ) -> int:
        data = encode_message(message)
        queued = 0
        for connection in self._directory.members(room_id):
            if connection is exclude or not is_open(connection):
                continue
            self._outbox(connection).put(message["type"], data)
            queued += 1
        return queued

    def send_roster_locked(self, room_id: str) -> int:
        if room_id not in self._directory:
            return 0
        return self.broadcast_to_room_locked(room_id, build_user_list(self._registry.roster(room_id)))

    async def send(self, connection: Any, message: dict[str, Any]) -> bool:
        async with self._lock:
            return self.send_locked(connection, message)

    async def broadcast_to_room(
        self,
        room_id: str,
        message: dict[str, Any],
        *,
        exclude: Any | None = None,
    ) -> int:
        async with self._lock:
            return self.broadcast_to_room_locked(room_id, message, exclude=exclude)

    async def send_roster(self, room_id: str) -> int:
        async with self._lock:
            return self.send_roster_locked(room_id)

    async def flush(self) -> None:
        """Wait until every queued frame has been attempted."""

        await asyncio.gather(*(outbox.flush() for outbox in list(self._outboxes.values())))

    async def aclose(self) -> None:
        outboxes = list(self._outboxes.values())
        self._outboxes.clear()
        await asyncio.gather(*(outbox.cancel() for outbox in outboxes))

    def _outbox(self, connection: Any) -> Outbox:
        outbox = self._outboxes.get(connection)
        if outbox is None:
            outbox = self._outboxes[connection] = Outbox(connection)
        return outbox


__all__ = ["BroadcastEngine", "Outbox", "is_open", "safe_send_text"]
