"""The signalling relay: shared room/session state and its operations."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable

from app.monitoring.metrics import (
    relay_active_connections,
    relay_active_rooms,
    relay_signals_dropped_total,
)

from .broadcast import BroadcastEngine
from .protocol import (
    build_room_joined,
    build_signal_envelope,
    build_user_joined,
    build_user_left,
)
from .rooms import RoomDirectory
from .sessions import ConnectionRegistry, Session, SessionState

logger = logging.getLogger(__name__)

GOING_AWAY = 1001


def generate_user_id() -> str:
    return uuid.uuid4().hex


class SignalingRelay:
    """Own the connection registry and room directory.

    A single ``asyncio.Lock`` guards every read and mutation of the shared
    state. Outgoing frames are queued while the lock is held and written by
    the broadcaster's per-connection writer tasks.
    """

    def __init__(self, *, id_factory: Callable[[], str] | None = None) -> None:
        self._id_factory = id_factory or generate_user_id
        self.reset()

    def reset(self) -> None:
        """Drop all rooms and sessions and start over with a fresh lock.

        Called when the application starts so the lock belongs to the
        serving event loop.
        """
        self._lock = asyncio.Lock()
        self._directory = RoomDirectory()
        self._registry = ConnectionRegistry(self._directory)
        self._broadcast = BroadcastEngine(self._registry, self._directory, self._lock)

    @property
    def broadcaster(self) -> BroadcastEngine:
        return self._broadcast

    async def connect(self, connection: Any) -> Session:
        async with self._lock:
            session = self._registry.register(connection)
            self._update_gauges_locked()
        return session

    async def state_of(self, connection: Any) -> SessionState:
        async with self._lock:
            session = self._registry.lookup(connection)
            return session.state if session is not None else SessionState.UNIDENTIFIED

    async def join(self, connection: Any, username: str, room_id: str) -> Session | None:
        """Bind *connection* to a fresh identity inside *room_id*.

        Returns ``None`` without side effects when the connection already
        belongs to a room.
        """
        async with self._lock:
            current = self._registry.lookup(connection)
            if current is not None and current.state is SessionState.JOINED:
                return None
            user_id = self._allocate_user_id_locked()
            self._registry.bind(connection, user_id, username, room_id)
            created = self._directory.join(room_id, connection)
            existing = [
                entry for entry in self._registry.roster(room_id) if entry["userId"] != user_id
            ]
            self._update_gauges_locked()
            self._broadcast.send_locked(connection, build_room_joined(room_id, user_id, existing))
            self._broadcast.broadcast_to_room_locked(
                room_id, build_user_joined(user_id, username), exclude=connection
            )
            self._broadcast.send_roster_locked(room_id)

        if created:
            logger.info("Room %s created", room_id)
        logger.info("%s (%s) joined room %s", username, user_id, room_id)
        return Session(connection=connection, user_id=user_id, username=username, room_id=room_id)

    async def signal(self, connection: Any, target_id: str, payload: Any) -> bool:
        """Relay *payload* to *target_id* within the sender's room."""

        async with self._lock:
            sender = self._registry.lookup(connection)
            if sender is None or sender.state is not SessionState.JOINED:
                return False
            target = self._registry.lookup_by_user_id(sender.room_id, target_id)
            from_id = sender.user_id
            room_id = sender.room_id
            queued = target is not None and self._broadcast.send_locked(
                target, build_signal_envelope(from_id, payload)
            )

        if target is None:
            relay_signals_dropped_total.inc()
            logger.debug("Dropping signal from %s: %s is not in room %s", from_id, target_id, room_id)
        elif not queued:
            relay_signals_dropped_total.inc()
            logger.debug("Dropping signal from %s: %s is no longer connected", from_id, target_id)
        return queued

    async def leave(self, connection: Any) -> bool:
        """Remove the connection from its room; the transport stays open."""

        return await self._depart(connection, forget=False)

    async def disconnect(self, connection: Any) -> bool:
        """Run cleanup for a closed transport. Safe to call more than once."""

        return await self._depart(connection, forget=True)

    async def _depart(self, connection: Any, *, forget: bool) -> bool:
        async with self._lock:
            departed = self._registry.unbind(connection)
            room_removed = False
            if departed is not None:
                room_removed = self._directory.leave(departed.room_id, connection)
            forgotten = self._registry.remove(connection) if forget else None
            if forget:
                self._broadcast.discard_locked(connection)
            self._update_gauges_locked()
            if departed is not None and not room_removed:
                self._broadcast.broadcast_to_room_locked(
                    departed.room_id, build_user_left(departed.user_id, departed.username)
                )
                self._broadcast.send_roster_locked(departed.room_id)

        if forgotten is not None:
            logger.info("Client disconnected")
        if departed is None:
            return False
        if room_removed:
            logger.info("Room %s is now empty and removed", departed.room_id)
        else:
            logger.info("%s (%s) left room %s", departed.username, departed.user_id, departed.room_id)
        return True

    async def flush(self) -> None:
        """Wait for every frame queued so far to be handed to its transport."""

        await self._broadcast.flush()

    async def rooms_overview(self) -> list[dict[str, Any]]:
        async with self._lock:
            rooms = self._directory.rooms()
        return [{"roomId": room_id, "members": size} for room_id, size in sorted(rooms.items())]

    async def roster(self, room_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return self._registry.roster(room_id)

    async def close_all(self, *, code: int = GOING_AWAY) -> int:
        """Close every registered connection, e.g. on server shutdown."""

        async with self._lock:
            connections = self._registry.connections()
        closed = 0
        for connection in connections:
            try:
                await connection.close(code=code)
            except RuntimeError as exc:
                logger.debug("Connection already closed during shutdown: %s", exc)
                continue
            closed += 1
        return closed

    def _allocate_user_id_locked(self) -> str:
        user_id = self._id_factory()
        while self._registry.user_id_in_use(user_id):
            logger.warning("Generated user id %s collides with a live session; regenerating", user_id)
            user_id = self._id_factory()
        return user_id

    def _update_gauges_locked(self) -> None:
        relay_active_connections.set(len(self._registry))
        relay_active_rooms.set(len(self._directory))


# ---------------------------------------------------------------------------
# Module level lifecycle helpers
# ---------------------------------------------------------------------------


relay = SignalingRelay()


async def startup_relay() -> None:
    relay.reset()
    logger.info("Signalling relay ready")


async def shutdown_relay() -> None:
    closed = await relay.close_all()
    await relay.broadcaster.aclose()
    logger.info("Signalling relay stopped; closed %s connection(s)", closed)


def get_relay() -> SignalingRelay:
    return relay


__all__ = [
    "GOING_AWAY",
    "SignalingRelay",
    "generate_user_id",
    "get_relay",
    "relay",
    "shutdown_relay",
    "startup_relay",
]
