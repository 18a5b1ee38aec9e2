"""Connection registry and per-connection session state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Hashable

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .rooms import RoomDirectory


class SessionState(str, Enum):
    """Protocol state of a single connection."""

    UNIDENTIFIED = "unidentified"
    JOINED = "joined"


@dataclass(slots=True, eq=False)
class Session:
    connection: Any
    user_id: str | None = None
    username: str | None = None
    room_id: str | None = None

    @property
    def state(self) -> SessionState:
        if self.user_id is None or self.room_id is None:
            return SessionState.UNIDENTIFIED
        return SessionState.JOINED

    def to_public(self) -> dict[str, Any]:
        return {"userId": self.user_id, "username": self.username}


class ConnectionRegistry:
    """Map live connections to their session.

    Not synchronised on its own: every mutation happens while the owning
    relay holds its lock.
    """

    def __init__(self, directory: "RoomDirectory") -> None:
        self._directory = directory
        self._sessions: Dict[Hashable, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection: object) -> bool:
        return connection in self._sessions

    def register(self, connection: Any) -> Session:
        session = self._sessions.get(connection)
        if session is None:
            session = Session(connection=connection)
            self._sessions[connection] = session
        return session

    def bind(self, connection: Any, user_id: str, username: str, room_id: str) -> Session:
        session = self.register(connection)
        if session.state is SessionState.JOINED:
            raise ValueError("Session is already bound to a room")
        session.user_id = user_id
        session.username = username
        session.room_id = room_id
        return session

    def unbind(self, connection: Any) -> Session | None:
        """Return the connection to the unidentified state, keeping it registered."""

        session = self._sessions.get(connection)
        if session is None or session.state is SessionState.UNIDENTIFIED:
            return None
        departed = Session(
            connection=connection,
            user_id=session.user_id,
            username=session.username,
            room_id=session.room_id,
        )
        session.user_id = None
        session.username = None
        session.room_id = None
        return departed

    def connections(self) -> list[Any]:
        return list(self._sessions)

    def lookup(self, connection: Any) -> Session | None:
        return self._sessions.get(connection)

    def lookup_by_user_id(self, room_id: str, user_id: str) -> Any | None:
        for connection in self._directory.members(room_id):
            session = self._sessions.get(connection)
            if session is None:
                continue
            if session.room_id == room_id and session.user_id == user_id:
                return connection
        return None

    def remove(self, connection: Any) -> Session | None:
        return self._sessions.pop(connection, None)

    def user_id_in_use(self, user_id: str) -> bool:
        return any(session.user_id == user_id for session in self._sessions.values())

    def roster(self, room_id: str) -> list[dict[str, Any]]:
        """Return ``{userId, username}`` for every bound member of *room_id*."""

        entries = []
        for connection in self._directory.members(room_id):
            session = self._sessions.get(connection)
            if session is None or session.room_id != room_id:
                continue
            entries.append(session.to_public())
        return entries


__all__ = ["ConnectionRegistry", "Session", "SessionState"]
