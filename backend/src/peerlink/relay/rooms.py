"""Room directory: room identifier to the set of joined connections."""

from __future__ import annotations

from typing import Any, Dict, Set


class RoomDirectory:
    """Track room membership; a room exists only while it has members."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Any]] = {}

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def join(self, room_id: str, connection: Any) -> bool:
        """Add *connection* to *room_id*; return ``True`` when the room was created."""

        bucket = self._rooms.get(room_id)
        created = bucket is None
        if bucket is None:
            bucket = self._rooms[room_id] = set()
        bucket.add(connection)
        return created

    def leave(self, room_id: str, connection: Any) -> bool:
        """Remove *connection*; return ``True`` when the room became empty and was dropped."""

        bucket = self._rooms.get(room_id)
        if bucket is None:
            return False
        bucket.discard(connection)
        if not bucket:
            self._rooms.pop(room_id, None)
            return True
        return False

    def members(self, room_id: str) -> set[Any]:
        return set(self._rooms.get(room_id, ()))

    def rooms(self) -> dict[str, int]:
        return {room_id: len(bucket) for room_id, bucket in self._rooms.items()}


__all__ = ["RoomDirectory"]
