from fastapi import APIRouter

from peerlink.relay import get_relay

router = APIRouter()


@router.get("/rooms", tags=["rooms"])
async def list_rooms() -> dict[str, list[dict]]:
    """Return every active room with its member count."""

    return {"rooms": await get_relay().rooms_overview()}


@router.get("/rooms/{room_id}/users", tags=["rooms"])
async def list_room_users(room_id: str) -> dict[str, list[dict]]:
    """Return the current roster of *room_id* (empty when the room does not exist)."""

    return {"users": await get_relay().roster(room_id)}
