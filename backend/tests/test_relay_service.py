"""Behaviour of the relay core with in-memory connections."""

from __future__ import annotations

import asyncio
import random

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import (
    relay_active_connections,
    relay_active_rooms,
    relay_messages_total,
    relay_signals_dropped_total,
)
from peerlink.relay import SessionState


async def _join(relay, socket, username: str, room_id: str):
    await relay.connect(socket)
    session = await relay.join(socket, username, room_id)
    assert session is not None
    await relay.flush()
    return session


def _types(socket) -> list[str]:
    return [message["type"] for message in socket.messages()]


@pytest.mark.anyio("asyncio")
async def test_first_member_receives_empty_roster(relay, make_socket) -> None:
    alice = make_socket("alice")

    await _join(relay, alice, "alice", "lobby")

    assert alice.messages() == [
        {"type": "room-joined", "roomId": "lobby", "userId": "user-1", "users": []},
        {"type": "user-list", "users": [{"userId": "user-1", "username": "alice"}]},
    ]


@pytest.mark.anyio("asyncio")
async def test_join_notifies_existing_members_then_broadcasts_roster(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "lobby")
    alice.sent.clear()

    await _join(relay, bob, "bob", "lobby")

    assert bob.messages()[0] == {
        "type": "room-joined",
        "roomId": "lobby",
        "userId": "user-2",
        "users": [{"userId": "user-1", "username": "alice"}],
    }
    assert _types(bob) == ["room-joined", "user-list"]
    assert _types(alice) == ["user-joined", "user-list"]
    assert alice.messages()[0] == {"type": "user-joined", "userId": "user-2", "username": "bob"}
    roster = alice.messages()[1]["users"]
    assert sorted(user["userId"] for user in roster) == ["user-1", "user-2"]


@pytest.mark.anyio("asyncio")
async def test_roster_after_nth_join_lists_everyone_once(relay, make_socket) -> None:
    sockets = [make_socket(f"peer{index}") for index in range(6)]
    random.Random(7).shuffle(sockets)

    for count, socket in enumerate(sockets, start=1):
        await _join(relay, socket, socket.name, "lobby")
        roster = socket.of_type("user-list")[-1]["users"]
        assert len(roster) == count
        assert len({user["userId"] for user in roster}) == count


@pytest.mark.anyio("asyncio")
async def test_leave_broadcasts_user_left_then_roster(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "lobby")
    await _join(relay, bob, "bob", "lobby")
    alice.sent.clear()
    bob.sent.clear()

    assert await relay.leave(alice) is True
    await relay.flush()

    assert bob.messages() == [
        {"type": "user-left", "userId": "user-1", "username": "alice"},
        {"type": "user-list", "users": [{"userId": "user-2", "username": "bob"}]},
    ]
    assert alice.messages() == []
    assert await relay.state_of(alice) is SessionState.UNIDENTIFIED


@pytest.mark.anyio("asyncio")
async def test_last_member_leaving_removes_room(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "lobby")
    await _join(relay, bob, "bob", "lobby")
    await relay.leave(alice)
    await relay.flush()
    bob.sent.clear()

    await relay.leave(bob)
    await relay.flush()

    assert bob.messages() == []
    assert await relay.rooms_overview() == []
    assert await relay.signal(alice, "user-2", {"sdp": "v=0"}) is False
    assert await relay.signal(bob, "user-1", {"sdp": "v=0"}) is False


@pytest.mark.anyio("asyncio")
async def test_leave_is_idempotent(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "lobby")
    await _join(relay, bob, "bob", "lobby")
    bob.sent.clear()

    assert await relay.leave(alice) is True
    assert await relay.leave(alice) is False
    assert await relay.disconnect(alice) is False
    assert await relay.disconnect(alice) is False
    await relay.flush()

    assert _types(bob) == ["user-left", "user-list"]


@pytest.mark.anyio("asyncio")
async def test_disconnect_without_session_is_a_noop(relay, make_socket) -> None:
    stranger = make_socket("stranger")
    await relay.connect(stranger)

    assert await relay.disconnect(stranger) is False
    assert await relay.disconnect(stranger) is False
    await relay.flush()
    assert stranger.messages() == []


@pytest.mark.anyio("asyncio")
async def test_rejoin_after_leave_gets_fresh_identity(relay, make_socket) -> None:
    alice = make_socket("alice")
    await _join(relay, alice, "alice", "lobby")
    await relay.leave(alice)

    session = await relay.join(alice, "alice", "attic")

    assert session.user_id == "user-2"
    assert await relay.rooms_overview() == [{"roomId": "attic", "members": 1}]


@pytest.mark.anyio("asyncio")
async def test_second_join_is_ignored(relay, make_socket) -> None:
    alice = make_socket("alice")
    await _join(relay, alice, "alice", "lobby")
    alice.sent.clear()

    assert await relay.join(alice, "alice", "attic") is None
    await relay.flush()
    assert alice.messages() == []
    assert await relay.rooms_overview() == [{"roomId": "lobby", "members": 1}]


@pytest.mark.anyio("asyncio")
async def test_signal_reaches_only_the_target(relay, make_socket) -> None:
    alice, bob, carol = make_socket("alice"), make_socket("bob"), make_socket("carol")
    for socket in (alice, bob, carol):
        await _join(relay, socket, socket.name, "lobby")
    for socket in (alice, bob, carol):
        socket.sent.clear()
    offer = {"type": "offer", "sdp": "v=0"}

    assert await relay.signal(alice, "user-2", offer) is True
    await relay.flush()

    assert bob.messages() == [{"type": "signal", "fromId": "user-1", "signal": offer}]
    assert carol.messages() == []
    assert alice.messages() == []
    assert relay_messages_total.value("out", "signal") == 1


@pytest.mark.anyio("asyncio")
async def test_signal_does_not_cross_rooms(relay, make_socket) -> None:
    alice, other_alice = make_socket("alice"), make_socket("alice")
    await _join(relay, alice, "alice", "r1")
    intruder_target = await _join(relay, other_alice, "alice", "r2")
    other_alice.sent.clear()

    assert await relay.signal(alice, intruder_target.user_id, {"candidate": "x"}) is False
    await relay.flush()

    assert other_alice.messages() == []
    assert relay_signals_dropped_total.value() == 1


@pytest.mark.anyio("asyncio")
async def test_signal_to_unknown_target_is_dropped(relay, make_socket) -> None:
    alice = make_socket("alice")
    await _join(relay, alice, "alice", "lobby")
    alice.sent.clear()

    assert await relay.signal(alice, "nobody", {"candidate": "x"}) is False
    await relay.flush()
    assert alice.messages() == []


@pytest.mark.anyio("asyncio")
async def test_closed_connections_are_skipped(relay, make_socket) -> None:
    alice, bob, carol = make_socket("alice"), make_socket("bob"), make_socket("carol")
    for socket in (alice, bob, carol):
        await _join(relay, socket, socket.name, "lobby")
    for socket in (alice, bob, carol):
        socket.sent.clear()
    bob.application_state = WebSocketState.DISCONNECTED

    assert await relay.signal(alice, "user-2", {"sdp": "v=0"}) is False
    queued = await relay.broadcaster.broadcast_to_room("lobby", {"type": "user-list", "users": []})
    await relay.flush()

    assert queued == 2
    assert bob.messages() == []
    assert _types(alice) == ["user-list"]
    assert relay_signals_dropped_total.value() == 1


@pytest.mark.anyio("asyncio")
async def test_failed_send_is_not_fatal(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "lobby")
    await _join(relay, bob, "bob", "lobby")
    alice.sent.clear()

    async def broken_send(data: str) -> None:
        raise RuntimeError("socket went away")

    bob.send_text = broken_send  # type: ignore[method-assign]

    assert await relay.signal(alice, "user-2", {"sdp": "v=0"}) is True
    assert await relay.broadcaster.send_roster("lobby") == 2
    await relay.flush()

    assert relay_signals_dropped_total.value() == 1
    assert relay_messages_total.value("out", "signal") == 0
    assert _types(alice) == ["user-list"]

    assert await relay.signal(alice, "user-2", {"sdp": "v=1"}) is True
    await relay.flush()
    assert relay_signals_dropped_total.value() == 2


@pytest.mark.anyio("asyncio")
async def test_stalled_member_sees_membership_changes_in_order(relay, make_socket) -> None:
    alice, bob, carol = make_socket("alice"), make_socket("bob"), make_socket("carol")
    await _join(relay, alice, "alice", "lobby")
    await _join(relay, bob, "bob", "lobby")
    alice.sent.clear()
    alice.gate = asyncio.Event()

    await relay.connect(carol)
    await relay.join(carol, "carol", "lobby")
    await relay.disconnect(bob)
    alice.gate.set()
    await relay.flush()

    assert _types(alice) == ["user-joined", "user-list", "user-left", "user-list"]
    assert alice.messages()[2] == {"type": "user-left", "userId": "user-2", "username": "bob"}
    assert alice.of_type("user-list")[-1]["users"] == await relay.roster("lobby")


@pytest.mark.anyio("asyncio")
async def test_room_joined_precedes_frames_from_later_joins(relay, make_socket) -> None:
    alice, bob, carol = make_socket("alice"), make_socket("bob"), make_socket("carol")
    await _join(relay, alice, "alice", "lobby")
    for socket in (bob, carol):
        await relay.connect(socket)
    bob.gate = asyncio.Event()

    await asyncio.gather(relay.join(bob, "bob", "lobby"), relay.join(carol, "carol", "lobby"))
    bob.gate.set()
    await relay.flush()

    assert _types(bob) == ["room-joined", "user-list", "user-joined", "user-list"]
    assert bob.messages()[2]["username"] == "carol"
    assert bob.of_type("user-list")[-1]["users"] == await relay.roster("lobby")


@pytest.mark.anyio("asyncio")
async def test_concurrent_joins_keep_membership_consistent(relay, make_socket) -> None:
    sockets = [make_socket(f"peer{index}") for index in range(25)]
    for socket in sockets:
        await relay.connect(socket)

    await asyncio.gather(*(relay.join(socket, socket.name, "busy") for socket in sockets))
    await relay.flush()

    roster = await relay.roster("busy")
    assert len(roster) == 25
    assert len({entry["userId"] for entry in roster}) == 25
    assert await relay.rooms_overview() == [{"roomId": "busy", "members": 25}]
    for socket in sockets:
        assert socket.messages()[0]["type"] == "room-joined"
        assert socket.of_type("user-list")[-1]["users"] == roster


@pytest.mark.anyio("asyncio")
async def test_concurrent_join_and_disconnect_leave_no_empty_rooms(relay, make_socket) -> None:
    sockets = [make_socket(f"peer{index}") for index in range(20)]
    for index, socket in enumerate(sockets):
        await _join(relay, socket, socket.name, f"room-{index % 3}")

    newcomers = [make_socket(f"new{index}") for index in range(10)]
    for socket in newcomers:
        await relay.connect(socket)

    await asyncio.gather(
        *(relay.disconnect(socket) for socket in sockets),
        *(relay.join(socket, socket.name, "room-0") for socket in newcomers),
    )
    await relay.flush()

    roster = await relay.roster("room-0")
    assert await relay.rooms_overview() == [{"roomId": "room-0", "members": 10}]
    assert len(roster) == 10
    for socket in newcomers:
        assert socket.of_type("user-list")[-1]["users"] == roster


@pytest.mark.anyio("asyncio")
async def test_colliding_user_ids_are_regenerated(make_socket) -> None:
    from peerlink.relay import SignalingRelay

    ids = iter(["same", "same", "fresh"])
    relay = SignalingRelay(id_factory=lambda: next(ids))
    first, second = make_socket("first"), make_socket("second")

    await _join(relay, first, "first", "lobby")
    session = await _join(relay, second, "second", "lobby")
    await relay.broadcaster.aclose()

    assert session.user_id == "fresh"


@pytest.mark.anyio("asyncio")
async def test_gauges_follow_connections_and_rooms(relay, make_socket) -> None:
    alice, bob = make_socket("alice"), make_socket("bob")
    await _join(relay, alice, "alice", "r1")
    await _join(relay, bob, "bob", "r2")

    assert relay_active_connections.value() == 2
    assert relay_active_rooms.value() == 2

    await relay.disconnect(alice)

    assert relay_active_connections.value() == 1
    assert relay_active_rooms.value() == 1


@pytest.mark.anyio("asyncio")
async def test_close_all_closes_every_connection(relay, make_socket) -> None:
    alice, idle = make_socket("alice"), make_socket("idle")
    await _join(relay, alice, "alice", "lobby")
    await relay.connect(idle)

    assert await relay.close_all() == 2
    assert alice.close_code == 1001
    assert idle.close_code == 1001
