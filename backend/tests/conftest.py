"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import itertools
import json
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app.main import app
from app.monitoring.metrics import reset_metrics
from peerlink.relay import SignalingRelay


class DummyWebSocket:
    """In-memory stand-in for a server side websocket.

    ``send_text`` yields to the event loop like a real transport does. Set
    ``gate`` to an unset ``asyncio.Event`` to stall writes until it is set.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[str] = []
        self.close_code: int | None = None
        self.gate: asyncio.Event | None = None

    def __repr__(self) -> str:
        return f"DummyWebSocket({self.name!r})"

    async def send_text(self, data: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.messages() if message.get("type") == message_type]


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_relay_metrics() -> Iterator[None]:
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def make_socket() -> Callable[[str], DummyWebSocket]:
    return DummyWebSocket


@pytest.fixture()
async def relay(anyio_backend) -> AsyncIterator[SignalingRelay]:
    """A fresh relay whose user ids are ``user-1``, ``user-2``, ..."""

    counter = itertools.count(1)
    instance = SignalingRelay(id_factory=lambda: f"user-{next(counter)}")
    yield instance
    await instance.broadcaster.aclose()


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """Yield a FastAPI TestClient bound to the relay application."""

    with TestClient(app) as test_client:
        yield test_client
