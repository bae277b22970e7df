"""Shared test fixtures: fake room server, fake transport, recording listener."""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import httpx
import pytest
from fastapi import FastAPI, HTTPException
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from anonroom.config import AppSettings, CountdownSettings, ReconnectSettings
from anonroom.session import RoomApiClient, SessionListener

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

_CLOSE = object()
_DROP = object()


# =============================================================================
# Fake live transport
# =============================================================================


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, url: str) -> None:
        self.url = url
        self.sent: List[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    def feed(self, payload: Any) -> None:
        """Deliver one inbound frame (dicts are JSON-encoded)."""
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        self._inbox.put_nowait(payload)

    def drop(self) -> None:
        """Simulate an abnormal connection loss."""
        self._inbox.put_nowait(_DROP)

    def server_close(self) -> None:
        """Simulate a clean close from the server side."""
        self._inbox.put_nowait(_CLOSE)

    @property
    def sent_json(self) -> List[dict]:
        return [json.loads(frame) for frame in self.sent]

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        if item is _DROP:
            self.closed = True
            raise ConnectionClosedError(None, None)
        return item


class FakeConnector:
    """Callable used in place of websockets.connect."""

    def __init__(self) -> None:
        self.urls: List[str] = []
        self.sockets: List[FakeWebSocket] = []
        self._failures: List[BaseException] = []

    def fail_next(self, exc: BaseException = None) -> None:
        self._failures.append(exc or OSError("Connection refused"))

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self._failures:
            raise self._failures.pop(0)
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws


# =============================================================================
# Fake room server (room-info and leave endpoints)
# =============================================================================


def build_room_server(rooms: Dict[str, dict]) -> FastAPI:
    app = FastAPI()
    app.state.requests = []

    @app.get("/api/room/{room_id}")
    async def room_info(room_id: str) -> dict:
        app.state.requests.append(("GET", room_id))
        room = rooms.get(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        if room.get("expired"):
            raise HTTPException(status_code=410, detail="Room expired")
        return {"users": list(room["users"]), "expire_at": room.get("expire_at")}

    @app.delete("/api/leave-room/{room_id}/{user}")
    async def leave_room(room_id: str, user: str) -> dict:
        app.state.requests.append(("DELETE", room_id, user))
        room = rooms.get(room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        if user in room["users"]:
            room["users"].remove(user)
        return {"status": "left"}

    return app


class RecordingListener(SessionListener):
    def __init__(self) -> None:
        self.states = []
        self.timelines = []
        self.presence = []
        self.countdowns = []
        self.leaves = []

    def on_state_changed(self, state):
        self.states.append(state)

    def on_timeline_changed(self, timeline):
        self.timelines.append(timeline)

    def on_presence_changed(self, occupants):
        self.presence.append(occupants)

    def on_countdown(self, label):
        self.countdowns.append(label)

    def on_leave(self, reason):
        self.leaves.append(reason)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def rooms() -> Dict[str, dict]:
    return {
        "lobby": {
            "users": ["alice", "bob"],
            "expire_at": (NOW + timedelta(hours=2)).isoformat(),
        },
    }


@pytest.fixture
def room_server(rooms) -> FastAPI:
    return build_room_server(rooms)


@pytest.fixture
def room_api(room_server) -> RoomApiClient:
    return RoomApiClient(
        "http://testserver",
        transport=httpx.ASGITransport(app=room_server),
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(
        countdown=CountdownSettings(tick_seconds=0.05, expiry_grace_seconds=0.0),
        reconnect=ReconnectSettings(base_delay_seconds=5.0, max_delay_seconds=20.0),
    )


@pytest.fixture
def eventually():
    """Await until *predicate()* is true, failing after *timeout* seconds."""
    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(0.01)
    return _wait
