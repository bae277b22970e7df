"""End-to-end tests for ChatSession against a fake room server and transport."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio

from anonroom.session import (
    EXPIRED_LABEL,
    AttachmentTooLargeError,
    ChatMessage,
    ChatSession,
    ConnectionState,
    ContentKind,
    ImageFile,
    LeaveReason,
    MessageTooLongError,
    NotConnectedError,
    SessionError,
    SystemNotice,
    UnsupportedAttachmentTypeError,
)

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class Monotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


HISTORY = {
    "type": "history",
    "messages": [
        {"type": "message", "username": "alice", "content": "hi", "timestamp": "2025-03-01T11:00:00Z"},
        {"type": "message", "username": "bob", "content": "hey", "timestamp": "2025-03-01T11:01:00Z"},
    ],
}


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def monotonic():
    return Monotonic()


@pytest_asyncio.fixture
async def make_session(room_api, settings, listener, connector, clock, monotonic):
    sessions = []

    def _make(room_id="lobby", username="carol"):
        session = ChatSession(
            room_id,
            username,
            room_api,
            config=settings,
            listener=listener,
            connect=connector,
            clock=clock,
            monotonic=monotonic,
        )
        sessions.append(session)
        return session

    yield _make
    for session in sessions:
        await session.close()


@pytest_asyncio.fixture
async def session(make_session):
    session = make_session()
    await session.start()
    yield session
    await session.close()


def texts(timeline):
    return [m.content for m in timeline]


# =============================================================================
# Lifecycle
# =============================================================================


class TestStart:
    @pytest.mark.asyncio
    async def test_start_connects_and_loads_room(self, session, listener, connector):
        assert session.connection_state is ConnectionState.CONNECTED
        assert connector.urls == ["ws://localhost:8000/ws/lobby/carol"]
        assert session.occupants == ("alice", "bob")
        assert listener.presence == [("alice", "bob")]
        assert session.countdown_text == "2h 0m"
        assert listener.countdowns == ["2h 0m"]
        assert listener.states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected(self, room_api, settings):
        with pytest.raises(ValueError):
            ChatSession("lobby", "   ", room_api, config=settings)

    @pytest.mark.asyncio
    async def test_empty_room_is_rejected(self, room_api, settings):
        with pytest.raises(ValueError):
            ChatSession("", "carol", room_api, config=settings)

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, make_session, connector):
        async with make_session() as session:
            assert session.connection_state is ConnectionState.CONNECTED
        assert session.closed
        assert connector.last.closed

    @pytest.mark.asyncio
    async def test_transport_failure_at_start_leaves_session_usable(self, make_session, connector):
        connector.fail_next()
        session = make_session()
        await session.start()

        assert session.connection_state is ConnectionState.DISCONNECTED
        assert session.occupants == ("alice", "bob")
        await session.close()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_close_before_start(self, make_session, connector):
        session = make_session()
        await session.close()

        assert session.closed
        assert connector.urls == []
        with pytest.raises(SessionError):
            await session.start()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, connector):
        await session.close()
        await session.close()
        assert connector.last.closed

    @pytest.mark.asyncio
    async def test_teardown_order(self, session):
        calls = []
        real_stop = session._countdown.stop
        real_close = session._connection.close

        def stop_countdown():
            calls.append(("countdown", session._foreground_attached))
            real_stop()

        async def close_connection():
            calls.append(("transport", session._foreground_attached))
            await real_close()

        with patch.object(session._countdown, "stop", side_effect=stop_countdown), \
                patch.object(session._connection, "close", side_effect=close_connection):
            await session.close()

        # The foreground listener is detached between the two.
        assert calls == [("countdown", True), ("transport", False)]

    @pytest.mark.asyncio
    async def test_close_cancels_background_refresh(self, session, connector):
        gate = asyncio.Event()
        original = session._presence.refresh

        async def slow_refresh():
            await gate.wait()
            return await original()

        session._presence.refresh = slow_refresh
        connector.last.feed({"type": "user_joined", "username": "dave"})
        await asyncio.sleep(0.02)
        assert session._background

        await session.close()
        assert not session._background

    @pytest.mark.asyncio
    async def test_leave_notifies_server_and_host(self, session, listener, rooms, room_server):
        rooms["lobby"]["users"].append("carol")

        await session.leave()
        await session.leave()

        assert ("DELETE", "lobby", "carol") in room_server.state.requests
        assert "carol" not in rooms["lobby"]["users"]
        assert listener.leaves == [LeaveReason.USER_EXIT]
        assert session.leave_reason is LeaveReason.USER_EXIT
        assert session.closed

    @pytest.mark.asyncio
    async def test_leave_completes_even_if_server_call_fails(self, make_session, listener, rooms):
        session = make_session()
        await session.start()
        del rooms["lobby"]

        await session.leave()

        assert listener.leaves == [LeaveReason.USER_EXIT]
        assert session.closed

    @pytest.mark.asyncio
    async def test_slow_leave_request_runs_after_teardown(
        self, session, room_api, listener, connector, clock
    ):
        seen = []

        async def slow_leave(room_id, user):
            seen.append((session.closed, session._countdown.running, connector.last.closed))
            # The room expires while the request is in flight.
            clock.now = NOW + timedelta(hours=3)
            await asyncio.sleep(0.2)
            return False

        with patch.object(room_api, "leave_room", side_effect=slow_leave):
            await session.leave()

        assert seen == [(True, False, True)]
        assert listener.leaves == [LeaveReason.USER_EXIT]
        assert session.leave_reason is LeaveReason.USER_EXIT


# =============================================================================
# Inbound frames
# =============================================================================


class TestInbound:
    @pytest.mark.asyncio
    async def test_history_replaces_timeline(self, session, connector, listener, eventually):
        ws = connector.last
        ws.feed({"type": "message", "username": "alice", "content": "early"})
        await eventually(lambda: len(session.timeline) == 1)

        ws.feed(HISTORY)
        await eventually(lambda: texts(session.timeline) == ["hi", "hey"])

        ws.feed(HISTORY)
        ws.feed({"type": "message", "username": "bob", "content": "again"})
        await eventually(lambda: texts(session.timeline) == ["hi", "hey", "again"])

    @pytest.mark.asyncio
    async def test_live_messages_append_in_order(self, session, connector, listener, eventually):
        for n in range(3):
            connector.last.feed({"type": "message", "username": "bob", "content": f"m{n}"})
        await eventually(lambda: len(session.timeline) == 3)

        assert texts(session.timeline) == ["m0", "m1", "m2"]
        assert all(isinstance(m, ChatMessage) for m in session.timeline)
        assert texts(listener.timelines[-1]) == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_published_snapshots_do_not_change(self, session, connector, listener, eventually):
        connector.last.feed({"type": "message", "username": "bob", "content": "one"})
        await eventually(lambda: len(listener.timelines) == 1)
        first = listener.timelines[0]

        connector.last.feed({"type": "message", "username": "bob", "content": "two"})
        await eventually(lambda: len(listener.timelines) == 2)

        assert texts(first) == ["one"]

    @pytest.mark.asyncio
    async def test_join_appends_notice_and_refreshes(self, session, connector, listener, rooms, eventually):
        rooms["lobby"]["users"].append("dave")
        connector.last.feed({"type": "user_joined", "username": "dave"})

        await eventually(lambda: session.occupants == ("alice", "bob", "dave"))
        notice = session.timeline[-1]
        assert isinstance(notice, SystemNotice)
        assert notice.content == "dave joined the room"
        assert listener.presence[-1] == ("alice", "bob", "dave")

    @pytest.mark.asyncio
    async def test_leave_without_successful_refresh_keeps_list(
        self, session, connector, room_api, rooms, eventually
    ):
        rooms["lobby"]["users"].remove("bob")
        down = httpx.ConnectError("room service unreachable")

        with patch.object(room_api, "get_room_info", side_effect=down) as get_room_info:
            connector.last.feed({"type": "user_left", "username": "bob"})
            await eventually(lambda: get_room_info.await_count == 1)
            await asyncio.sleep(0.02)

        assert session.timeline[-1].content == "bob left the room"
        assert session.occupants == ("alice", "bob")

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_frames_are_dropped(self, session, connector, eventually):
        ws = connector.last
        ws.feed("not json")
        ws.feed({"type": "message"})
        ws.feed({"type": "typing", "username": "bob"})
        ws.feed({"type": "message", "username": "bob", "content": "still here"})

        await eventually(lambda: len(session.timeline) == 1)
        assert session.connection_state is ConnectionState.CONNECTED
        assert texts(session.timeline) == ["still here"]

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_is_dropped(self, session, connector, eventually):
        ws = connector.last
        ws.feed("[" * 100_000 + "]" * 100_000)
        ws.feed({"type": "message", "username": "bob", "content": "after"})

        await eventually(lambda: texts(session.timeline) == ["after"])
        assert session.connection_state is ConnectionState.CONNECTED
        assert not ws.closed
        assert not session._connection._reader.done()

    @pytest.mark.asyncio
    async def test_unknown_kind_in_history_is_rendered_as_text(self, session, connector, eventually):
        connector.last.feed({
            "type": "history",
            "messages": [
                {"username": "alice", "content": "hi"},
                {"username": "bob", "content": "clip", "message_type": "video"},
            ],
        })

        await eventually(lambda: texts(session.timeline) == ["hi", "clip"])
        assert session.timeline[1].message_type is ContentKind.TEXT

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_break_session(self, make_session, connector, listener, eventually):
        def explode(timeline):
            raise RuntimeError("render failed")

        listener.on_timeline_changed = explode
        session = make_session()
        await session.start()

        connector.last.feed({"type": "message", "username": "bob", "content": "a"})
        connector.last.feed({"type": "message", "username": "bob", "content": "b"})
        await eventually(lambda: len(session.timeline) == 2)
        await session.close()


# =============================================================================
# Outbound
# =============================================================================


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_text(self, session, connector):
        assert await session.send_text("  hello  ") is True
        assert connector.last.sent_json == [{"type": "text", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_whitespace_is_not_sent(self, session, connector):
        assert await session.send_text("   ") is False
        assert await session.send_text("") is False
        assert connector.last.sent == []

    @pytest.mark.asyncio
    async def test_too_long_is_rejected(self, session, connector):
        with pytest.raises(MessageTooLongError):
            await session.send_text("x" * 501)
        assert connector.last.sent == []

    @pytest.mark.asyncio
    async def test_limit_is_inclusive(self, session, connector):
        assert await session.send_text("x" * 500) is True

    @pytest.mark.asyncio
    async def test_reply_is_attached_and_cleared(self, session, connector, eventually):
        connector.last.feed({"type": "message", "username": "alice", "content": "question?"})
        await eventually(lambda: len(session.timeline) == 1)

        session.start_reply(session.timeline[0])
        await session.send_text("answer")
        await session.send_text("follow-up")

        first, second = connector.last.sent_json
        assert first["reply_to"] == {"username": "alice", "content": "question?", "message_type": "text"}
        assert "reply_to" not in second
        assert session.pending_reply is None

    @pytest.mark.asyncio
    async def test_failed_send_keeps_pending_reply(self, session, connector, eventually):
        connector.last.feed({"type": "message", "username": "alice", "content": "q"})
        await eventually(lambda: len(session.timeline) == 1)
        session.start_reply(session.timeline[0])

        with pytest.raises(MessageTooLongError):
            await session.send_text("x" * 1000)
        assert session.pending_reply is not None

        connector.last.drop()
        await eventually(lambda: session.connection_state is ConnectionState.DISCONNECTED)
        with pytest.raises(NotConnectedError):
            await session.send_text("answer")
        assert session.pending_reply is not None

    @pytest.mark.asyncio
    async def test_cancel_reply(self, session, connector, eventually):
        connector.last.feed({"type": "message", "username": "alice", "content": "q"})
        await eventually(lambda: len(session.timeline) == 1)
        session.start_reply(session.timeline[0])
        session.cancel_reply()

        await session.send_text("plain")
        assert "reply_to" not in connector.last.sent_json[0]

    @pytest.mark.asyncio
    async def test_send_image(self, session, connector):
        await session.send_image(ImageFile.from_bytes("dot.png", b"\x89PNG"))

        frame = connector.last.sent_json[0]
        assert frame["type"] == ContentKind.IMAGE.value
        assert frame["content"] == "data:image/png;base64,iVBORw=="

    @pytest.mark.asyncio
    async def test_invalid_image_rejected_before_read(self, session, connector):
        never_read = ImageFile(name="big.png", mime_type="image/png", size=6_000_000, path=None)
        with patch.object(ImageFile, "read_bytes") as read:
            with pytest.raises(AttachmentTooLargeError):
                await session.send_image(never_read)
            with pytest.raises(UnsupportedAttachmentTypeError):
                await session.send_image(ImageFile.from_bytes("notes.txt", b"hello"))
        read.assert_not_called()
        assert connector.last.sent == []

    @pytest.mark.asyncio
    async def test_send_after_close_raises(self, session):
        await session.close()
        with pytest.raises(NotConnectedError):
            await session.send_text("late")


# =============================================================================
# Room gone / expiry
# =============================================================================


class TestRoomLifetime:
    @pytest.mark.asyncio
    async def test_missing_room_at_start(self, make_session, listener):
        session = make_session(room_id="nowhere")
        await session.start()

        assert listener.leaves == [LeaveReason.ROOM_GONE]
        assert session.connection_state is ConnectionState.FAILED
        assert session.closed

    @pytest.mark.asyncio
    async def test_room_deleted_while_inside(self, session, connector, listener, rooms, eventually):
        del rooms["lobby"]
        connector.last.feed({"type": "user_left", "username": "bob"})

        await eventually(lambda: listener.leaves == [LeaveReason.ROOM_GONE])
        assert session.connection_state is ConnectionState.FAILED
        assert await session.set_foreground(True) is False

    @pytest.mark.asyncio
    async def test_expiry_shows_label_then_leaves(self, make_session, listener, clock, eventually):
        session = make_session()
        await session.start()
        assert listener.countdowns == ["2h 0m"]

        clock.now = NOW + timedelta(hours=2)
        await eventually(lambda: listener.leaves == [LeaveReason.EXPIRED])

        assert listener.countdowns[-1] == EXPIRED_LABEL
        assert session.countdown_text == EXPIRED_LABEL
        assert session.closed

    @pytest.mark.asyncio
    async def test_already_expired_room(self, make_session, listener, clock, eventually):
        clock.now = NOW + timedelta(hours=3)
        session = make_session()
        await session.start()

        await eventually(lambda: listener.leaves == [LeaveReason.EXPIRED])
        assert listener.countdowns == [EXPIRED_LABEL]

    @pytest.mark.asyncio
    async def test_expired_room_response_leaves_as_gone(self, make_session, listener, rooms):
        rooms["lobby"]["expired"] = True
        session = make_session()
        await session.start()
        assert listener.leaves == [LeaveReason.ROOM_GONE]

    @pytest.mark.asyncio
    async def test_withdrawn_expiry_clears_countdown(self, session, connector, listener, rooms, eventually):
        assert listener.countdowns == ["2h 0m"]

        rooms["lobby"]["expire_at"] = None
        connector.last.feed({"type": "user_joined", "username": "dave"})

        await eventually(lambda: listener.countdowns == ["2h 0m", ""])
        assert session.countdown_text == ""
        assert not session._countdown.running


# =============================================================================
# Foreground reconnect
# =============================================================================


class TestForeground:
    @pytest.mark.asyncio
    async def test_reconnects_when_back_in_foreground(self, session, connector, room_server, eventually):
        connector.last.drop()
        await eventually(lambda: session.connection_state is ConnectionState.DISCONNECTED)
        requests_before = len(room_server.state.requests)

        assert await session.set_foreground(True) is True

        assert session.connection_state is ConnectionState.CONNECTED
        assert len(connector.sockets) == 2
        # Presence is re-pulled alongside the reopen.
        assert len(room_server.state.requests) == requests_before + 1

    @pytest.mark.asyncio
    async def test_no_reconnect_when_open_or_backgrounded(self, session, connector):
        assert await session.set_foreground(True) is False
        assert await session.set_foreground(False) is False
        assert len(connector.urls) == 1

    @pytest.mark.asyncio
    async def test_cooldown_after_failed_reconnect(self, session, connector, monotonic, eventually):
        connector.last.drop()
        await eventually(lambda: session.connection_state is ConnectionState.DISCONNECTED)

        connector.fail_next()
        assert await session.set_foreground(True) is False
        assert await session.set_foreground(True) is False
        assert len(connector.urls) == 2

        monotonic.now += 5.0
        assert await session.set_foreground(True) is True

    @pytest.mark.asyncio
    async def test_no_reconnect_after_close(self, session, connector):
        await session.close()
        assert await session.set_foreground(True) is False
        assert len(connector.urls) == 1
