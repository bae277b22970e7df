"""Realtime session engine for one user in one room.

ChatSession wires the components together and is the only thing a host
application talks to:

    - ConnectionManager owns the transport and feeds inbound frames here
    - ProtocolCodec turns each frame into one event, in arrival order
    - Timeline is replaced on history and appended to on everything else
    - PresenceTracker re-pulls the occupant list on every join/leave
    - ExpiryCountdown derives the remaining time from the room's expiry
    - ReplyComposer and AttachmentEncoder prepare outbound messages

Everything runs on one asyncio event loop. Timer ticks, presence pulls and
foreground signals never touch the timeline, so timeline order always
equals frame arrival order.

Teardown (``close``) always runs in the same order: stop the countdown,
detach the foreground listener, close the transport, then cancel any
outstanding background work. It is safe on every exit path, including
before the transport ever opened.

Usage:
    async with RoomApiClient(config.server.api_base_url) as api:
        async with ChatSession("lobby", "alice", api, listener=view) as session:
            await session.send_text("hello")
"""
import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Coroutine, Optional, Set, Tuple

from anonroom.config import AppSettings, get_config

from .attachments import AttachmentEncoder, ImageFile
from .codec import HistoryReplayed, MessageReceived, PresenceChanged, ProtocolCodec
from .connection import ConnectionManager, Connector, Frame, ReconnectPolicy
from .countdown import ExpiryCountdown, utc_now
from .errors import MessageTooLongError, NotConnectedError, ProtocolError, SessionError
from .models import ChatMessage, ConnectionState, ContentKind, Message, ReplySnapshot
from .presence import PresenceTracker, RefreshOutcome
from .replies import ReplyComposer
from .room_api import RoomApiClient
from .timeline import Timeline

logger = logging.getLogger(__name__)


class LeaveReason(str, Enum):
    """Why the host should navigate away from the room.

    Attributes:
        USER_EXIT: The user chose to leave.
        ROOM_GONE: The room-info endpoint reports the room no longer exists.
        EXPIRED: The room's expiry instant passed.
    """
    USER_EXIT = "user_exit"
    ROOM_GONE = "room_gone"
    EXPIRED = "expired"


class SessionListener:
    """Host-side callbacks. Override the ones the host renders.

    Callbacks run on the event loop and must not block. Exceptions raised by
    a callback are logged and otherwise ignored.
    """

    def on_state_changed(self, state: ConnectionState) -> None:
        pass

    def on_timeline_changed(self, timeline: Tuple[Message, ...]) -> None:
        pass

    def on_presence_changed(self, occupants: Tuple[str, ...]) -> None:
        pass

    def on_countdown(self, label: str) -> None:
        pass

    def on_leave(self, reason: LeaveReason) -> None:
        pass


class ChatSession:
    """One user's live presence in one room.

    Args:
        room_id: Room identifier (case-sensitive).
        username: Display name of the local user.
        api: Room-info / leave endpoint client. Owned by the caller.
        config: Settings; defaults to ``get_config()``.
        listener: Host callbacks.
        connect: Transport opener, passed to ConnectionManager.
        clock: Wall clock for the expiry countdown.
        monotonic: Monotonic clock for the reconnect cooldown.

    Raises:
        ValueError: *room_id* or *username* is empty.
    """

    def __init__(
        self,
        room_id: str,
        username: str,
        api: RoomApiClient,
        *,
        config: Optional[AppSettings] = None,
        listener: Optional[SessionListener] = None,
        connect: Optional[Connector] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not room_id:
            raise ValueError("A room identifier is required")
        if not username or not username.strip():
            raise ValueError("A display name is required to join a room")

        config = config or get_config()
        self.room_id = room_id
        self.username = username
        self._api = api
        self._listener = listener or SessionListener()
        self._max_text_length = config.messages.max_text_length
        self._expiry_grace = config.countdown.expiry_grace_seconds

        self._codec = ProtocolCodec()
        self._timeline = Timeline()
        self._replies = ReplyComposer()
        self._encoder = AttachmentEncoder(
            max_bytes=config.attachments.max_bytes,
            allowed_prefix=config.attachments.allowed_prefix,
        )
        self._presence = PresenceTracker(api, room_id)
        self._countdown = ExpiryCountdown(
            on_expired=self._on_expired,
            on_tick=self._on_countdown_tick,
            tick_seconds=config.countdown.tick_seconds,
            clock=clock,
        )
        self._connection = ConnectionManager(
            config.server.ws_base_url,
            room_id,
            username,
            on_frame=self._on_frame,
            on_state_changed=self._on_state_changed,
            policy=ReconnectPolicy(
                base_delay=config.reconnect.base_delay_seconds,
                max_delay=config.reconnect.max_delay_seconds,
            ),
            connect=connect,
            clock=monotonic,
        )

        self._background: Set[asyncio.Task] = set()
        self._foreground_attached = False
        self._closed = False
        self._leave_reason: Optional[LeaveReason] = None
        self._last_countdown = ""

    # =========================================================================
    # State exposed to the host
    # =========================================================================

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    @property
    def timeline(self) -> Tuple[Message, ...]:
        return self._timeline.snapshot()

    @property
    def occupants(self) -> Tuple[str, ...]:
        return self._presence.occupants

    @property
    def countdown_text(self) -> str:
        return self._countdown.label

    @property
    def pending_reply(self) -> Optional[ReplySnapshot]:
        return self._replies.pending

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def leave_reason(self) -> Optional[LeaveReason]:
        return self._leave_reason

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Attach the foreground listener, open the transport and pull room info."""
        if self._closed:
            raise SessionError("Session is closed")
        logger.info(f"[Session] Joining room {self.room_id} as {self.username}")
        self._foreground_attached = True
        await self._open_transport()

    async def _open_transport(self) -> bool:
        # The occupant list may have changed while we were away.
        _, opened = await asyncio.gather(
            self._refresh_presence(),
            self._connection.open(),
        )
        return opened

    async def set_foreground(self, visible: bool) -> bool:
        """Host signal: the application moved to the foreground or background.

        Returns:
            True if a reconnect was attempted and succeeded.
        """
        if not visible or not self._foreground_attached:
            return False
        if self._connection.is_open:
            return False
        if not self._connection.may_reconnect():
            logger.info(
                f"[Session] Reconnect to {self.room_id} not attempted "
                f"(state={self._connection.state.value}, "
                f"failures={self._connection.consecutive_failures})"
            )
            return False
        logger.info(f"[Session] Back in foreground, reconnecting to {self.room_id}")
        return await self._open_transport()

    async def leave(self) -> None:
        """Explicit exit: tear down, tell the server (best effort), notify the host.

        Teardown completes before the leave request is sent; an expiry
        reached while that request is pending does not change the reason.
        """
        if self._leave_reason is not None:
            return
        self._leave_reason = LeaveReason.USER_EXIT
        await self.close()
        await self._api.leave_room(self.room_id, self.username)
        logger.info(f"[Session] Leaving room {self.room_id}: {LeaveReason.USER_EXIT.value}")
        self._notify("on_leave", LeaveReason.USER_EXIT)

    async def close(self) -> None:
        """Release everything the session holds. Idempotent."""
        if self._closed:
            return
        self._closed = True

        self._countdown.stop()
        self._foreground_attached = False
        await self._connection.close()

        current = asyncio.current_task()
        pending = [task for task in self._background if task is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(f"[Session] Closed session for {self.username} in {self.room_id}")

    async def __aenter__(self) -> "ChatSession":
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _finish(self, reason: LeaveReason) -> None:
        if self._leave_reason is not None:
            return
        self._leave_reason = reason
        if reason is LeaveReason.EXPIRED and self._expiry_grace > 0:
            # Keep the "Expired" label on screen before the host navigates away.
            await asyncio.sleep(self._expiry_grace)
        await self.close()
        logger.info(f"[Session] Leaving room {self.room_id}: {reason.value}")
        self._notify("on_leave", reason)

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send_text(self, text: str) -> bool:
        """Send a text message with the pending reply, if any.

        Returns:
            False if *text* is empty or whitespace (nothing is sent).

        Raises:
            MessageTooLongError: The trimmed text exceeds the length limit.
            NotConnectedError: The transport is not open.
        """
        content = (text or "").strip()
        if not content:
            return False
        if len(content) > self._max_text_length:
            raise MessageTooLongError(len(content), self._max_text_length)
        await self._send(ContentKind.TEXT, content)
        return True

    async def send_image(self, file: ImageFile) -> None:
        """Encode *file* and send it with the pending reply, if any.

        Raises:
            AttachmentTooLargeError, UnsupportedAttachmentTypeError: Raised
                before anything is read.
            AttachmentReadError: The file could not be read.
            NotConnectedError: The transport is not open once encoding is done.
        """
        payload = await self._encoder.encode(file)
        await self._send(ContentKind.IMAGE, payload)

    async def _send(self, kind: ContentKind, content: str) -> None:
        if self._closed:
            raise NotConnectedError(f"Session for room {self.room_id!r} is closed")
        reply = self._replies.pending
        frame = self._codec.encode(kind, content, reply)
        await self._connection.send(frame)
        # A reply started while the frame was in flight belongs to the next message.
        if self._replies.pending is reply:
            self._replies.clear()

    def start_reply(self, message: ChatMessage) -> ReplySnapshot:
        """Quote *message* in the next outbound message, replacing any pending quote."""
        return self._replies.start(message)

    def cancel_reply(self) -> None:
        self._replies.clear()

    # =========================================================================
    # Inbound
    # =========================================================================

    def _on_frame(self, raw: Frame) -> None:
        try:
            event = self._codec.decode(raw)
        except ProtocolError as e:
            logger.warning(f"[Session] Dropping malformed frame in {self.room_id}: {e}")
            return
        if event is None:
            return

        if isinstance(event, HistoryReplayed):
            logger.info(f"[Session] Loading history: {len(event.messages)} messages")
            self._timeline.replace(event.messages)
        elif isinstance(event, MessageReceived):
            self._timeline.append(event.message)
        elif isinstance(event, PresenceChanged):
            self._timeline.append(event.notice)
            self._spawn(self._refresh_presence())

        self._notify("on_timeline_changed", self._timeline.snapshot())

    async def _refresh_presence(self) -> None:
        outcome = await self._presence.refresh()
        if outcome is RefreshOutcome.ROOM_GONE:
            self._connection.mark_failed()
            await self._finish(LeaveReason.ROOM_GONE)
            return
        if outcome is not RefreshOutcome.UPDATED or self._closed:
            return

        self._notify("on_presence_changed", self._presence.occupants)
        self._countdown.set_expiry(self._presence.expire_at)
        if self._presence.expire_at is not None:
            self._countdown.tick()
            self._countdown.start()
        else:
            # Expiry withdrawn: clear the host's label too.
            self._on_countdown_tick(self._countdown.label)

    # =========================================================================
    # Component callbacks
    # =========================================================================

    def _on_state_changed(self, state: ConnectionState) -> None:
        self._notify("on_state_changed", state)

    def _on_countdown_tick(self, label: str) -> None:
        if label != self._last_countdown:
            self._last_countdown = label
            self._notify("on_countdown", label)

    def _on_expired(self) -> None:
        self._spawn(self._finish(LeaveReason.EXPIRED))

    # =========================================================================
    # Helpers
    # =========================================================================

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[Session] Background task failed in {self.room_id}",
                exc_info=task.exception(),
            )

    def _notify(self, name: str, *args) -> None:
        try:
            getattr(self._listener, name)(*args)
        except Exception:
            logger.exception(f"[Session] Listener callback {name} failed")
