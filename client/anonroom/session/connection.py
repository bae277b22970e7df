"""Live transport ownership for one (room, user) session.

This module owns the single WebSocket a session uses to talk to its room.
Nothing else in the engine holds a reference to the socket; other components
learn about connectivity only through ConnectionState transitions.

Lifecycle:
    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING/CONNECTED -> DISCONNECTED   (open failure, drop, error, close)
    any -> FAILED                          (room confirmed gone; terminal)

There is no timer-driven reconnect. The session reopens the transport when the
host reports it is back in the foreground and the transport is not open.
After consecutive failed opens those attempts are spaced out by a bounded,
doubling cooldown; a successful open resets it.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import NotConnectedError
from .models import ConnectionState
from .room_api import encode_segment

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]
Connector = Callable[[str], Awaitable[Any]]


async def websocket_connect(url: str) -> Any:
    # Image messages and history replays routinely exceed the 1 MiB default.
    return await websockets.connect(url, max_size=None)


@dataclass(frozen=True)
class ReconnectPolicy:
    """Cooldown applied to foreground reconnects after failed opens.

    With no failures since the last good open the cooldown is zero.
    """
    base_delay: float = 1.0
    max_delay: float = 30.0

    def cooldown(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (failures - 1)))


class ConnectionManager:
    """Opens, reads, writes and closes the session's transport.

    Args:
        ws_base_url: Transport root, e.g. ``ws://localhost:8000``.
        room_id: Room to join.
        user: Display name of the local user.
        on_frame: Called with every inbound frame, in arrival order.
        on_state_changed: Called after every state transition.
        policy: Reconnect cooldown policy.
        connect: Opens a transport for a URL; defaults to ``websocket_connect``.
        clock: Monotonic clock used for the reconnect cooldown.
    """

    def __init__(
        self,
        ws_base_url: str,
        room_id: str,
        user: str,
        on_frame: Callable[[Frame], None],
        on_state_changed: Optional[Callable[[ConnectionState], None]] = None,
        policy: Optional[ReconnectPolicy] = None,
        connect: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.room_id = room_id
        self.user = user
        self.url = f"{ws_base_url.rstrip('/')}/ws/{encode_segment(room_id)}/{encode_segment(user)}"
        self._on_frame = on_frame
        self._on_state_changed = on_state_changed
        self._policy = policy or ReconnectPolicy()
        self._connect = connect or websocket_connect
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._closed = False
        self._failures = 0
        self._last_attempt: Optional[float] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.info(f"[Connection] {self.room_id}/{self.user}: {self._state.value} -> {state.value}")
        self._state = state
        if self._on_state_changed is not None:
            self._on_state_changed(state)

    def mark_failed(self) -> None:
        """Record that the room is gone. No further opens are attempted."""
        self._closed = True
        self._set_state(ConnectionState.FAILED)

    def may_reconnect(self) -> bool:
        """Whether a foreground signal may open the transport right now."""
        if self._closed or self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return False
        if self._failures == 0 or self._last_attempt is None:
            return True
        wait = self._policy.cooldown(self._failures)
        return self._clock() - self._last_attempt >= wait

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> bool:
        """Open the transport unless one is already open or opening.

        Returns:
            True if this call opened a transport.
        """
        if self._closed:
            logger.debug("Not opening %s: connection is closed", self.url)
            return False
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return False

        self._last_attempt = self._clock()
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await self._connect(self.url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            self._failures += 1
            logger.warning(f"[Connection] Failed to open {self.url} (attempt failures={self._failures}): {e}")
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
            return False

        if self._closed:
            # Session was torn down while the handshake was in flight.
            await self._close_socket(ws)
            return False

        self._failures = 0
        self._ws = ws
        self._set_state(ConnectionState.CONNECTED)
        self._reader = asyncio.get_running_loop().create_task(self._read_loop(ws))
        return True

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for frame in ws:
                logger.debug("[Connection] Frame received (%d chars)", len(frame))
                try:
                    self._on_frame(frame)
                except Exception:
                    logger.exception(f"[Connection] Frame handler failed on {self.url}")
        except ConnectionClosed as e:
            logger.warning(f"[Connection] Transport error on {self.url}: {e}")
        except Exception:
            logger.exception(f"[Connection] Read loop failed on {self.url}")
        finally:
            if self._ws is ws:
                self._ws = None
                if self._state is ConnectionState.CONNECTED:
                    logger.info("[Connection] Disconnected from %s", self.url)
                    self._set_state(ConnectionState.DISCONNECTED)
                # The server keeps counting us as present until the socket is gone.
                await self._close_socket(ws)

    async def send(self, frame: str) -> None:
        """Send one frame.

        Raises:
            NotConnectedError: No open transport, or it closed mid-send.
        """
        ws = self._ws
        if ws is None or self._state is not ConnectionState.CONNECTED:
            raise NotConnectedError(f"Not connected to room {self.room_id!r}")
        try:
            await ws.send(frame)
        except ConnectionClosed as e:
            raise NotConnectedError(f"Connection to room {self.room_id!r} closed while sending") from e

    async def close(self) -> None:
        """Close the transport for good. Idempotent."""
        self._closed = True
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None

        if ws is not None:
            await self._close_socket(ws)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        if self._state is not ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"[Connection] Error while closing transport: {e}")
