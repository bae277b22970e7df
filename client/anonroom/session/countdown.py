"""Room expiry countdown.

Every tick re-derives the remaining time from the absolute expiry instant and
the current wall clock, so the display never drifts no matter how late the
ticks run.

State machine: IDLE (no expiry known) -> ACTIVE -> EXPIRED. EXPIRED is
terminal; the expired callback fires exactly once.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

EXPIRED_LABEL = "Expired"


class CountdownState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    EXPIRED = "expired"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(instant: datetime) -> datetime:
    # Naive instants from the server are UTC.
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def format_remaining(remaining: timedelta) -> str:
    """Render *remaining* at the coarsest non-zero unit.

    Examples:
        >>> format_remaining(timedelta(seconds=3700))
        '1h 1m'
        >>> format_remaining(timedelta(seconds=90))
        '1m 30s'
        >>> format_remaining(timedelta(seconds=42))
        '42s'
    """
    if remaining <= timedelta(0):
        return EXPIRED_LABEL

    total = int(remaining.total_seconds())
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)

    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


class ExpiryCountdown:
    """Ticks once per ``tick_seconds`` and reports the remaining time.

    Args:
        on_expired: Called once when the expiry instant is reached.
        on_tick: Called with the rendered label on every tick.
        tick_seconds: Interval between ticks.
        clock: Returns the current time as an aware datetime.
    """

    def __init__(
        self,
        on_expired: Callable[[], None],
        on_tick: Optional[Callable[[str], None]] = None,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._on_expired = on_expired
        self._on_tick = on_tick
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._expire_at: Optional[datetime] = None
        self._state = CountdownState.IDLE
        self._label = ""
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> CountdownState:
        return self._state

    @property
    def label(self) -> str:
        """Last rendered label; empty while no expiry is known."""
        return self._label

    @property
    def expire_at(self) -> Optional[datetime]:
        return self._expire_at

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_expiry(self, expire_at: Optional[datetime]) -> None:
        """Point the countdown at a (possibly new) expiry instant.

        Ignored once expired. If the timer is running it restarts so the
        new instant shows up on the next tick.
        """
        if self._state is CountdownState.EXPIRED:
            return
        expire_at = _as_aware(expire_at) if expire_at is not None else None
        if expire_at == self._expire_at:
            return

        self._expire_at = expire_at
        if expire_at is None:
            self._state = CountdownState.IDLE
            self._label = ""
            self.stop()
            return

        self._state = CountdownState.ACTIVE
        if self.running:
            self.stop()
            self.start()

    def tick(self) -> str:
        """Recompute the label from the clock and the expiry instant."""
        if self._expire_at is None or self._state is CountdownState.EXPIRED:
            return self._label

        self._label = format_remaining(self._expire_at - self._clock())
        if self._label == EXPIRED_LABEL:
            self._state = CountdownState.EXPIRED
            logger.info("Room expired at %s", self._expire_at.isoformat())

        if self._on_tick is not None:
            self._on_tick(self._label)
        if self._state is CountdownState.EXPIRED:
            self._on_expired()
        return self._label

    def start(self) -> None:
        """Start ticking on the running event loop. No-op if already running."""
        if self.running or self._state is not CountdownState.ACTIVE:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        """Cancel the tick loop. Safe to call at any time."""
        if self._task is not None:
            if not self._task.done() and self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            self.tick()
            if self._state is not CountdownState.ACTIVE:
                return
            await asyncio.sleep(self._tick_seconds)
