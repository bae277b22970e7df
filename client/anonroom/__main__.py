"""Terminal host for the anonroom session engine.

Joins one room and turns the session's state into printed lines, and typed
lines into engine calls.

Usage:
    python -m anonroom ROOM --name NAME [--config PATH]

Commands:
    <text>          send a text message
    /image PATH     send an image file
    /reply N        quote chat message #N in the next message
    /cancel         drop the pending quote
    /users          list occupants
    /reconnect      act as if the terminal came back to the foreground
    /quit           leave the room
"""
import argparse
import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional, Sequence, TextIO, Tuple

from anonroom.config import AppSettings, get_config
from anonroom.session import (
    EXPIRED_LABEL,
    ChatMessage,
    ChatSession,
    ConnectionState,
    ContentKind,
    ImageFile,
    LeaveReason,
    Message,
    RoomApiClient,
    SessionError,
    SessionListener,
)
from anonroom.session.display import format_time, is_own, occupant_label, preview_text

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    configured_level = getattr(logging, level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)

    # httpx/httpcore log every request; websockets logs every frame at DEBUG.
    for _noisy in ("httpx", "httpcore", "websockets"):
        logging.getLogger(_noisy).setLevel(logging.WARNING)


class TerminalView(SessionListener):
    """Prints session changes to a text stream."""

    def __init__(self, user: str, settings: AppSettings, out: TextIO = sys.stdout) -> None:
        self.user = user
        self.left = asyncio.Event()
        self.leave_reason: Optional[LeaveReason] = None
        self._out = out
        self._tz = settings.messages.display_timezone
        self._preview_chars = settings.messages.reply_preview_chars
        self._shown: List[str] = []
        self._occupants: Tuple[str, ...] = ()

    def say(self, line: str) -> None:
        print(line, file=self._out, flush=True)

    def render(self, message: Message, number: int) -> str:
        if not isinstance(message, ChatMessage):
            return f"* {message.content}"

        body = "[image]" if message.message_type is ContentKind.IMAGE else message.content
        marker = " (you)" if is_own(message, self.user) else ""
        line = f"#{number} [{format_time(message.timestamp, self._tz)}] {message.username}{marker}: {body}"
        if message.reply_to is not None:
            quote = preview_text(message.reply_to, self._preview_chars)
            line += f"\n    > {message.reply_to.username}: {quote}"
        return line

    def on_state_changed(self, state: ConnectionState) -> None:
        self.say(f"-- {state.value} --")

    def on_timeline_changed(self, timeline: Tuple[Message, ...]) -> None:
        ids = [msg.id for msg in timeline]
        if ids[:len(self._shown)] != self._shown:
            # History replay: print the room from the top.
            self.say("-- history --")
            self._shown = []

        number = sum(1 for msg in timeline[:len(self._shown)] if isinstance(msg, ChatMessage))
        for msg in timeline[len(self._shown):]:
            if isinstance(msg, ChatMessage):
                number += 1
            self.say(self.render(msg, number))
        self._shown = ids

    def on_presence_changed(self, occupants: Tuple[str, ...]) -> None:
        self._occupants = occupants

    def on_countdown(self, label: str) -> None:
        if not label:
            return
        # Under an hour the label changes every second; print once a minute.
        if label == EXPIRED_LABEL or not label.endswith("s") or label.endswith(" 0s"):
            self.say(f"-- expires in {label} --" if label != EXPIRED_LABEL else "-- room expired --")

    def on_leave(self, reason: LeaveReason) -> None:
        self.leave_reason = reason
        self.say(f"-- left room ({reason.value}) --")
        self.left.set()

    def print_occupants(self) -> None:
        self.say(f"{len(self._occupants)} online")
        for name in self._occupants:
            self.say(f"  {occupant_label(name, self.user)}")


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[Optional[str]]") -> None:
    def _pump() -> None:
        for line in sys.stdin:
            loop.call_soon_threadsafe(queue.put_nowait, line.rstrip("\n"))
        loop.call_soon_threadsafe(queue.put_nowait, None)

    # Daemon so a pending readline never holds up interpreter exit.
    threading.Thread(target=_pump, name="stdin-reader", daemon=True).start()


async def handle_line(session: ChatSession, view: TerminalView, line: str) -> None:
    """Run one typed line against the session."""
    if not line.startswith("/"):
        await session.send_text(line)
        return

    command, _, arg = line[1:].partition(" ")
    arg = arg.strip()

    if command == "quit":
        await session.leave()
    elif command == "users":
        view.print_occupants()
    elif command == "cancel":
        session.cancel_reply()
    elif command == "reply":
        chat = [msg for msg in session.timeline if isinstance(msg, ChatMessage)]
        index = int(arg) - 1
        if not 0 <= index < len(chat):
            raise IndexError(f"No message #{arg}")
        snapshot = session.start_reply(chat[index])
        view.say(f"-- replying to {snapshot.username}: {preview_text(snapshot)} --")
    elif command == "image":
        await session.send_image(ImageFile.from_path(arg))
    elif command == "reconnect":
        await session.set_foreground(True)
    else:
        view.say(f"Unknown command /{command}")


async def run(room_id: str, name: str, settings: AppSettings) -> int:
    view = TerminalView(name, settings)
    lines: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
    _start_stdin_reader(asyncio.get_running_loop(), lines)

    async with RoomApiClient(
        settings.server.api_base_url,
        timeout=settings.server.request_timeout_seconds,
    ) as api:
        async with ChatSession(room_id, name, api, config=settings, listener=view) as session:
            left = asyncio.ensure_future(view.left.wait())
            try:
                while not view.left.is_set():
                    next_line = asyncio.ensure_future(lines.get())
                    done, _ = await asyncio.wait(
                        {next_line, left}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if next_line not in done:
                        next_line.cancel()
                        break

                    line = next_line.result()
                    if line is None:
                        await session.leave()
                        break
                    try:
                        await handle_line(session, view, line)
                    except (SessionError, OSError, ValueError, IndexError) as e:
                        view.say(f"!! {e}")
            finally:
                left.cancel()

    return 0 if view.leave_reason in (None, LeaveReason.USER_EXIT) else 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="anonroom", description="Join an anonymous chat room.")
    parser.add_argument("room", help="Room name")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--config", type=Path, default=None, help="Settings YAML file")
    args = parser.parse_args(argv)

    settings = get_config(args.config)
    configure_logging(settings.logging.level)

    try:
        return asyncio.run(run(args.room, args.name, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
