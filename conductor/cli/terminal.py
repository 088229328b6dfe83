"""Raw-mode terminal attachment for an interactive session.

`TerminalRenderer` writes session output straight to stdout. `attach()`
puts stdin in raw mode, feeds keystrokes and SIGWINCH geometry changes to
the supervisor through one queue (so events reach the socket in order) and
returns when the user presses the detach key.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from typing import Iterator, TextIO

from conductor.constants import DETACH_KEY
from conductor.core.supervisor import ConnectionSupervisor

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
_RESIZE = object()


def terminal_size() -> tuple[int, int]:
    """Return (rows, cols) of the controlling terminal."""
    size = shutil.get_terminal_size((80, 24))
    return size.lines, size.columns


class TerminalRenderer:
    """Renderer that passes decoded output through to a text stream."""

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream or sys.stdout
        self._disposed = False

    @property
    def rows(self) -> int:
        return terminal_size()[0]

    @property
    def cols(self) -> int:
        return terminal_size()[1]

    def write(self, text: str) -> None:
        if self._disposed:
            return
        self._stream.write(text)
        self._stream.flush()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._stream.flush()


@contextmanager
def raw_mode(fd: int) -> Iterator[None]:
    """Put a tty in raw mode for the duration of the block."""
    old_attrs = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSAFLUSH, old_attrs)


def decode_keys(chunk: bytes) -> tuple[str, bool]:
    """Decode a stdin chunk; returns (text, is_binary)."""
    try:
        return chunk.decode("utf-8"), False
    except UnicodeDecodeError:
        return chunk.decode("latin-1"), True


async def pump_events(supervisor: ConnectionSupervisor, queue: asyncio.Queue[object]) -> None:
    """Forward queued stdin chunks and resize markers until detach or EOF."""
    while True:
        item = await queue.get()
        if item is _RESIZE:
            rows, cols = terminal_size()
            await supervisor.on_resize(rows, cols)
            continue
        if not isinstance(item, bytes) or not item:
            return
        text, is_binary = decode_keys(item)
        if DETACH_KEY in text:
            before = text.split(DETACH_KEY, 1)[0]
            if before:
                await supervisor.on_input(before)
            return
        if is_binary:
            await supervisor.on_binary(text)
        else:
            await supervisor.on_input(text)


async def attach(supervisor: ConnectionSupervisor, endpoint_id: str, session_id: str) -> bool:
    """Attach the controlling terminal to a session until detached."""
    if not sys.stdin.isatty():
        raise RuntimeError("attach requires an interactive terminal")

    loop = asyncio.get_running_loop()
    fd = sys.stdin.fileno()
    queue: asyncio.Queue[object] = asyncio.Queue()

    def on_stdin() -> None:
        try:
            queue.put_nowait(os.read(fd, READ_CHUNK))
        except OSError as e:
            logger.debug("stdin read failed: %s", e)
            queue.put_nowait(b"")

    with raw_mode(fd):
        loop.add_reader(fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, queue.put_nowait, _RESIZE)
        try:
            if not await supervisor.select_session(endpoint_id, session_id):
                return False
            await pump_events(supervisor, queue)
        finally:
            loop.remove_signal_handler(signal.SIGWINCH)
            loop.remove_reader(fd)
            await supervisor.clear()
    return True
