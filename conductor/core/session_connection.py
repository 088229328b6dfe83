"""Live bidirectional stream to one (endpoint, session) pair.

State machine:

    IDLE -> CONNECTING -> OPEN -> (CLOSING | RECONNECTING) -> IDLE
                                        RECONNECTING -> ABANDONED

Every deferred callback (socket reader, reconnect timer) carries the epoch
it was created under. `start()` advances the epoch, so work belonging to a
superseded pair notices and stops instead of touching the renderer.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Protocol

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from conductor.cli.models import (
    InputFrame,
    OutputFrame,
    ResizeFrame,
    StreamFrame,
    UnknownFrame,
    decode_frame,
    encode_binary,
    encode_frame,
)
from conductor.constants import CONNECTION_LOST_NOTICE, RECONNECTING_NOTICE
from conductor.core.context import ClientContext
from conductor.core.endpoint_registry import Endpoint
from conductor.core.protocols import Renderer

logger = logging.getLogger(__name__)

WS_OPEN_TIMEOUT_S = 10.0
WS_PING_INTERVAL_S = 30.0


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    ABANDONED = "abandoned"


class StreamSocket(Protocol):
    """The subset of a websockets `ClientConnection` the connection uses."""

    async def send(self, message: str | bytes) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str, dict[str, str]], Awaitable[StreamSocket]]
Sleeper = Callable[[float], Awaitable[None]]


async def open_websocket(url: str, headers: dict[str, str]) -> StreamSocket:
    """Open a WebSocket to a session stream."""
    return await connect(
        url,
        additional_headers=headers or None,
        open_timeout=WS_OPEN_TIMEOUT_S,
        ping_interval=WS_PING_INTERVAL_S,
        max_size=None,
    )


def reconnect_delay(attempt: int, initial: float, maximum: float) -> float:
    """Backoff before reconnect attempt `attempt` (0-based), in seconds."""
    return min(initial * (2**attempt), maximum)


class SessionConnection:  # pylint: disable=too-many-instance-attributes  # state machine bookkeeping
    """Owns the lifecycle of exactly one session stream and its reconnects."""

    def __init__(
        self,
        context: ClientContext,
        renderer: Renderer,
        *,
        connector: Connector = open_websocket,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.context = context
        self.renderer = renderer
        self._connector = connector
        self._sleep = sleep

        reconnect = context.config.reconnect
        self.max_attempts = reconnect.max_attempts
        self.initial_delay = reconnect.initial_delay
        self.max_delay = reconnect.max_delay

        self.state = ConnectionState.IDLE
        self.endpoint: Endpoint | None = None
        self.session_id: str | None = None
        self.attempts = 0
        self.manual_disconnect = False
        self.epoch = 0

        self._ws: StreamSocket | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._resume_armed = False
        self._renderer_disposed = False

    @property
    def target(self) -> tuple[str, str] | None:
        if self.endpoint is None or self.session_id is None:
            return None
        return self.endpoint.id, self.session_id

    @property
    def is_open(self) -> bool:
        return self.state is ConnectionState.OPEN and self._ws is not None

    def _is_current(self, epoch: int) -> bool:
        return epoch == self.epoch and not self.manual_disconnect

    # --- Lifecycle ---

    async def start(self, endpoint: Endpoint, session_id: str) -> None:
        """Point the stream at a new pair, tearing down any previous socket first."""
        await self._teardown()
        self.epoch += 1
        self.endpoint = endpoint
        self.session_id = session_id
        self.attempts = 0
        self.manual_disconnect = False
        self._resume_armed = False
        logger.info("Connecting to session %s on %s (epoch %d)", session_id, endpoint.name, self.epoch)
        self._open(self.epoch)

    async def disconnect(self) -> None:
        """Manual disconnect: no reconnects, socket closed, renderer released."""
        self.manual_disconnect = True
        self._resume_armed = False
        await self._teardown()
        if not self._renderer_disposed:
            self._renderer_disposed = True
            self.renderer.dispose()
        logger.info("Disconnected from session %s", self.session_id)

    async def _teardown(self) -> None:
        reconnect, self._reconnect_task = self._reconnect_task, None
        if reconnect is not None and not reconnect.done():
            reconnect.cancel()

        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        if reader is None and ws is None:
            self.state = ConnectionState.IDLE
            return

        self.state = ConnectionState.CLOSING
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("Error while closing session socket: %s", e)
        if reader is not None and reader is not asyncio.current_task():
            await asyncio.wait([reader])
        self.state = ConnectionState.IDLE

    def _open(self, epoch: int) -> None:
        self.state = ConnectionState.CONNECTING
        self._reader = asyncio.create_task(self._run(epoch), name=f"session-stream-{self.session_id}")

    async def _run(self, epoch: int) -> None:
        """Connect, pump inbound frames until the socket closes, then recover."""
        endpoint, session_id = self.endpoint, self.session_id
        if endpoint is None or session_id is None:
            return
        api = self.context.api
        url = api.ws_url(endpoint, session_id)

        try:
            ws = await self._connector(url, api.ws_headers(endpoint))
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.info("Stream connect to %s failed: %s", endpoint.name, e)
            self._on_close(epoch)
            return

        if not self._is_current(epoch):
            await ws.close()
            return

        self._ws = ws
        await self._on_open(epoch, ws)
        try:
            async for message in ws:
                if not self._is_current(epoch):
                    break
                self._on_message(message)
        except ConnectionClosed as e:
            logger.debug("Stream for session %s closed: %s", session_id, e)
        finally:
            if self._ws is ws:
                self._ws = None
        self._on_close(epoch)

    async def _on_open(self, epoch: int, ws: StreamSocket) -> None:
        if not self._is_current(epoch):
            return
        self.state = ConnectionState.OPEN
        self.attempts = 0
        logger.info("Stream open for session %s", self.session_id)
        await self._send(ws, encode_frame(ResizeFrame(rows=self.renderer.rows, cols=self.renderer.cols)))

    def _on_message(self, message: str | bytes) -> None:
        frame: StreamFrame | UnknownFrame = decode_frame(message)
        match frame:
            case OutputFrame(data=data):
                self._write(data)
            case InputFrame() | ResizeFrame():
                logger.debug("Ignoring client-bound %s frame", frame.type)
            case UnknownFrame(reason=reason):
                logger.debug("Dropping malformed frame: %s", reason)

    def _on_close(self, epoch: int) -> None:
        if not self._is_current(epoch):
            return
        self._schedule_reconnect(epoch)

    # --- Reconnect policy ---

    def _schedule_reconnect(self, epoch: int) -> None:
        if self.attempts >= self.max_attempts:
            self.state = ConnectionState.ABANDONED
            self._resume_armed = True
            logger.warning(
                "Giving up on session %s after %d reconnect attempts", self.session_id, self.attempts
            )
            self._write(CONNECTION_LOST_NOTICE)
            return

        delay = reconnect_delay(self.attempts, self.initial_delay, self.max_delay)
        self.attempts += 1
        self.state = ConnectionState.RECONNECTING
        logger.info(
            "Reconnecting to session %s in %.1fs (%d/%d)", self.session_id, delay, self.attempts, self.max_attempts
        )
        self._write(RECONNECTING_NOTICE.format(attempt=self.attempts, max_attempts=self.max_attempts))
        self._reconnect_task = asyncio.create_task(self._reconnect_after(epoch, delay))

    async def _reconnect_after(self, epoch: int, delay: float) -> None:
        await self._sleep(delay)
        # The pair may have changed or been disconnected while we slept.
        if not self._is_current(epoch):
            return
        self._reconnect_task = None
        self._open(epoch)

    # --- Outbound ---

    async def _send(self, ws: StreamSocket, message: str | bytes) -> None:
        try:
            await ws.send(message)
        except (ConnectionClosed, OSError) as e:
            # The reader sees the same close and drives the reconnect.
            logger.debug("Send on session %s failed: %s", self.session_id, e)

    async def send_input(self, data: str) -> None:
        """Forward a keystroke; dropped unless open, or used to resume when abandoned."""
        if self.state is ConnectionState.ABANDONED and self._resume_armed:
            self._resume_armed = False
            self.attempts = 0
            logger.info("Resuming session %s after user input", self.session_id)
            self._open(self.epoch)
            return
        ws = self._ws
        if self.state is not ConnectionState.OPEN or ws is None:
            return
        await self._send(ws, encode_frame(InputFrame(data=data)))

    async def send_binary(self, data: str) -> None:
        """Forward pasted non-UTF8 data as a raw binary frame."""
        ws = self._ws
        if self.state is not ConnectionState.OPEN or ws is None:
            return
        await self._send(ws, encode_binary(data))

    async def resize(self, rows: int, cols: int) -> None:
        ws = self._ws
        if self.state is not ConnectionState.OPEN or ws is None:
            return
        await self._send(ws, encode_frame(ResizeFrame(rows=rows, cols=cols)))

    def _write(self, text: str) -> None:
        if not self._renderer_disposed:
            self.renderer.write(text)
