"""Pytest configuration for conductor tests."""

import asyncio
import logging

import pytest

from conductor.config import ClientConfig
from conductor.core.context import ClientContext
from conductor.core.endpoint_registry import Endpoint

# Tests must never write to the user's rotating log file.
logging.getLogger("conductor").handlers.clear()
logging.getLogger("conductor").propagate = True


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


# --- Shared fakes ---

_CLOSED = object()


class FakeRenderer:
    """Records everything written to the screen."""

    def __init__(self, rows: int = 24, cols: int = 80):
        self.rows = rows
        self.cols = cols
        self.writes: list[str] = []
        self.disposed = 0

    @property
    def text(self) -> str:
        return "".join(self.writes)

    def write(self, text: str) -> None:
        self.writes.append(text)

    def dispose(self) -> None:
        self.disposed += 1


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, url: str = "", headers: dict[str, str] | None = None):
        self.url = url
        self.headers = headers or {}
        self.sent: list[str | bytes] = []
        self.closed = False
        self._inbox: asyncio.Queue[object] = asyncio.Queue()

    async def send(self, message: str | bytes) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSED)

    def feed(self, message: str | bytes) -> None:
        self._inbox.put_nowait(message)

    def drop(self) -> None:
        """Simulate the server closing the stream."""
        self._inbox.put_nowait(_CLOSED)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str | bytes:
        item = await self._inbox.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class FakeConnector:
    """Connector that hands out FakeSockets, failing the first `failures` attempts."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str, headers: dict[str, str]) -> FakeSocket:
        self.calls.append((url, headers))
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket(url, headers)
        self.sockets.append(socket)
        return socket


class RecordingSleep:
    """Sleeper that records delays and only yields to the loop."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakePrompts:
    """Scripted PromptProvider."""

    def __init__(self) -> None:
        self.credentials: list[str | None] = []
        self.texts: list[str | None] = []
        self.choice_index: int | None = 0
        self.notices: list[str] = []
        self.asked: list[str] = []

    async def request_credential(self, prompt: str) -> str | None:
        self.asked.append(prompt)
        return self.credentials.pop(0) if self.credentials else None

    async def request_text(self, prompt: str, default: str = "") -> str | None:
        self.asked.append(prompt)
        return self.texts.pop(0) if self.texts else None

    async def request_choice(self, prompt, options, labels):
        self.asked.append(prompt)
        return None if self.choice_index is None else options[self.choice_index]

    def notify(self, message: str) -> None:
        self.notices.append(message)


async def settle(predicate, rounds: int = 500) -> None:
    """Yield to the event loop until `predicate()` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def client_config():
    return ClientConfig(origin="http://localhost:8080")


@pytest.fixture
def context(tmp_path, client_config):
    ctx = ClientContext.create(client_config.model_copy(update={"state_dir": str(tmp_path)}))
    ctx.registry.load()
    return ctx


@pytest.fixture
def remote_endpoint(context):
    endpoint = Endpoint(id="box1", name="Box", url="http://10.0.0.5:8080", token="tok-1", connected=True)
    context.registry.register(endpoint)
    return endpoint


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def prompts():
    return FakePrompts()
