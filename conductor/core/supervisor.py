"""Top-level controller: one focused session at a time.

The supervisor owns the single active `SessionConnection`, switches between
sessions strictly sequentially (old teardown completes before the new
socket opens) and routes renderer events into whichever connection is
active. It also drives the user-facing endpoint and session flows through
the injected `PromptProvider`.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from conductor.cli.api_client import APIError, AuthenticationError, LoginRequiredError
from conductor.core.context import ClientContext
from conductor.core.endpoint_registry import Endpoint
from conductor.core.protocols import PromptProvider, Renderer
from conductor.core.session_connection import SessionConnection
from conductor.core.session_directory import DirectorySnapshot, SessionDirectory

logger = logging.getLogger(__name__)

RendererFactory = Callable[[], Renderer]
ConnectionFactory = Callable[[ClientContext, Renderer], SessionConnection]

T = TypeVar("T")


class ConnectionSupervisor:
    """Owns the active session connection and the endpoint/session flows."""

    def __init__(
        self,
        context: ClientContext,
        prompts: PromptProvider,
        renderer_factory: RendererFactory,
        *,
        directory: SessionDirectory | None = None,
        connection_factory: ConnectionFactory = SessionConnection,
    ):
        self.context = context
        self.prompts = prompts
        self.directory = directory or SessionDirectory(context)
        self._renderer_factory = renderer_factory
        self._connection_factory = connection_factory
        self.connection: SessionConnection | None = None
        self.active: tuple[str, str] | None = None

    # --- Active connection ---

    async def select_session(self, endpoint_id: str, session_id: str) -> bool:
        """Make (endpoint, session) the focused stream."""
        endpoint = self.context.registry.resolve(endpoint_id)
        if endpoint is None:
            logger.warning("Cannot select session %s: unknown endpoint %s", session_id, endpoint_id)
            return False

        await self._teardown()
        connection = self._connection_factory(self.context, self._renderer_factory())
        self.connection = connection
        self.active = (endpoint_id, session_id)
        await connection.start(endpoint, session_id)
        return True

    async def clear(self) -> None:
        """Drop the active connection; no session is selected afterwards."""
        await self._teardown()

    async def _teardown(self) -> None:
        connection, self.connection = self.connection, None
        self.active = None
        if connection is not None:
            await connection.disconnect()

    def is_active(self, endpoint_id: str, session_id: str | None = None) -> bool:
        if self.active is None:
            return False
        if session_id is None:
            return self.active[0] == endpoint_id
        return self.active == (endpoint_id, session_id)

    # --- Renderer events ---

    async def on_input(self, data: str) -> None:
        if self.connection is not None:
            await self.connection.send_input(data)

    async def on_binary(self, data: str) -> None:
        if self.connection is not None:
            await self.connection.send_binary(data)

    async def on_resize(self, rows: int, cols: int) -> None:
        if self.connection is not None:
            await self.connection.resize(rows, cols)

    # --- Directory ---

    async def refresh(self) -> DirectorySnapshot:
        """Refresh the directory, running the top-level login when the default endpoint asks for it."""
        snapshot = await self.directory.refresh()
        if snapshot.login_required and await self.login():
            snapshot = await self.directory.refresh()
        return snapshot

    async def login(self) -> bool:
        """Log in to the default endpoint (the top-level client session)."""
        return await self._authenticate(self.context.registry.default)

    # --- Endpoints ---

    async def _authenticate(self, endpoint: Endpoint) -> bool:
        secret = await self.prompts.request_credential(f"Password for {endpoint.name}:")
        if secret is None:
            return False
        try:
            await self.context.api.authenticate(endpoint, secret)
        except AuthenticationError:
            self.prompts.notify("Authentication failed")
            return False
        except APIError as e:
            self.prompts.notify(f"Cannot connect to {endpoint.name}: {e}")
            return False
        return True

    async def add_endpoint(self, name: str, url: str) -> Endpoint | None:
        """Authenticate a new endpoint; it is registered only when login succeeds."""
        if not name.strip() or not url.strip():
            return None
        endpoint = self.context.registry.add(name, url)
        if not await self._authenticate(endpoint):
            logger.info("Endpoint %s not added: authentication did not succeed", endpoint.name)
            await self.context.api.forget(endpoint.id)
            return None
        self.context.registry.register(endpoint)
        logger.info("Added endpoint %s (%s) at %s", endpoint.name, endpoint.id, endpoint.url)
        return endpoint

    async def reauthenticate(self, endpoint_id: str) -> bool:
        endpoint = self.context.registry.resolve(endpoint_id)
        if endpoint is None:
            return False
        if endpoint.is_local:
            return await self.login()
        if not await self._authenticate(endpoint):
            return False
        self.context.registry.register(endpoint)
        return True

    async def remove_endpoint(self, endpoint_id: str) -> bool:
        endpoint = self.context.registry.resolve(endpoint_id)
        if endpoint is None or endpoint.is_local:
            return False
        if self.is_active(endpoint_id):
            await self.clear()
        self.context.registry.remove(endpoint_id)
        await self.context.api.forget(endpoint_id)
        logger.info("Removed endpoint %s (%s)", endpoint.name, endpoint_id)
        return True

    # --- Sessions ---

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run one endpoint call.

        A 401 from the default endpoint runs the top-level login and retries
        the call once. A remote 401 has already marked that endpoint
        unreachable in memory; it is persisted before the error propagates.
        """
        try:
            return await operation()
        except LoginRequiredError:
            if not await self.login():
                raise
        except AuthenticationError:
            self.context.registry.save()
            raise
        return await operation()

    async def create_session(self, endpoint_id: str | None = None, *, focus: bool = True) -> str | None:
        """Create a session and (by default) focus it right away, before it is listed."""
        if endpoint_id is not None:
            endpoint = self.context.registry.resolve(endpoint_id)
        else:
            endpoint = await self.directory.pick_create_target(self.prompts)
        if endpoint is None:
            return None

        try:
            session_id = await self._call(lambda: self.directory.create_session(endpoint))
        except LoginRequiredError:
            logger.info("Session not created on %s: login did not succeed", endpoint.name)
            return None
        except AuthenticationError:
            await self.reauthenticate(endpoint.id)
            return None
        except APIError as e:
            logger.error("Failed to create session on %s: %s", endpoint.name, e)
            self.prompts.notify(f"Failed to create session: {e}")
            return None
        if session_id is None:
            return None

        if focus:
            await self.select_session(endpoint.id, session_id)
        await self.refresh()
        return session_id

    async def rename_session(self, endpoint_id: str, session_id: str, name: str | None = None) -> bool:
        endpoint = self.context.registry.resolve(endpoint_id)
        if endpoint is None:
            return False
        if name is None:
            current = self.directory.snapshot.find(endpoint_id, session_id)
            name = await self.prompts.request_text(
                "Rename session:", current.display_name if current else session_id
            )
            if name is None:
                return False
        try:
            renamed = await self._call(lambda: self.directory.rename_session(endpoint, session_id, name))
        except LoginRequiredError:
            logger.info("Session %s not renamed: login did not succeed", session_id)
            return False
        except APIError as e:
            logger.error("Failed to rename session %s: %s", session_id, e)
            self.prompts.notify(f"Failed to rename session: {e}")
            return False
        if renamed:
            await self.refresh()
        return renamed

    async def delete_session(self, endpoint_id: str, session_id: str) -> bool:
        endpoint = self.context.registry.resolve(endpoint_id)
        if endpoint is None:
            return False
        try:
            deleted = await self._call(lambda: self.directory.delete_session(endpoint, session_id))
        except LoginRequiredError:
            logger.info("Session %s not deleted: login did not succeed", session_id)
            return False
        except APIError as e:
            logger.error("Failed to delete session %s: %s", session_id, e)
            self.prompts.notify(f"Failed to delete session: {e}")
            return False
        if self.is_active(endpoint_id, session_id):
            await self.clear()
        await self.refresh()
        return deleted

    async def close(self) -> None:
        await self.clear()
