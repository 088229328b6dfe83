"""Aggregate view of sessions across every registered endpoint.

Each refresh rebuilds the snapshot from scratch. One failing endpoint only
empties its own section: it is marked unreachable while the sessions of
healthy endpoints are kept.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from conductor.cli.api_client import APIError, LoginRequiredError, NotFoundError
from conductor.cli.models import SessionInfo
from conductor.core.context import ClientContext
from conductor.core.endpoint_registry import Endpoint
from conductor.core.protocols import PromptProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndpointSessions:
    endpoint: Endpoint
    sessions: list[SessionInfo] = field(default_factory=list)


@dataclass(frozen=True)
class DirectorySnapshot:
    """Sessions grouped by endpoint id, in registry order."""

    groups: dict[str, EndpointSessions] = field(default_factory=dict)
    login_required: bool = False

    def sessions(self) -> list[SessionInfo]:
        return [session for group in self.groups.values() for session in group.sessions]

    def find(self, endpoint_id: str, session_id: str) -> SessionInfo | None:
        group = self.groups.get(endpoint_id)
        if group is None:
            return None
        for session in group.sessions:
            if session.id == session_id:
                return session
        return None


class SessionDirectory:
    """Session bookkeeping (list/create/rename/delete) over all endpoints."""

    def __init__(self, context: ClientContext):
        self.context = context
        self.snapshot = DirectorySnapshot()

    async def refresh(self) -> DirectorySnapshot:
        """List sessions on every endpoint concurrently and rebuild the snapshot."""
        registry = self.context.registry
        endpoints = registry.endpoints
        # The client itself may flip a remote endpoint offline on 401.
        before = {endpoint.id: endpoint.connected for endpoint in endpoints}

        results = await asyncio.gather(
            *(self.context.api.list_sessions(endpoint) for endpoint in endpoints), return_exceptions=True
        )

        groups: dict[str, EndpointSessions] = {}
        login_required = False
        for endpoint, result in zip(endpoints, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, LoginRequiredError):
                    login_required = True
                    logger.info("Default endpoint requires login")
                elif isinstance(result, APIError):
                    logger.warning("Listing sessions on %s failed: %s", endpoint.name, result)
                    registry.mark(endpoint.id, False)
                else:
                    logger.error("Unexpected error listing sessions on %s", endpoint.name, exc_info=result)
                    registry.mark(endpoint.id, False)
                groups[endpoint.id] = EndpointSessions(endpoint=endpoint, sessions=[])
            else:
                registry.mark(endpoint.id, True)
                groups[endpoint.id] = EndpointSessions(endpoint=endpoint, sessions=result)

        if any(before[endpoint.id] != endpoint.connected for endpoint in endpoints):
            registry.save()

        self.snapshot = DirectorySnapshot(groups=groups, login_required=login_required)
        logger.debug(
            "Directory refreshed: %d sessions across %d endpoints (%d reachable)",
            len(self.snapshot.sessions()),
            len(groups),
            sum(1 for endpoint in endpoints if endpoint.connected),
        )
        return self.snapshot

    async def create_session(self, endpoint: Endpoint, name: str | None = None) -> str | None:
        """Create a session on a reachable endpoint.

        The new id is returned immediately; it shows up in the snapshot only
        after the next `refresh()`.
        """
        if not endpoint.connected:
            logger.warning("Not creating a session on unreachable endpoint %s", endpoint.name)
            return None
        result = await self.context.api.create_session(endpoint, name=name)
        logger.info("Created session %s on %s", result.id, endpoint.name)
        return result.id

    async def rename_session(self, endpoint: Endpoint, session_id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        try:
            return await self.context.api.rename_session(endpoint, session_id, name)
        except NotFoundError:
            logger.info("Session %s no longer exists on %s; rename skipped", session_id, endpoint.name)
            return False

    async def delete_session(self, endpoint: Endpoint, session_id: str) -> bool:
        try:
            return await self.context.api.delete_session(endpoint, session_id)
        except NotFoundError:
            logger.info("Session %s already gone from %s", session_id, endpoint.name)
            return False

    async def pick_create_target(self, prompts: PromptProvider) -> Endpoint | None:
        """Choose where a new session goes.

        No reachable endpoint is a passive no-op; a single one is used
        without asking; several require the user to choose.
        """
        reachable = self.context.registry.reachable()
        if not reachable:
            logger.warning("No reachable endpoints; cannot create a session")
            prompts.notify("No servers connected")
            return None
        if len(reachable) == 1:
            return reachable[0]
        return await prompts.request_choice(
            "Create session on:", reachable, [endpoint.name for endpoint in reachable]
        )
