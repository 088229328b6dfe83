"""Process-scoped client context.

Everything that lives from process start to exit (configuration, endpoint
registry, HTTP client) hangs off one `ClientContext` that is passed
explicitly to each component constructor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from conductor.cli.api_client import EndpointClient
from conductor.config import ClientConfig
from conductor.core.endpoint_registry import EndpointRegistry

logger = logging.getLogger(__name__)


@dataclass
class ClientContext:
    config: ClientConfig
    registry: EndpointRegistry
    api: EndpointClient

    @classmethod
    def create(cls, config: ClientConfig) -> "ClientContext":
        state_dir = Path(config.state_dir).expanduser()
        registry = EndpointRegistry(state_dir)
        api = EndpointClient(config.origin, api_prefix=config.api_prefix, timeout=config.request_timeout)
        return cls(config=config, registry=registry, api=api)

    async def open(self) -> None:
        """Load durable state and open the HTTP client."""
        self.registry.load()
        await self.api.connect()
        logger.debug("Client context opened (origin=%s)", self.config.origin)

    async def close(self) -> None:
        await self.api.close()
