"""Durable registry of known conductor endpoints.

The registry is a JSON array of endpoint records, rewritten wholesale on
every mutation. The built-in default endpoint (id "local") needs no
credential, is always present and is never removed.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from conductor.constants import DEFAULT_ENDPOINT_ID, DEFAULT_ENDPOINT_NAME, ENDPOINTS_STORAGE_KEY
from conductor.utils import random_id, strip_trailing_slash

logger = logging.getLogger(__name__)


@dataclass
class Endpoint:
    """A conductor server reachable over HTTP and WebSocket."""

    id: str
    name: str
    url: str = ""
    token: str | None = None
    connected: bool = False
    is_local: bool = False

    def to_record(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "token": self.token,
            "isLocal": self.is_local,
            "connected": self.connected,
        }

    @classmethod
    def from_record(cls, record: dict[str, object]) -> "Endpoint":
        token = record.get("token")
        is_local = bool(record.get("isLocal", False))
        return cls(
            id=str(record["id"]),
            name=str(record.get("name") or record["id"]),
            url=strip_trailing_slash(str(record.get("url") or "")),
            token=str(token) if token else None,
            # Records written before liveness tracking count as reachable.
            connected=is_local or record.get("connected") is not False,
            is_local=is_local,
        )


def default_endpoint() -> Endpoint:
    return Endpoint(
        id=DEFAULT_ENDPOINT_ID,
        name=DEFAULT_ENDPOINT_NAME,
        url="",
        token=None,
        connected=True,
        is_local=True,
    )


class EndpointRegistry:
    """In-memory endpoint list backed by `<state_dir>/ai_conductor_servers.json`."""

    def __init__(self, state_dir: Path):
        self.path = state_dir / f"{ENDPOINTS_STORAGE_KEY}.json"
        self._endpoints: list[Endpoint] = [default_endpoint()]

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    @property
    def default(self) -> Endpoint:
        for endpoint in self._endpoints:
            if endpoint.is_local:
                return endpoint
        # load() guarantees a default; only reachable if the list was tampered with.
        fallback = default_endpoint()
        self._endpoints.insert(0, fallback)
        return fallback

    def load(self) -> list[Endpoint]:
        """Load endpoints from disk, prepending the default endpoint when missing."""
        endpoints: list[Endpoint] = []
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, list):
                    raise TypeError(f"expected a JSON array, got {type(data).__name__}")
                seen: set[str] = set()
                for item in data:
                    if not isinstance(item, dict) or not item.get("id"):
                        logger.warning("Skipping invalid endpoint record in %s: %r", self.path, item)
                        continue
                    endpoint = Endpoint.from_record(item)
                    if endpoint.id in seen:
                        logger.warning("Skipping duplicate endpoint id %s in %s", endpoint.id, self.path)
                        continue
                    if endpoint.is_local and any(current.is_local for current in endpoints):
                        logger.warning("Skipping extra default endpoint %s in %s", endpoint.id, self.path)
                        continue
                    seen.add(endpoint.id)
                    endpoints.append(endpoint)
            except (json.JSONDecodeError, KeyError, TypeError, OSError) as e:
                logger.warning("Failed to load endpoints from %s: %s", self.path, e)
                endpoints = []
        else:
            logger.debug("No endpoint state file found, starting with the default endpoint")

        if not any(endpoint.is_local for endpoint in endpoints):
            endpoints = [endpoint for endpoint in endpoints if endpoint.id != DEFAULT_ENDPOINT_ID]
            endpoints.insert(0, default_endpoint())
        self._endpoints = endpoints
        logger.info("Loaded %d endpoints from %s", len(endpoints), self.path)
        return self.endpoints

    def save(self) -> None:
        """Persist the full endpoint list.

        Uses atomic replacement and advisory locking to prevent torn writes.
        """
        records = [endpoint.to_record() for endpoint in self._endpoints]
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            lock_path = self.path.with_suffix(".lock")
            with open(lock_path, "w", encoding="utf-8") as lock_file:
                try:
                    import fcntl

                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                except (ImportError, OSError):
                    pass  # fcntl not available or locking failed, proceed best-effort

                tmp_path = self.path.with_suffix(".tmp")
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())

                os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error("Failed to save endpoints to %s: %s", self.path, e)
            return

        logger.debug("Saved %d endpoints to %s", len(records), self.path)

    def add(self, name: str, url: str) -> Endpoint:
        """Build a new, unauthenticated endpoint. Not persisted until registered."""
        existing = {endpoint.id for endpoint in self._endpoints}
        endpoint_id = random_id()
        while endpoint_id in existing:
            endpoint_id = random_id()
        return Endpoint(
            id=endpoint_id,
            name=name.strip(),
            url=strip_trailing_slash(url),
            token=None,
            connected=False,
            is_local=False,
        )

    def register(self, endpoint: Endpoint) -> None:
        """Store an authenticated endpoint (replacing one with the same id) and persist."""
        if endpoint.is_local:
            raise ValueError("The default endpoint is built in and cannot be registered")
        for index, current in enumerate(self._endpoints):
            if current.id == endpoint.id:
                self._endpoints[index] = endpoint
                break
        else:
            self._endpoints.append(endpoint)
        self.save()

    def remove(self, endpoint_id: str) -> None:
        """Remove an endpoint by id; unknown ids and the default endpoint are left alone."""
        endpoint = self.resolve(endpoint_id)
        if endpoint is None:
            return
        if endpoint.is_local:
            logger.warning("Refusing to remove the default endpoint")
            return
        self._endpoints = [current for current in self._endpoints if current.id != endpoint_id]
        self.save()

    def resolve(self, endpoint_id: str) -> Endpoint | None:
        for endpoint in self._endpoints:
            if endpoint.id == endpoint_id:
                return endpoint
        return None

    def reachable(self) -> list[Endpoint]:
        return [endpoint for endpoint in self._endpoints if endpoint.connected]

    def mark(self, endpoint_id: str, connected: bool) -> bool:
        """Update an endpoint's liveness flag. Returns True when it changed."""
        endpoint = self.resolve(endpoint_id)
        if endpoint is None or endpoint.connected == connected:
            return False
        endpoint.connected = connected
        return True
