"""HTTP client for conductor endpoints."""

import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from http import HTTPMethod
from urllib.parse import quote, urlencode, urlsplit

import httpx
from pydantic import TypeAdapter, ValidationError

from conductor.cli.models import (
    SESSION_LIST_ADAPTER,
    CreateSessionResult,
    HealthInfo,
    JsonValue,
    LoginResult,
    SessionInfo,
)
from conductor.constants import SESSION_TOKEN_HEADER, WS_PATH_PREFIX, WS_TOKEN_PARAM
from conductor.core.endpoint_registry import Endpoint

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 5.0
CREATE_SESSION_TIMEOUT_S = 30.0
CONNECT_ERROR_LOG_INTERVAL_S = 10.0

__all__ = [
    "APIError",
    "APIResponse",
    "AuthenticationError",
    "ConnectivityError",
    "EndpointClient",
    "LoginRequiredError",
    "NotFoundError",
    "ProtocolError",
]


class APIError(Exception):
    """API request failed with structured error info."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail or message  # Fallback to full message if no detail


class AuthenticationError(APIError):
    """Endpoint rejected the credential. Never retried automatically."""


class LoginRequiredError(AuthenticationError):
    """The default endpoint answered 401: the whole client must log in again."""


class ConnectivityError(APIError):
    """Endpoint could not be reached (connect failure, reset, timeout)."""


class ProtocolError(APIError):
    """Endpoint answered with a body that does not match the API contract."""


class NotFoundError(APIError):
    """Endpoint does not know the requested session."""


@dataclass(frozen=True)
class APIResponse:
    status_code: int
    body: JsonValue
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def unauthorized(self) -> bool:
        return self.status_code == 401


class EndpointClient:
    """Async HTTP client speaking the conductor API to any registered endpoint.

    The default endpoint shares one client whose cookie jar carries the
    top-level login session. Every other endpoint is its own trust domain:
    it gets a dedicated client, its cookie jar is emptied before each call
    and the bearer token travels in the `X-Session-Token` header.
    """

    def __init__(self, origin: str, api_prefix: str = "/api", timeout: float = DEFAULT_TIMEOUT_S):
        """Initialize client.

        Args:
            origin: Base URL of the default endpoint
            api_prefix: Path prefix of the HTTP API on every endpoint
            timeout: Default request timeout in seconds
        """
        self.origin = origin.rstrip("/")
        self.api_prefix = api_prefix
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None
        self._remote_clients: dict[str, httpx.AsyncClient] = {}
        self._last_connect_error_log: dict[str, float] = {}

    async def connect(self) -> None:
        """Create the shared client for the default endpoint."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.origin, timeout=self.timeout)

    @property
    def is_connected(self) -> bool:
        """Check if client is connected.

        Returns:
            True if client is connected
        """
        return self._client is not None

    async def close(self) -> None:
        """Close all HTTP clients."""
        remote_clients = list(self._remote_clients.values())
        self._remote_clients.clear()
        for client in remote_clients:
            await client.aclose()
        if self._client:
            await self._client.aclose()
            self._client = None

    async def forget(self, endpoint_id: str) -> None:
        """Close and drop the cached client of a removed endpoint."""
        client = self._remote_clients.pop(endpoint_id, None)
        self._last_connect_error_log.pop(endpoint_id, None)
        if client is not None:
            await client.aclose()

    # --- URL helpers ---

    def base_url(self, endpoint: Endpoint) -> str:
        if endpoint.is_local or not endpoint.url:
            return self.origin
        return endpoint.url.rstrip("/")

    def api_path(self, path: str) -> str:
        return f"{self.api_prefix}/{path.lstrip('/')}"

    def http_url(self, endpoint: Endpoint, path: str) -> str:
        return self.base_url(endpoint) + self.api_path(path)

    def ws_url(self, endpoint: Endpoint, session_id: str) -> str:
        """Stream URL for a session.

        The scheme mirrors the endpoint's own transport security: `wss` iff
        its base URL (the origin, for the default endpoint) is `https`.
        """
        parts = urlsplit(self.base_url(endpoint))
        scheme = "wss" if parts.scheme == "https" else "ws"
        url = f"{scheme}://{parts.netloc}{WS_PATH_PREFIX}/{quote(session_id, safe='')}"
        if not endpoint.is_local:
            url += "?" + urlencode({WS_TOKEN_PARAM: endpoint.token or ""})
        return url

    def ws_headers(self, endpoint: Endpoint) -> dict[str, str]:
        """Ambient session cookie for streams on the default endpoint."""
        if not endpoint.is_local or self._client is None or not self._client.cookies:
            return {}
        cookie = "; ".join(f"{name}={value}" for name, value in self._client.cookies.items())
        return {"Cookie": cookie}

    # --- Transport ---

    def _client_for(self, endpoint: Endpoint) -> httpx.AsyncClient:
        if not self._client:
            raise APIError("Client not connected. Call connect() first.")
        if endpoint.is_local:
            return self._client
        client = self._remote_clients.get(endpoint.id)
        if client is None:
            client = httpx.AsyncClient(base_url=self.base_url(endpoint), timeout=self.timeout)
            self._remote_clients[endpoint.id] = client
        return client

    def _now_monotonic(self) -> float:
        """Return a monotonic timestamp for debounce logic."""
        return time.monotonic()

    def _log_connect_error(self, endpoint: Endpoint, method: str, path: str, error: Exception) -> None:
        now = self._now_monotonic()
        last = self._last_connect_error_log.get(endpoint.id)
        if last is not None and (now - last) < CONNECT_ERROR_LOG_INTERVAL_S:
            return
        self._last_connect_error_log[endpoint.id] = now
        logger.debug("API connect failed: %s %s on %s (%s): %s", method, path, endpoint.name, endpoint.id, error)

    async def _send(
        self,
        endpoint: Endpoint,
        method: HTTPMethod | str,
        path: str,
        *,
        json_body: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Issue one HTTP call with the endpoint's auth framing.

        Raises:
            ConnectivityError: If the endpoint cannot be reached
            APIError: On an unsupported method or a missing connect()
        """
        client = self._client_for(endpoint)
        try:
            method_enum = HTTPMethod(str(method).upper())
        except ValueError as e:
            raise APIError(f"Unsupported HTTP method: {method}") from e

        url = self.api_path(path)
        headers: dict[str, str] = {}
        if not endpoint.is_local:
            client.cookies.clear()
            if endpoint.token:
                headers[SESSION_TOKEN_HEADER] = endpoint.token
        request_timeout = timeout if timeout is not None else self.timeout

        try:
            if method_enum is HTTPMethod.GET:
                return await client.get(url, headers=headers, timeout=request_timeout)
            if method_enum is HTTPMethod.POST:
                return await client.post(url, headers=headers, json=json_body, timeout=request_timeout)
            if method_enum is HTTPMethod.PUT:
                return await client.put(url, headers=headers, json=json_body, timeout=request_timeout)
            if method_enum is HTTPMethod.DELETE:
                return await client.delete(url, headers=headers, timeout=request_timeout)
        except httpx.TimeoutException as e:
            raise ConnectivityError(f"Request to {endpoint.name} timed out.") from e
        except httpx.TransportError as e:
            self._log_connect_error(endpoint, method_enum.value, url, e)
            raise ConnectivityError(f"Cannot connect to {endpoint.name}: {e}") from e
        raise APIError(f"Unsupported HTTP method: {method}")

    @staticmethod
    def _parse(resp: httpx.Response) -> APIResponse:
        try:
            body: JsonValue = resp.json()
        except (json.JSONDecodeError, ValueError):
            body = None
        return APIResponse(status_code=resp.status_code, body=body, text=resp.text)

    async def request(
        self,
        endpoint: Endpoint,
        method: HTTPMethod | str,
        path: str,
        *,
        json_body: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> APIResponse:
        """Make an authenticated API call.

        A 401 from a remote endpoint marks only that endpoint unreachable and
        is returned to the caller; a 401 from the default endpoint means the
        whole client is logged out.

        Returns:
            Status code and parsed JSON body (None when empty or malformed)

        Raises:
            LoginRequiredError: If the default endpoint answered 401
            ConnectivityError: If the endpoint cannot be reached
        """
        resp = self._parse(await self._send(endpoint, method, path, json_body=json_body, timeout=timeout))
        if resp.unauthorized:
            if endpoint.is_local:
                raise LoginRequiredError("Login required", status_code=401, detail=self._detail(resp))
            logger.info("Endpoint %s rejected its token; marking unreachable", endpoint.name)
            endpoint.connected = False
        return resp

    @staticmethod
    def _detail(resp: APIResponse) -> str | None:
        if isinstance(resp.body, dict):
            error = resp.body.get("error") or resp.body.get("detail")
            if error:
                return str(error)
        return resp.text or None

    def _check(self, endpoint: Endpoint, resp: APIResponse) -> APIResponse:
        if resp.ok:
            return resp
        detail = self._detail(resp)
        if resp.unauthorized:
            raise AuthenticationError(
                f"{endpoint.name} rejected the session token", status_code=resp.status_code, detail=detail
            )
        if resp.status_code == 404:
            raise NotFoundError(f"Not found on {endpoint.name}: {detail}", status_code=404, detail=detail)
        raise APIError(
            f"API request failed: {resp.status_code} {detail or ''}".rstrip(),
            status_code=resp.status_code,
            detail=detail,
        )

    # --- API Methods ---

    async def authenticate(self, endpoint: Endpoint, secret: str) -> Endpoint:
        """Log in to an endpoint with its password.

        On the default endpoint this is the top-level login: the session
        cookie lands in the shared cookie jar. On any other endpoint the
        returned bearer token is stored on the endpoint.

        Returns:
            The same endpoint, now holding its credential and marked reachable

        Raises:
            AuthenticationError: If the password is rejected
            ConnectivityError: If the endpoint cannot be reached
            ProtocolError: If the login response is malformed
        """
        resp = self._parse(await self._send(endpoint, HTTPMethod.POST, "/login", json_body={"password": secret}))
        if not resp.ok:
            logger.info("Authentication to %s failed with status %d", endpoint.name, resp.status_code)
            raise AuthenticationError("Authentication failed", status_code=resp.status_code, detail=self._detail(resp))
        try:
            result = TypeAdapter(LoginResult).validate_python(resp.body)
        except ValidationError as e:
            raise ProtocolError(f"Malformed login response from {endpoint.name}") from e

        if not endpoint.is_local:
            endpoint.token = result.token
        endpoint.connected = True
        logger.info("Authenticated to %s", endpoint.name)
        return endpoint

    async def list_sessions(self, endpoint: Endpoint) -> list[SessionInfo]:
        """List sessions hosted on one endpoint.

        Returns:
            Sessions tagged with the endpoint id

        Raises:
            APIError: If request fails
        """
        resp = self._check(endpoint, await self.request(endpoint, HTTPMethod.GET, "/sessions"))
        try:
            sessions = SESSION_LIST_ADAPTER.validate_python(resp.body if resp.body is not None else [])
        except ValidationError as e:
            raise ProtocolError(f"Malformed session list from {endpoint.name}") from e
        return [dataclasses.replace(session, endpoint_id=endpoint.id) for session in sessions]

    async def create_session(self, endpoint: Endpoint, name: str | None = None) -> CreateSessionResult:
        """Create a new session.

        Raises:
            APIError: If request fails
        """
        payload = {"name": name} if name else {}
        resp = self._check(
            endpoint,
            await self.request(
                endpoint, HTTPMethod.POST, "/sessions", json_body=payload, timeout=CREATE_SESSION_TIMEOUT_S
            ),
        )
        try:
            return TypeAdapter(CreateSessionResult).validate_python(resp.body)
        except ValidationError as e:
            raise ProtocolError(f"Malformed create-session response from {endpoint.name}") from e

    async def rename_session(self, endpoint: Endpoint, session_id: str, name: str) -> bool:
        """Rename a session.

        Raises:
            APIError: If request fails
        """
        path = f"/sessions/{quote(session_id, safe='')}"
        resp = self._check(endpoint, await self.request(endpoint, HTTPMethod.PUT, path, json_body={"name": name}))
        return resp.ok

    async def delete_session(self, endpoint: Endpoint, session_id: str) -> bool:
        """Delete a session.

        Raises:
            APIError: If request fails
        """
        resp = self._check(
            endpoint, await self.request(endpoint, HTTPMethod.DELETE, f"/sessions/{quote(session_id, safe='')}")
        )
        return resp.ok

    async def health(self, endpoint: Endpoint) -> bool:
        """Probe the unauthenticated health route."""
        try:
            resp = await self._send(endpoint, HTTPMethod.GET, "/health")
        except ConnectivityError:
            return False
        if resp.status_code != 200:
            return False
        try:
            return TypeAdapter(HealthInfo).validate_json(resp.text).status == "ok"
        except ValidationError:
            return False
