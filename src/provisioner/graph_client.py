"""Async Microsoft Graph client.

A thin httpx wrapper that carries a bearer token and an API-version
selector. Error responses are mapped to the typed errors in errors.py so
callers never inspect raw status codes:

    401                               -> AuthenticationFailure
    403 Authorization_RequestDenied   -> InsufficientPermissions
    404                               -> ResourceNotFound
    anything else >= 400              -> DirectoryApiError(status, code)
    transport failure                 -> DirectoryApiError(status 0)

The API version is shared state for the whole run. Phases that need a
different version use the ``use_api_version`` context manager, which
restores the previous version on every exit path.

When a CancellationSignal is attached, every request races it and is
abandoned with SetupCancelled as soon as the run is cancelled.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import httpx

from .config import GRAPH_BASE_URL
from .errors import (
    AuthenticationFailure,
    DirectoryApiError,
    InsufficientPermissions,
    ResourceNotFound,
)
from .retry import CancellationSignal

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "beta"
DEFAULT_TIMEOUT_SECONDS = 30.0

# Pages followed by list() before giving up on @odata.nextLink
MAX_LIST_PAGES = 50


class GraphClient:
    """Shared, stateful handle to the directory API.

    Usage:
        async with GraphClient() as graph:
            graph.set_token(token)
            app = await graph.get("/applications/{id}")
            with graph.use_api_version("v1.0"):
                await graph.post("/oauth2PermissionGrants", body)
    """

    def __init__(
        self,
        *,
        base_url: str = GRAPH_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http: httpx.AsyncClient | None = None,
        cancel: CancellationSignal | None = None,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout
        )
        self.api_version = api_version
        self._token: str | None = None
        self.cancel = cancel

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def set_token(self, token: str) -> None:
        self._token = token

    def with_token(self, token: str) -> GraphClient:
        """Client that shares this connection pool but authenticates with ``token``.

        Used for calls that must run as another principal. The ambient
        token of this client is left untouched.
        """
        other = GraphClient(api_version=self.api_version, http=self._http, cancel=self.cancel)
        other.set_token(token)
        return other

    @contextmanager
    def use_api_version(self, version: str) -> Iterator[GraphClient]:
        """Temporarily switch the API version, restoring it on exit."""
        previous = self.api_version
        self.api_version = version
        try:
            yield self
        finally:
            self.api_version = previous

    # -------------------------------------------------------------------------
    # Verbs
    # -------------------------------------------------------------------------

    async def get(self, endpoint: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        response = await self._send("GET", endpoint, params=params)
        return _json_or_empty(response)

    async def list(self, endpoint: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """GET a collection, following @odata.nextLink."""
        items: list[dict[str, Any]] = []
        page = await self.get(endpoint, params=params)
        for _ in range(MAX_LIST_PAGES):
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            if not next_link:
                break
            page = await self.get(next_link)
        return items

    async def post(
        self,
        endpoint: str,
        body: dict[str, Any],
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self._send("POST", endpoint, json=body, headers=headers)
        return _json_or_empty(response)

    async def patch(self, endpoint: str, body: dict[str, Any]) -> None:
        await self._send("PATCH", endpoint, json=body)

    async def delete(self, endpoint: str) -> None:
        """DELETE a resource; a missing resource counts as deleted."""
        try:
            await self._send("DELETE", endpoint)
        except ResourceNotFound:
            logger.debug("Delete target already absent", extra={"endpoint": endpoint})

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _build_url(self, endpoint: str) -> str:
        if endpoint.lower().startswith("http"):
            return endpoint
        return f"/{self.api_version}{endpoint}"

    async def _send(
        self,
        method: str,
        endpoint: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if not self._token:
            raise AuthenticationFailure("Access token not set. Authenticate before calling the directory API.")

        url = self._build_url(endpoint)
        request_headers = {"Authorization": f"Bearer {self._token}"}
        if headers:
            request_headers.update(headers)

        logger.debug("Graph request", extra={"method": method, "url": url})
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        request = self._http.request(method, url, json=json, params=params, headers=request_headers)
        try:
            if self.cancel is None:
                response = await request
            else:
                response = await self.cancel.guard(request)
        except httpx.TransportError as e:
            logger.error("Network error", extra={"method": method, "url": url, "error": str(e)})
            raise DirectoryApiError(f"Network error during {method} {endpoint}: {e}", 0) from e

        if response.is_error:
            _raise_for_response(method, endpoint, response)
        return response


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    if not response.content or not response.content.strip():
        return {}
    data = response.json()
    return data if isinstance(data, dict) else {"value": data}


def parse_graph_error(response: httpx.Response) -> tuple[str | None, str]:
    """Extract (code, message) from a Graph error body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:500] or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return None, response.text[:500]
    return error.get("code"), error.get("message") or response.reason_phrase


def _raise_for_response(method: str, endpoint: str, response: httpx.Response) -> None:
    status = response.status_code
    code, message = parse_graph_error(response)

    log = logger.debug if status == 404 else logger.warning
    log(
        "Graph request failed",
        extra={"method": method, "endpoint": endpoint, "status_code": status, "error_code": code},
    )

    if status == 401:
        raise AuthenticationFailure(f"Directory API rejected the access token: {message}")
    if status == 403 and code == "Authorization_RequestDenied":
        raise InsufficientPermissions(
            f"Insufficient privileges for {method} {endpoint}: {message}",
            required_permissions=_permissions_for(endpoint),
        )
    if status == 404:
        raise ResourceNotFound("Resource", endpoint)
    raise DirectoryApiError(f"Graph API {method} failed: {message}", status, code)


def _permissions_for(endpoint: str) -> list[str]:
    """Best-guess application permission for a failed call."""
    path = endpoint.lower()
    if "agentidentity" in path:
        return ["Application.ReadWrite.All", "AgentIdentity.Create.OwnedBy"]
    if "oauth2permissiongrants" in path:
        return ["DelegatedPermissionGrant.ReadWrite.All"]
    if "/users" in path:
        return ["User.ReadWrite.All"]
    if "/subscriptions" in path:
        return ["Chat.Read.All"]
    if "/subscribedskus" in path or "assignlicense" in path:
        return ["Organization.Read.All", "User.ReadWrite.All"]
    return ["Application.ReadWrite.All"]
