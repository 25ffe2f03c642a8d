"""Tests for the async Graph client."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest
from graph_mock import MockDirectory, connected_graph

from provisioner.errors import (
    AuthenticationFailure,
    DirectoryApiError,
    InsufficientPermissions,
    ResourceNotFound,
    SetupCancelled,
)
from provisioner.graph_client import GraphClient, parse_graph_error
from provisioner.retry import CancellationSignal


def _static(status: int, payload: dict | None = None) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status, json=payload or {}))


class TestErrorMapping:
    """Status codes map to typed errors."""

    @pytest.mark.asyncio
    async def test_401_is_authentication_failure(self) -> None:
        async with GraphClient(transport=_static(401)) as graph:
            graph.set_token("expired")
            with pytest.raises(AuthenticationFailure):
                await graph.get("/me")

    @pytest.mark.asyncio
    async def test_403_request_denied_lists_permissions(self) -> None:
        body = {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}
        async with GraphClient(transport=_static(403, body)) as graph:
            graph.set_token("token")
            with pytest.raises(InsufficientPermissions) as exc_info:
                await graph.post("/users", {"displayName": "x"})

        assert exc_info.value.required_permissions == ["User.ReadWrite.All"]

    @pytest.mark.asyncio
    async def test_other_403_is_directory_error(self) -> None:
        body = {"error": {"code": "Forbidden", "message": "Nope"}}
        async with GraphClient(transport=_static(403, body)) as graph:
            graph.set_token("token")
            with pytest.raises(DirectoryApiError) as exc_info:
                await graph.get("/applications")

        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "Forbidden"

    @pytest.mark.asyncio
    async def test_404_is_resource_not_found(self) -> None:
        async with GraphClient(transport=_static(404)) as graph:
            graph.set_token("token")
            with pytest.raises(ResourceNotFound):
                await graph.get("/users/missing@contoso.com")

    @pytest.mark.asyncio
    async def test_503_is_transient(self) -> None:
        body = {"error": {"code": "ServiceUnavailable", "message": "Try later"}}
        async with GraphClient(transport=_static(503, body)) as graph:
            graph.set_token("token")
            with pytest.raises(DirectoryApiError) as exc_info:
                await graph.get("/applications")

        assert exc_info.value.is_transient
        assert "Try later" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_transport_error_has_status_zero(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with GraphClient(transport=httpx.MockTransport(refuse)) as graph:
            graph.set_token("token")
            with pytest.raises(DirectoryApiError) as exc_info:
                await graph.get("/applications")

        assert exc_info.value.status_code == 0
        assert exc_info.value.is_transient

    @pytest.mark.asyncio
    async def test_delete_ignores_missing_resource(self) -> None:
        async with GraphClient(transport=_static(404)) as graph:
            graph.set_token("token")
            await graph.delete("/applications/gone")

    def test_parse_non_json_error(self) -> None:
        response = httpx.Response(502, text="Bad Gateway")
        code, message = parse_graph_error(response)
        assert code is None
        assert message == "Bad Gateway"


class TestTokenHandling:
    """Tests for token requirements and token scoping."""

    @pytest.mark.asyncio
    async def test_call_without_token_fails_before_network(self, directory: MockDirectory) -> None:
        async with connected_graph(directory, token=None) as graph:
            with pytest.raises(AuthenticationFailure):
                await graph.get("/me")

        assert directory.requests == []

    @pytest.mark.asyncio
    async def test_with_token_leaves_ambient_token_untouched(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            as_blueprint = graph.with_token("blueprint-token")
            await as_blueprint.get("/me")
            await graph.get("/me")

        assert [r.token for r in directory.requests] == ["blueprint-token", "mgmt-token"]


class TestApiVersion:
    """Tests for the scoped API version switch."""

    @pytest.mark.asyncio
    async def test_default_version_is_beta(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            await graph.get("/me")

        assert directory.requests[0].version == "beta"

    @pytest.mark.asyncio
    async def test_version_restored_after_block(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            with graph.use_api_version("v1.0"):
                await graph.list("/subscribedSkus")
            await graph.get("/me")

        assert [r.version for r in directory.requests] == ["v1.0", "beta"]

    @pytest.mark.asyncio
    async def test_version_restored_after_exception(self, directory: MockDirectory) -> None:
        """Test that a failed call inside the block does not leak the version."""
        directory.fail("POST", "/oauth2PermissionGrants", 500, code="InternalServerError")

        async with connected_graph(directory) as graph:
            with pytest.raises(DirectoryApiError):
                with graph.use_api_version("v1.0"):
                    await graph.post("/oauth2PermissionGrants", {"clientId": "x"})

            assert graph.api_version == "beta"


class TestPaging:
    """Tests for list() following @odata.nextLink."""

    @pytest.mark.asyncio
    async def test_follows_next_link(self) -> None:
        pages = {
            "/beta/applications": {
                "value": [{"id": "1"}],
                "@odata.nextLink": "https://graph.microsoft.com/beta/applications?$skiptoken=2",
            },
        }

        def handler(request: httpx.Request) -> httpx.Response:
            if "skiptoken" in str(request.url):
                return httpx.Response(200, json={"value": [{"id": "2"}]})
            return httpx.Response(200, json=pages[request.url.path])

        async with GraphClient(transport=httpx.MockTransport(handler)) as graph:
            graph.set_token("token")
            items = await graph.list("/applications")

        assert [item["id"] for item in items] == ["1", "2"]


def _slow(seconds: float) -> httpx.MockTransport:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(seconds)
        return httpx.Response(200, json={"id": "late"})

    return httpx.MockTransport(handler)


class TestCancellation:
    """In-flight requests stop when the run is cancelled."""

    @pytest.mark.asyncio
    async def test_in_flight_request_abandoned(self) -> None:
        cancel = CancellationSignal()

        async def abort_soon() -> None:
            await asyncio.sleep(0.1)
            cancel.cancel()

        started = time.monotonic()
        async with GraphClient(transport=_slow(5), cancel=cancel) as graph:
            graph.set_token("token")
            with pytest.raises(SetupCancelled):
                await asyncio.gather(graph.post("/users", {"displayName": "x"}), abort_soon())

        assert time.monotonic() - started < 1.5

    @pytest.mark.asyncio
    async def test_no_request_after_cancellation(self, directory: MockDirectory) -> None:
        cancel = CancellationSignal()
        cancel.cancel()
        graph = connected_graph(directory)
        graph.cancel = cancel

        async with graph:
            with pytest.raises(SetupCancelled):
                await graph.get("/me")

        assert directory.requests == []

    @pytest.mark.asyncio
    async def test_scoped_token_client_shares_signal(self) -> None:
        cancel = CancellationSignal()
        async with GraphClient(transport=_static(200), cancel=cancel) as graph:
            assert graph.with_token("other").cancel is cancel
