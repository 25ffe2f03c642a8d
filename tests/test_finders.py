"""Tests for the idempotency lookups."""

from __future__ import annotations

import pytest
from graph_mock import MockDirectory, connected_graph

from provisioner.errors import DirectoryApiError
from provisioner.finders import (
    find_agent_identity,
    find_agent_user,
    find_assigned_license_skus,
    find_blueprint_app,
    find_permission_grant,
    find_service_principal_by_app_id,
    get_graph_service_principal_id,
    odata_literal,
)


class TestODataLiteral:
    def test_plain(self) -> None:
        assert odata_literal("Acme-Blueprint") == "'Acme-Blueprint'"

    def test_escapes_quotes(self) -> None:
        assert odata_literal("O'Brien's Agent") == "'O''Brien''s Agent'"


class TestBlueprintFinder:
    """Tests for find_blueprint_app."""

    @pytest.mark.asyncio
    async def test_absent(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            assert await find_blueprint_app(graph, "Acme-Blueprint") is None

    @pytest.mark.asyncio
    async def test_found_by_display_name(self, directory: MockDirectory) -> None:
        seeded = directory.add_application("Acme-Blueprint")
        directory.add_application("Other-Blueprint")

        async with connected_graph(directory) as graph:
            app = await find_blueprint_app(graph, "Acme-Blueprint")

        assert app is not None
        assert app.object_id == seeded["id"]
        assert app.app_id == seeded["appId"]
        assert directory.requests[0].params["$filter"] == "displayName eq 'Acme-Blueprint'"

    @pytest.mark.asyncio
    async def test_not_found_response_means_absent(self, directory: MockDirectory) -> None:
        directory.fail("GET", "/applications", 404, code="Request_ResourceNotFound")

        async with connected_graph(directory) as graph:
            assert await find_blueprint_app(graph, "Acme-Blueprint") is None

    @pytest.mark.asyncio
    async def test_other_failures_propagate(self, directory: MockDirectory) -> None:
        """Test that only failures classified as absent are swallowed."""
        directory.fail("GET", "/applications", 409, code="Conflict")

        async with connected_graph(directory) as graph:
            with pytest.raises(DirectoryApiError) as exc_info:
                await find_blueprint_app(graph, "Acme-Blueprint")

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_name_with_quote(self, directory: MockDirectory) -> None:
        directory.add_application("O'Brien Blueprint")

        async with connected_graph(directory) as graph:
            app = await find_blueprint_app(graph, "O'Brien Blueprint")

        assert app is not None
        assert app.display_name == "O'Brien Blueprint"


class TestServicePrincipalFinders:
    """Tests for service principal and agent identity lookups."""

    @pytest.mark.asyncio
    async def test_by_app_id(self, directory: MockDirectory) -> None:
        sp = directory.add_service_principal("app-123", "Acme-Blueprint")

        async with connected_graph(directory) as graph:
            found = await find_service_principal_by_app_id(graph, "app-123")

        assert found is not None
        assert found.object_id == sp["id"]

    @pytest.mark.asyncio
    async def test_agent_identity_ignores_plain_service_principals(
        self, directory: MockDirectory
    ) -> None:
        """Test that only ServiceIdentity principals count as agent identities."""
        directory.add_service_principal("app-1", "Acme-Identity", sp_type="Application")

        async with connected_graph(directory) as graph:
            assert await find_agent_identity(graph, "Acme-Identity") is None

            identity = directory.add_service_principal(None, "Acme-Identity", sp_type="ServiceIdentity")
            found = await find_agent_identity(graph, "Acme-Identity")

        assert found is not None
        assert found.object_id == identity["id"]
        assert found.is_agent_identity

    @pytest.mark.asyncio
    async def test_graph_service_principal(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            assert await get_graph_service_principal_id(graph) == "graph-sp-id"

    @pytest.mark.asyncio
    async def test_graph_service_principal_missing(self, directory: MockDirectory) -> None:
        directory.service_principals.clear()

        async with connected_graph(directory) as graph:
            with pytest.raises(DirectoryApiError) as exc_info:
                await get_graph_service_principal_id(graph)

        assert exc_info.value.status_code == 404


class TestUserFinders:
    """Tests for agent user and license lookups."""

    @pytest.mark.asyncio
    async def test_user_absent_is_none(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            assert await find_agent_user(graph, "agent@contoso.com") is None

    @pytest.mark.asyncio
    async def test_user_found_by_upn(self, directory: MockDirectory) -> None:
        user = directory.add_user("agent@contoso.com")

        async with connected_graph(directory) as graph:
            found = await find_agent_user(graph, "agent@contoso.com")

        assert found is not None
        assert found.object_id == user["id"]

    @pytest.mark.asyncio
    async def test_assigned_license_skus(self, directory: MockDirectory) -> None:
        user = directory.add_user("agent@contoso.com")
        user["assignedLicenses"].append({"skuId": "sku-e5"})

        async with connected_graph(directory) as graph:
            skus = await find_assigned_license_skus(graph, user["id"])

        assert skus == {"sku-e5"}
        assert directory.requests[0].version == "v1.0"


class TestPermissionGrantFinder:
    """Grants are identified by (client, resource, principal)."""

    @pytest.mark.asyncio
    async def test_matches_full_triple(self, directory: MockDirectory) -> None:
        grant = directory.add_grant("identity-1", "graph-sp-id", "user-1")

        async with connected_graph(directory) as graph:
            found = await find_permission_grant(graph, "identity-1", "graph-sp-id", "user-1")

        assert found is not None
        assert found.object_id == grant["id"]
        assert found.key == ("identity-1", "graph-sp-id", "user-1")

    @pytest.mark.asyncio
    async def test_other_principal_is_not_a_duplicate(self, directory: MockDirectory) -> None:
        directory.add_grant("identity-1", "graph-sp-id", "someone-else")

        async with connected_graph(directory) as graph:
            assert await find_permission_grant(graph, "identity-1", "graph-sp-id", "user-1") is None

    @pytest.mark.asyncio
    async def test_other_resource_is_not_a_duplicate(self, directory: MockDirectory) -> None:
        directory.add_grant("identity-1", "sharepoint-sp", "user-1")

        async with connected_graph(directory) as graph:
            assert await find_permission_grant(graph, "identity-1", "graph-sp-id", "user-1") is None

    @pytest.mark.asyncio
    async def test_principal_optional(self, directory: MockDirectory) -> None:
        directory.add_grant("identity-1", "graph-sp-id", "user-1")

        async with connected_graph(directory) as graph:
            assert await find_permission_grant(graph, "identity-1", "graph-sp-id") is not None

    @pytest.mark.asyncio
    async def test_lookup_uses_v1(self, directory: MockDirectory) -> None:
        async with connected_graph(directory) as graph:
            await find_permission_grant(graph, "identity-1", "graph-sp-id", "user-1")
            assert graph.api_version == "beta"

        assert directory.requests[0].version == "v1.0"
