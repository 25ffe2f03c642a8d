"""Idempotency lookups: "does this resource already exist?".

Every list-based lookup is one ListFinder: a collection endpoint, an OData
filter and a match predicate over the returned items. The first item that
satisfies the predicate is projected into a model; no match means absent.
A failure the error classifier marks ABSENT also means absent.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar
from urllib.parse import quote

from .config import GRAPH_APP_ID
from .errors import DirectoryApiError, SetupError, is_absent
from .graph_client import GraphClient
from .models import AgentUser, BlueprintApp, PermissionGrant, ServicePrincipal

logger = logging.getLogger(__name__)

R = TypeVar("R")

Match = Callable[[dict[str, Any]], bool]


def _any(_: dict[str, Any]) -> bool:
    return True


def odata_literal(value: str) -> str:
    """Quote a string for an OData $filter expression."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class ListFinder(Generic[R]):
    """Find-first over a filtered directory collection."""

    resource_type: str
    endpoint: str
    filter_field: str
    project: Callable[[dict[str, Any]], R]
    match: Match = _any

    async def find(self, graph: GraphClient, key: str, match: Match | None = None) -> R | None:
        """Return the first item whose ``filter_field`` equals ``key`` and matches.

        Args:
            graph: Directory client.
            key: Value compared against ``filter_field`` server-side.
            match: Extra predicate applied after this finder's own predicate.
        """
        params = {"$filter": f"{self.filter_field} eq {odata_literal(key)}"}
        try:
            items = await graph.list(self.endpoint, params=params)
        except SetupError as e:
            if not is_absent(e):
                raise
            return None

        for item in items:
            if self.match(item) and (match is None or match(item)):
                logger.debug(
                    "Found existing resource",
                    extra={"resource_type": self.resource_type, "key": key, "id": item.get("id")},
                )
                return self.project(item)
        return None


def _is_service_identity(item: dict[str, Any]) -> bool:
    # servicePrincipalType cannot be filtered server-side
    return item.get("servicePrincipalType") == "ServiceIdentity"


BLUEPRINT_FINDER: ListFinder[BlueprintApp] = ListFinder(
    resource_type="Blueprint",
    endpoint="/applications",
    filter_field="displayName",
    project=BlueprintApp.from_graph,
)

SERVICE_PRINCIPAL_FINDER: ListFinder[ServicePrincipal] = ListFinder(
    resource_type="ServicePrincipal",
    endpoint="/servicePrincipals",
    filter_field="appId",
    project=ServicePrincipal.from_graph,
)

AGENT_IDENTITY_FINDER: ListFinder[ServicePrincipal] = ListFinder(
    resource_type="AgentIdentity",
    endpoint="/servicePrincipals",
    filter_field="displayName",
    project=ServicePrincipal.from_graph,
    match=_is_service_identity,
)

PERMISSION_GRANT_FINDER: ListFinder[PermissionGrant] = ListFinder(
    resource_type="PermissionGrant",
    endpoint="/oauth2PermissionGrants",
    filter_field="clientId",
    project=PermissionGrant.from_graph,
)


async def find_blueprint_app(graph: GraphClient, display_name: str) -> BlueprintApp | None:
    return await BLUEPRINT_FINDER.find(graph, display_name)


async def find_service_principal_by_app_id(graph: GraphClient, app_id: str) -> ServicePrincipal | None:
    return await SERVICE_PRINCIPAL_FINDER.find(graph, app_id)


async def find_agent_identity(graph: GraphClient, display_name: str) -> ServicePrincipal | None:
    return await AGENT_IDENTITY_FINDER.find(graph, display_name)


async def find_agent_user(graph: GraphClient, upn: str) -> AgentUser | None:
    """Users are addressable by UPN, so this is a direct GET, not a list query."""
    try:
        data = await graph.get(f"/users/{quote(upn, safe='@')}")
    except SetupError as e:
        if not is_absent(e):
            raise
        return None
    if not data.get("id"):
        return None
    return AgentUser.from_graph(data)


async def find_assigned_license_skus(graph: GraphClient, user_id: str) -> set[str]:
    """SKU ids already assigned to a user."""
    with graph.use_api_version("v1.0"):
        try:
            data = await graph.get(f"/users/{user_id}", params={"$select": "assignedLicenses"})
        except SetupError as e:
            if not is_absent(e):
                raise
            return set()
    return {lic["skuId"] for lic in data.get("assignedLicenses", []) if lic.get("skuId")}


async def find_permission_grant(
    graph: GraphClient,
    client_id: str,
    resource_id: str,
    principal_id: str | None = None,
) -> PermissionGrant | None:
    """Find the grant for (client, resource, principal).

    The resource id must match. The principal id is only compared when one
    is given; a grant for the same client and resource but a different
    principal is not a duplicate.
    """

    def same_triple(item: dict[str, Any]) -> bool:
        if item.get("resourceId") != resource_id:
            return False
        return principal_id is None or item.get("principalId") == principal_id

    with graph.use_api_version("v1.0"):
        return await PERMISSION_GRANT_FINDER.find(graph, client_id, match=same_triple)


async def get_graph_service_principal_id(graph: GraphClient) -> str:
    """Object id of Microsoft Graph's own service principal in the tenant."""
    sp = await find_service_principal_by_app_id(graph, GRAPH_APP_ID)
    if sp is None:
        raise DirectoryApiError(
            "Microsoft Graph service principal not found in tenant",
            404,
            "Request_ResourceNotFound",
        )
    return sp.object_id
