"""Resource creation against the directory API.

A creator's own response is authoritative for the identifiers it returns.
Finders are never consulted to decide whether a create succeeded, except
for the blueprint, whose create response sometimes echoes the object id in
place of the appId.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from .azure_cli import AzureCli
from .config import (
    GRAPH_BASE_URL,
    SECRET_DISPLAY_NAME_PREFIX,
    SECRET_VALIDITY_DAYS,
    WEBHOOK_CHANGE_TYPE,
    WEBHOOK_CLIENT_STATE,
    WEBHOOK_EXPIRY_MINUTES,
    WEBHOOK_RESOURCE,
)
from .errors import (
    DirectoryApiError,
    InsufficientPermissions,
    ResourceNotFound,
    SetupError,
)
from .finders import find_blueprint_app
from .graph_client import GraphClient
from .models import (
    AgentUser,
    BlueprintApp,
    ClientSecret,
    GraphSubscription,
    PermissionGrant,
    ServicePrincipal,
    SubscribedSku,
)
from .retry import CancellationSignal

logger = logging.getLogger(__name__)

AGENT_IDENTITY_URL = f"{GRAPH_BASE_URL}/beta/serviceprincipals/Microsoft.Graph.AgentIdentity"
AGENT_IDENTITY_PERMISSIONS = ("Application.ReadWrite.All", "AgentIdentity.Create.OwnedBy")

BLUEPRINT_HEADERS = {"OData-Version": "4.0", "ConsistencyLevel": "eventual"}

# Pause before re-reading a blueprint whose create response lacked an appId
BLUEPRINT_REREAD_DELAY_SECONDS = 2.0


def sponsor_bind(user_id: str) -> list[str]:
    return [f"{GRAPH_BASE_URL}/v1.0/users/{user_id}"]


async def resolve_sponsor_id(graph: GraphClient, azure_cli: AzureCli | None = None) -> str | None:
    """Object id of the human sponsoring the blueprint and identity.

    /me only works with delegated tokens; app-only runs fall back to the
    account signed in to the Azure CLI.
    """
    try:
        me = await graph.get("/me")
    except SetupError as e:
        logger.debug("Could not resolve current user via /me", extra={"error": str(e)})
        me = {}
    if me.get("id"):
        logger.info("Resolved sponsor from /me", extra={"sponsor_id": me["id"]})
        return me["id"]

    if azure_cli is not None and azure_cli.is_available():
        user_id = await azure_cli.signed_in_user_id()
        if user_id:
            logger.info("Resolved sponsor from Azure CLI", extra={"sponsor_id": user_id})
            return user_id

    logger.warning("No sponsor user found; blueprint and identity creation may fail")
    return None


# =============================================================================
# Blueprint
# =============================================================================


async def create_blueprint_app(
    graph: GraphClient,
    display_name: str,
    sponsor_id: str | None = None,
    *,
    cancel: CancellationSignal | None = None,
    reread_delay_seconds: float = BLUEPRINT_REREAD_DELAY_SECONDS,
) -> BlueprintApp:
    """Create the blueprint app registration and set its identifier URI."""
    body: dict[str, Any] = {
        "@odata.type": "Microsoft.Graph.AgentIdentityBlueprint",
        "displayName": display_name,
        "signInAudience": "AzureADMultipleOrgs",
    }
    if sponsor_id:
        body["sponsors@odata.bind"] = sponsor_bind(sponsor_id)

    data = await graph.post("/applications", body, headers=BLUEPRINT_HEADERS)
    if not data.get("id"):
        raise DirectoryApiError("Blueprint creation returned no object id", 500)
    app = BlueprintApp.from_graph({**data, "displayName": display_name})

    if not app.app_id or app.app_id == app.object_id:
        logger.debug("Create response lacked a distinct appId, re-reading blueprint")
        await (cancel or CancellationSignal()).wait(reread_delay_seconds)
        fetched = await find_blueprint_app(graph, display_name)
        if fetched is not None and fetched.app_id:
            app = fetched

    logger.info(
        "Blueprint application created",
        extra={"app_id": app.app_id, "object_id": app.object_id},
    )

    try:
        await graph.patch(
            f"/applications/{app.object_id}",
            {"identifierUris": [f"api://{app.app_id}"]},
        )
    except (DirectoryApiError, ResourceNotFound) as e:
        logger.warning("Failed to set identifier URI", extra={"app_id": app.app_id, "error": str(e)})

    return app


async def create_service_principal(graph: GraphClient, app_id: str) -> ServicePrincipal:
    data = await graph.post("/servicePrincipals", {"appId": app_id})
    sp = ServicePrincipal.from_graph(data)
    logger.info("Service principal created", extra={"app_id": app_id, "object_id": sp.object_id})
    return sp


async def create_client_secret(
    graph: GraphClient,
    app_object_id: str,
    now: datetime | None = None,
) -> ClientSecret:
    """Mint a one-year password credential. The text is only returned here."""
    now = now or datetime.now(UTC)
    body = {
        "passwordCredential": {
            "displayName": f"{SECRET_DISPLAY_NAME_PREFIX}-{now:%Y%m%d}",
            "endDateTime": (now + timedelta(days=SECRET_VALIDITY_DAYS))
            .isoformat()
            .replace("+00:00", "Z"),
        }
    }
    data = await graph.post(f"/applications/{app_object_id}/addPassword", body)
    secret = ClientSecret.from_graph(data)
    if not secret.secret_text:
        raise DirectoryApiError("addPassword returned no secret text", 500)
    logger.info("Client secret created", extra={"key_id": secret.key_id})
    return secret


# =============================================================================
# Agent identity
# =============================================================================


async def create_agent_identity(
    graph: GraphClient,
    blueprint_token: str,
    display_name: str,
    blueprint_app_id: str,
    sponsor_id: str | None = None,
) -> ServicePrincipal:
    """Create the agent identity, authenticated as the blueprint.

    Args:
        graph: Shared client; only its connection pool is reused.
        blueprint_token: Token minted from the blueprint's own credentials.
        display_name: Agent identity display name.
        blueprint_app_id: The blueprint's appId (sent as ``agentAppId``).
        sponsor_id: Sponsor user object id. When the request is rejected with
            400 it is retried once without the sponsor.

    Raises:
        InsufficientPermissions: If the blueprint may not create identities.
        DirectoryApiError: For any other rejection.
    """
    as_blueprint = graph.with_token(blueprint_token)
    body: dict[str, Any] = {"displayName": display_name, "agentAppId": blueprint_app_id}
    if sponsor_id:
        body["sponsors@odata.bind"] = sponsor_bind(sponsor_id)

    try:
        try:
            data = await as_blueprint.post(AGENT_IDENTITY_URL, body)
        except DirectoryApiError as e:
            if e.status_code != 400 or not sponsor_id:
                raise
            logger.warning("Agent identity creation with sponsor failed, retrying without sponsor")
            body.pop("sponsors@odata.bind")
            data = await as_blueprint.post(AGENT_IDENTITY_URL, body)
    except InsufficientPermissions as e:
        raise InsufficientPermissions(
            f"Blueprint is not allowed to create agent identities: {e.message}",
            required_permissions=AGENT_IDENTITY_PERMISSIONS,
        ) from e
    except DirectoryApiError as e:
        if "not a compatible application type" in e.message.lower():
            e.suggestions.extend(
                [
                    "The blueprint was not created as an Agent Identity Blueprint",
                    "Delete it and re-run setup so it is created with "
                    "@odata.type Microsoft.Graph.AgentIdentityBlueprint",
                ]
            )
        raise

    identity = ServicePrincipal.from_graph(
        {"servicePrincipalType": "ServiceIdentity", "displayName": display_name, **data}
    )
    logger.info("Agent identity created", extra={"identity_id": identity.object_id})
    return identity


# =============================================================================
# Agent user
# =============================================================================


async def create_agent_user(
    graph: GraphClient,
    upn: str,
    display_name: str,
    agent_identity_id: str,
    usage_location: str = "US",
) -> AgentUser:
    body = {
        "@odata.type": "microsoft.graph.agentUser",
        "accountEnabled": True,
        "displayName": display_name,
        "mailNickname": upn.split("@", 1)[0],
        "userPrincipalName": upn,
        # Required before a license can be assigned
        "usageLocation": usage_location,
        "identityParent": {"id": agent_identity_id},
    }
    data = await graph.post("/users", body)
    user = AgentUser.from_graph({"userPrincipalName": upn, "displayName": display_name, **data})
    logger.info("Agent user created", extra={"user_id": user.object_id, "upn": upn})
    return user


# =============================================================================
# Permission grant
# =============================================================================


async def create_permission_grant(
    graph: GraphClient,
    client_id: str,
    resource_id: str,
    principal_id: str,
    scope: str,
) -> PermissionGrant:
    body = {
        "clientId": client_id,
        "consentType": "Principal",
        "principalId": principal_id,
        "resourceId": resource_id,
        "scope": scope,
    }
    with graph.use_api_version("v1.0"):
        data = await graph.post("/oauth2PermissionGrants", body)
    grant = PermissionGrant.from_graph({**body, **data})
    logger.info("Permission grant created", extra={"grant_id": grant.object_id})
    return grant


# =============================================================================
# Licenses
# =============================================================================


async def list_subscribed_skus(graph: GraphClient) -> list[SubscribedSku]:
    with graph.use_api_version("v1.0"):
        items = await graph.list("/subscribedSkus")
    return [SubscribedSku.from_graph(item) for item in items]


async def assign_licenses(graph: GraphClient, user_id: str, sku_ids: list[str]) -> None:
    if not sku_ids:
        raise ValueError("No licenses to assign")
    body = {"addLicenses": [{"skuId": sku_id} for sku_id in sku_ids], "removeLicenses": []}
    with graph.use_api_version("v1.0"):
        await graph.post(f"/users/{user_id}/assignLicense", body)
    logger.info("Licenses assigned", extra={"user_id": user_id, "sku_ids": sku_ids})


# =============================================================================
# Webhook subscription
# =============================================================================


async def create_webhook_subscription(
    graph: GraphClient,
    webhook_url: str,
    *,
    resource: str = WEBHOOK_RESOURCE,
    change_type: str = WEBHOOK_CHANGE_TYPE,
    client_state: str = WEBHOOK_CLIENT_STATE,
    now: datetime | None = None,
) -> GraphSubscription:
    now = now or datetime.now(UTC)
    expiry = now + timedelta(minutes=WEBHOOK_EXPIRY_MINUTES)
    body = {
        "changeType": change_type,
        "notificationUrl": webhook_url,
        "resource": resource,
        "expirationDateTime": expiry.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
        "clientState": client_state,
    }
    with graph.use_api_version("v1.0"):
        data = await graph.post("/subscriptions", body)
    subscription = GraphSubscription.from_graph({"resource": resource, **data})
    logger.info("Webhook subscription created", extra={"subscription_id": subscription.id})
    return subscription
