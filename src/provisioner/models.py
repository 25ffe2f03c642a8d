"""Data models: settings file, result document and directory projections.

Pydantic models cover the two JSON documents the tool reads and writes
(the settings file and the result document). Directory records are kept as
small dataclass projections built from Graph responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field

# =============================================================================
# Settings file
# =============================================================================


class SetupConfig(BaseModel):
    """Settings file contents (camelCase keys on disk)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    tenant_id: str | None = Field(None, alias="tenantId")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    subscription_name: str | None = Field(None, alias="subscriptionName")
    blueprint_display_name: str | None = Field(None, alias="blueprintDisplayName")
    agent_identity_display_name: str | None = Field(None, alias="agentIdentityDisplayName")
    agent_user_upn: str | None = Field(None, alias="agentUserUpn")
    agent_user_display_name: str = Field("Agent User", alias="agentUserDisplayName")
    mgmt_client_id: str | None = Field(None, alias="mgmtClientId")
    mgmt_client_secret: str | None = Field(None, alias="mgmtClientSecret")
    client_app_id: str | None = Field(None, alias="clientAppId")
    foundry_resource_id: str | None = Field(None, alias="foundryResourceId")
    webhook_url: str | None = Field(None, alias="webhookUrl")

    def masked(self) -> dict[str, Any]:
        """Dump with the management secret hidden."""
        data = self.model_dump(by_alias=True)
        if data.get("mgmtClientSecret"):
            data["mgmtClientSecret"] = "********"
        return data


# =============================================================================
# Result document
# =============================================================================


class BlueprintOutput(BaseModel):
    model_config = {"populate_by_name": True}

    app_id: str | None = Field(None, alias="appId")
    object_id: str | None = Field(None, alias="objectId")
    service_principal_id: str | None = Field(None, alias="servicePrincipalId")
    client_secret: str | None = Field(None, alias="clientSecret")


class AgentIdentityOutput(BaseModel):
    model_config = {"populate_by_name": True}

    id: str | None = None


class AgentUserOutput(BaseModel):
    model_config = {"populate_by_name": True}

    id: str | None = None
    upn: str | None = None


class PermissionsOutput(BaseModel):
    model_config = {"populate_by_name": True}

    oauth2_grant_id: str | None = Field(None, alias="oauth2GrantId")
    subscription_id: str | None = Field(None, alias="subscriptionId")


class PhaseRecord(BaseModel):
    """Outcome of one phase as recorded in the result document."""

    name: Annotated[str, Field(min_length=1)]
    status: str
    detail: str | None = None


class SetupOutput(BaseModel):
    """Aggregate result document, appended to by every phase."""

    model_config = {"populate_by_name": True}

    tenant_id: str | None = Field(None, alias="tenantId")
    blueprint: BlueprintOutput = Field(default_factory=BlueprintOutput)
    agent_identity: AgentIdentityOutput = Field(
        default_factory=AgentIdentityOutput, alias="agentIdentity"
    )
    agent_user: AgentUserOutput = Field(default_factory=AgentUserOutput, alias="agentUser")
    permissions: PermissionsOutput = Field(default_factory=PermissionsOutput)
    phases: list[PhaseRecord] = Field(default_factory=list)
    completed: bool = False


# =============================================================================
# Directory projections
# =============================================================================


@dataclass(frozen=True)
class BlueprintApp:
    """Blueprint app registration."""

    object_id: str
    app_id: str
    display_name: str

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> BlueprintApp:
        return cls(
            object_id=data["id"],
            app_id=data.get("appId") or "",
            display_name=data.get("displayName") or "",
        )


@dataclass(frozen=True)
class ClientSecret:
    """Password credential; the text is only ever returned at creation."""

    secret_text: str
    key_id: str | None
    expires: datetime | None

    def __repr__(self) -> str:
        return f"ClientSecret(key_id={self.key_id!r}, expires={self.expires!r})"

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> ClientSecret:
        end = data.get("endDateTime")
        expires = datetime.fromisoformat(end.replace("Z", "+00:00")) if end else None
        return cls(secret_text=data.get("secretText") or "", key_id=data.get("keyId"), expires=expires)


@dataclass(frozen=True)
class ServicePrincipal:
    """Service principal, including agent identities."""

    object_id: str
    app_id: str | None
    display_name: str
    service_principal_type: str | None = None

    @property
    def is_agent_identity(self) -> bool:
        return self.service_principal_type == "ServiceIdentity"

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> ServicePrincipal:
        return cls(
            object_id=data["id"],
            app_id=data.get("appId"),
            display_name=data.get("displayName") or "",
            service_principal_type=data.get("servicePrincipalType"),
        )


@dataclass(frozen=True)
class AgentUser:
    """Directory user linked to an agent identity."""

    object_id: str
    user_principal_name: str
    display_name: str

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> AgentUser:
        return cls(
            object_id=data["id"],
            user_principal_name=data.get("userPrincipalName") or "",
            display_name=data.get("displayName") or "",
        )


@dataclass(frozen=True)
class PermissionGrant:
    """OAuth2 delegated permission grant."""

    object_id: str
    client_id: str
    resource_id: str
    principal_id: str | None
    scope: str

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.client_id, self.resource_id, self.principal_id)

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> PermissionGrant:
        return cls(
            object_id=data["id"],
            client_id=data.get("clientId") or "",
            resource_id=data.get("resourceId") or "",
            principal_id=data.get("principalId"),
            scope=data.get("scope") or "",
        )


@dataclass(frozen=True)
class SubscribedSku:
    """Tenant license SKU with unit counts."""

    sku_id: str
    sku_part_number: str
    enabled_units: int
    consumed_units: int

    @property
    def available_units(self) -> int:
        return self.enabled_units - self.consumed_units

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> SubscribedSku:
        prepaid = data.get("prepaidUnits") or {}
        return cls(
            sku_id=data.get("skuId") or "",
            sku_part_number=data.get("skuPartNumber") or "",
            enabled_units=int(prepaid.get("enabled") or 0),
            consumed_units=int(data.get("consumedUnits") or 0),
        )


@dataclass(frozen=True)
class GraphSubscription:
    """Change-notification subscription."""

    id: str
    resource: str
    expiration: str | None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> GraphSubscription:
        return cls(
            id=data["id"],
            resource=data.get("resource") or "",
            expiration=data.get("expirationDateTime"),
        )
