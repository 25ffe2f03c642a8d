"""Multi-phase provisioning orchestrator.

Phases run strictly in order, each consuming the identifiers produced by
the ones before it:

    Auth -> Blueprint -> AgentIdentity -> AgentUser -> PermissionGrant
         -> License -> RoleAssignment (optional) -> Webhook (optional)

Every resource phase is find-or-create: an existing resource is reported
and reused, so a rerun after a partial failure picks up where it stopped
by re-discovering what is already in the directory. There are no local
checkpoints.

Propagation handling is deliberately two-fold:
- a freshly created blueprint is *polled* until reads can see it
- secrets, identities and users get a *fixed* wait after creation, because
  they become visible before they become usable and nothing can be
  polled to detect the latter

The result document is flushed after every phase and on every exit path.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from . import creators, finders
from .auth import TokenProvider, acquire_blueprint_token
from .azure_cli import AzureCli
from .config import FOUNDRY_ROLES, PropagationPolicy, SetupSettings
from .errors import (
    BlueprintSecretUnavailable,
    PropagationTimeout,
    SetupCancelled,
    SetupError,
    is_propagation_race,
    is_transient,
)
from .events import EventSink
from .graph_client import GraphClient
from .models import AgentUser, BlueprintApp, ClientSecret, PermissionGrant, ServicePrincipal, SetupOutput
from .output import OutputRecorder
from .retry import CancellationSignal, poll_until, propagation_wait, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

BlueprintTokenFactory = Callable[[str, str, str], Awaitable[str]]


class Phase(str, Enum):
    """Fixed provisioning phases, in execution order."""

    AUTH = "auth"
    BLUEPRINT = "blueprint"
    AGENT_IDENTITY = "agentIdentity"
    AGENT_USER = "agentUser"
    PERMISSION_GRANT = "permissionGrant"
    LICENSE = "license"
    ROLE_ASSIGNMENT = "roleAssignment"
    WEBHOOK = "webhook"


PHASE_TITLES = {
    Phase.AUTH: "Authentication",
    Phase.BLUEPRINT: "Phase 1: Blueprint Application",
    Phase.AGENT_IDENTITY: "Phase 2: Agent Identity",
    Phase.AGENT_USER: "Phase 3: Agent User",
    Phase.PERMISSION_GRANT: "Phase 4: OAuth2 Permission Grant",
    Phase.LICENSE: "Phase 5: License Assignment",
    Phase.ROLE_ASSIGNMENT: "Phase 6: Foundry Role Assignment",
    Phase.WEBHOOK: "Phase 7: Webhook Subscription",
}


class PhaseStatus(str, Enum):
    """Outcome recorded for a phase in the result document."""

    COMPLETED = "completed"
    CREATED = "created"
    EXISTING = "existing"
    SKIPPED = "skipped"
    WARNING = "warning"
    FAILED = "failed"


@dataclass(frozen=True)
class Ensured(Generic[T]):
    """A found-or-created resource."""

    resource: T
    created: bool

    @property
    def status(self) -> PhaseStatus:
        return PhaseStatus.CREATED if self.created else PhaseStatus.EXISTING


@dataclass
class BlueprintResult:
    """Everything the Blueprint phase produces."""

    app: BlueprintApp
    app_created: bool
    service_principal: ServicePrincipal | None = None
    secret: ClientSecret | None = None
    secret_error: str | None = None

    @property
    def status(self) -> PhaseStatus:
        if self.secret_error:
            return PhaseStatus.WARNING
        return PhaseStatus.CREATED if self.app_created else PhaseStatus.EXISTING


class Provisioner:
    """Find-or-create operations for each resource kind.

    Each ``ensure_*`` method is one phase's logic without output recording,
    so the standalone CLI commands can run a single phase.
    """

    def __init__(
        self,
        graph: GraphClient,
        *,
        tenant_id: str,
        policy: PropagationPolicy | None = None,
        events: EventSink | None = None,
        cancel: CancellationSignal | None = None,
        azure_cli: AzureCli | None = None,
        blueprint_token_factory: BlueprintTokenFactory = acquire_blueprint_token,
    ) -> None:
        self.graph = graph
        self.tenant_id = tenant_id
        self.policy = policy or PropagationPolicy()
        self.events = events or EventSink()
        self.cancel = cancel or CancellationSignal()
        # Remote calls abort on the same signal as waits
        graph.cancel = self.cancel
        self.azure_cli = azure_cli
        self._blueprint_token_factory = blueprint_token_factory
        self._sponsor_id: str | None = None
        self._sponsor_resolved = False

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _lookup(self, name: str, lookup: Callable[[], Awaitable[T]]) -> T:
        """Run a finder, retrying what classify_error() marks RETRY."""
        self.cancel.raise_if_cancelled()
        return await retry_with_backoff(
            lookup,
            operation_name=name,
            max_attempts=self.policy.retry_attempts,
            delay_seconds=self.policy.retry_delay_seconds,
            cancel=self.cancel,
            retry_on=is_transient,
            events=self.events,
        )

    async def _create(
        self,
        name: str,
        create: Callable[[], Awaitable[T]],
        retry_on: Callable[[BaseException], bool] = is_transient,
    ) -> T:
        self.cancel.raise_if_cancelled()
        return await retry_with_backoff(
            create,
            operation_name=name,
            max_attempts=self.policy.retry_attempts,
            delay_seconds=self.policy.retry_delay_seconds,
            cancel=self.cancel,
            retry_on=retry_on,
            events=self.events,
        )

    async def sponsor_id(self) -> str | None:
        if not self._sponsor_resolved:
            self._sponsor_id = await creators.resolve_sponsor_id(self.graph, self.azure_cli)
            self._sponsor_resolved = True
        return self._sponsor_id

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def authenticate(self, token_provider: TokenProvider) -> None:
        self.cancel.raise_if_cancelled()
        self.events.step("Acquiring access token")
        token = await token_provider.get_token()
        self.graph.set_token(token)
        self.events.success("Authenticated to Microsoft Graph")

    async def ensure_blueprint(self, display_name: str, *, create_secret: bool = True) -> BlueprintResult:
        """Blueprint app, its service principal and a fresh client secret.

        A failed secret is reported as a warning here and left for the
        Agent Identity phase to reject.
        """
        events = self.events
        events.step(f"Checking for existing Blueprint '{display_name}'")
        app = await self._lookup(
            "Blueprint lookup", lambda: finders.find_blueprint_app(self.graph, display_name)
        )

        app_created = False
        if app is not None:
            events.success(
                f"Blueprint already exists: {app.display_name}",
                app_id=app.app_id,
                object_id=app.object_id,
            )
        else:
            sponsor = await self.sponsor_id()
            events.step(f"Creating Blueprint '{display_name}'")
            self.cancel.raise_if_cancelled()
            app = await creators.create_blueprint_app(
                self.graph, display_name, sponsor, cancel=self.cancel
            )
            app_created = True
            events.success("Blueprint created", app_id=app.app_id, object_id=app.object_id)

            events.step("Waiting for Blueprint to become visible")
            visible = await poll_until(
                lambda: finders.find_blueprint_app(self.graph, display_name),
                lambda found: found is not None,
                max_attempts=self.policy.poll_attempts,
                delay_seconds=self.policy.poll_delay_seconds,
                cancel=self.cancel,
                description="Blueprint application",
                events=events,
            )
            if visible is None:
                raise PropagationTimeout("Blueprint application", self.policy.poll_attempts)

        result = BlueprintResult(app=app, app_created=app_created)

        events.step("Checking for Blueprint service principal")
        sp = await self._lookup(
            "Service principal lookup",
            lambda: finders.find_service_principal_by_app_id(self.graph, app.app_id),
        )
        if sp is not None:
            events.success("Service principal already exists", service_principal_id=sp.object_id)
        else:
            sp = await self._create(
                "Service principal creation",
                lambda: creators.create_service_principal(self.graph, app.app_id),
                retry_on=is_propagation_race,
            )
            events.success("Service principal created", service_principal_id=sp.object_id)
        result.service_principal = sp

        if create_secret:
            events.step("Creating client secret")
            try:
                result.secret = await self._create(
                    "Client secret creation",
                    lambda: creators.create_client_secret(self.graph, app.object_id),
                    retry_on=is_propagation_race,
                )
            except SetupCancelled:
                raise
            except SetupError as e:
                result.secret_error = e.message
                events.warning(f"Could not create client secret: {e.message}")
            else:
                events.success("Client secret created (shown once in the summary)")
                await propagation_wait(
                    "client secret",
                    self.policy.secret_wait_seconds,
                    cancel=self.cancel,
                    events=events,
                )

        return result

    async def ensure_agent_identity(
        self,
        display_name: str,
        blueprint_app_id: str,
        blueprint_secret: str | None,
    ) -> Ensured[ServicePrincipal]:
        """Agent identity, created as the blueprint.

        Raises:
            BlueprintSecretUnavailable: Before any lookup or token exchange,
                when no secret was minted in this run.
        """
        if not blueprint_secret:
            raise BlueprintSecretUnavailable()

        events = self.events
        events.step(f"Checking for existing Agent Identity '{display_name}'")
        existing = await self._lookup(
            "Agent identity lookup", lambda: finders.find_agent_identity(self.graph, display_name)
        )
        if existing is not None:
            events.success("Agent Identity already exists", identity_id=existing.object_id)
            return Ensured(existing, created=False)

        events.step("Authenticating as the Blueprint")
        self.cancel.raise_if_cancelled()
        blueprint_token = await self._blueprint_token_factory(
            self.tenant_id, blueprint_app_id, blueprint_secret
        )
        sponsor = await self.sponsor_id()

        events.step(f"Creating Agent Identity '{display_name}'")
        identity = await self._create(
            "Agent identity creation",
            lambda: creators.create_agent_identity(
                self.graph, blueprint_token, display_name, blueprint_app_id, sponsor
            ),
        )
        events.success("Agent Identity created", identity_id=identity.object_id)
        await propagation_wait(
            "Agent Identity",
            self.policy.identity_wait_seconds,
            cancel=self.cancel,
            events=events,
        )
        return Ensured(identity, created=True)

    async def ensure_agent_user(
        self,
        upn: str,
        display_name: str,
        agent_identity_id: str,
    ) -> Ensured[AgentUser]:
        events = self.events
        events.step(f"Checking for existing Agent User '{upn}'")
        existing = await self._lookup(
            "Agent user lookup", lambda: finders.find_agent_user(self.graph, upn)
        )
        if existing is not None:
            events.success("Agent User already exists", user_id=existing.object_id)
            return Ensured(existing, created=False)

        events.step(f"Creating Agent User '{upn}'")
        user = await self._create(
            "Agent user creation",
            lambda: creators.create_agent_user(self.graph, upn, display_name, agent_identity_id),
        )
        events.success("Agent User created", user_id=user.object_id)
        await propagation_wait(
            "Agent User",
            self.policy.user_wait_seconds,
            cancel=self.cancel,
            events=events,
        )
        return Ensured(user, created=True)

    async def ensure_permission_grant(
        self,
        client_id: str,
        principal_id: str,
        scope: str,
    ) -> Ensured[PermissionGrant]:
        """Delegated grant for (agent identity, Graph, agent user)."""
        events = self.events
        events.step("Resolving Microsoft Graph service principal")
        resource_id = await self._lookup(
            "Graph service principal lookup",
            lambda: finders.get_graph_service_principal_id(self.graph),
        )

        existing = await self._lookup(
            "Permission grant lookup",
            lambda: finders.find_permission_grant(self.graph, client_id, resource_id, principal_id),
        )
        if existing is not None:
            events.success("Permission grant already exists", grant_id=existing.object_id)
            return Ensured(existing, created=False)

        events.step("Creating OAuth2 permission grant", scope=scope)
        grant = await self._create(
            "Permission grant creation",
            lambda: creators.create_permission_grant(
                self.graph, client_id, resource_id, principal_id, scope
            ),
        )
        events.success("Permission grant created", grant_id=grant.object_id)
        return Ensured(grant, created=True)

    async def assign_licenses(self, user_id: str, sku_ids: tuple[str, ...]) -> tuple[PhaseStatus, str]:
        """Assign the first configured SKUs with free units. Never fatal."""
        events = self.events
        try:
            assigned = await self._lookup(
                "Assigned license lookup",
                lambda: finders.find_assigned_license_skus(self.graph, user_id),
            )
            if assigned.intersection(sku_ids):
                events.success("License already assigned")
                return PhaseStatus.EXISTING, "License already assigned"

            skus = await self._lookup(
                "License lookup", lambda: creators.list_subscribed_skus(self.graph)
            )
            available = [s for s in skus if s.sku_id in sku_ids and s.available_units > 0]
            if not available:
                message = "No available licenses for the configured SKUs; assign one manually"
                events.warning(message)
                return PhaseStatus.WARNING, message

            chosen = available[0]
            events.step(f"Assigning license {chosen.sku_part_number or chosen.sku_id}")
            self.cancel.raise_if_cancelled()
            await creators.assign_licenses(self.graph, user_id, [chosen.sku_id])
        except SetupCancelled:
            raise
        except SetupError as e:
            message = f"License assignment failed: {e.message}"
            events.warning(message)
            return PhaseStatus.WARNING, message

        events.success(f"License assigned: {chosen.sku_part_number or chosen.sku_id}")
        return PhaseStatus.CREATED, chosen.sku_id

    async def assign_foundry_roles(self, assignee_id: str, scope: str) -> tuple[PhaseStatus, str]:
        """Assign the Foundry roles through the Azure CLI. Never fatal."""
        events = self.events
        azure_cli = self.azure_cli
        if azure_cli is None or not azure_cli.is_available():
            message = "Azure CLI not found; assign Foundry roles manually"
            events.warning(message)
            return PhaseStatus.WARNING, message

        failed: list[str] = []
        for role in FOUNDRY_ROLES:
            self.cancel.raise_if_cancelled()
            if await azure_cli.assign_role(assignee_id, role, scope):
                events.success(f"Role assigned: {role}")
            else:
                failed.append(role)
                events.warning(f"Role assignment failed: {role}")

        if failed:
            return PhaseStatus.WARNING, f"Failed roles: {', '.join(failed)}"
        return PhaseStatus.CREATED, f"{len(FOUNDRY_ROLES)} roles assigned"

    async def create_webhook(self, webhook_url: str) -> str | None:
        """Create the chat message subscription; None when it failed."""
        events = self.events
        events.step("Creating Graph subscription for chat messages")
        try:
            self.cancel.raise_if_cancelled()
            subscription = await creators.create_webhook_subscription(self.graph, webhook_url)
        except SetupCancelled:
            raise
        except SetupError as e:
            events.warning(f"Webhook subscription failed: {e.message}")
            return None
        events.success("Webhook subscription created", subscription_id=subscription.id)
        return subscription.id


class SetupOrchestrator:
    """Runs the full phase sequence and records the result document."""

    def __init__(
        self,
        settings: SetupSettings,
        provisioner: Provisioner,
        recorder: OutputRecorder | None = None,
    ) -> None:
        self.settings = settings
        self.provisioner = provisioner
        self.events = provisioner.events
        self.recorder = recorder or OutputRecorder(settings.output_path, tenant_id=settings.tenant_id)
        self._current: Phase | None = None

    @property
    def output(self) -> SetupOutput:
        return self.recorder.output

    async def run(self, token_provider: TokenProvider) -> SetupOutput:
        """Run every phase in order.

        Raises:
            SetupError: The first fatal failure. The partial result document
                has already been written when this propagates.
        """
        logger.info(
            "Starting setup",
            extra={"tenant_id": self.settings.tenant_id, "blueprint": self.settings.blueprint_name},
        )
        try:
            self._begin(Phase.AUTH)
            await self.provisioner.authenticate(token_provider)
            self.recorder.record(Phase.AUTH.value, PhaseStatus.COMPLETED.value)

            blueprint = await self._blueprint_phase()
            identity_id = await self._identity_phase(blueprint)
            user_id = await self._user_phase(identity_id)
            await self._grant_phase(identity_id, user_id)
            await self._license_phase(user_id)
            await self._role_phase()
            await self._webhook_phase()
        except SetupError as e:
            self._fail(e.message)
            raise
        except Exception as e:
            self._fail(f"Unexpected error: {e}")
            raise
        finally:
            self.recorder.flush()

        self.recorder.mark_completed()
        logger.info("Setup completed", extra={"output": str(self.recorder.path)})
        return self.output

    def _begin(self, phase: Phase) -> None:
        self._current = phase
        self.events.phase_start(phase.value, PHASE_TITLES[phase])

    def _fail(self, detail: str) -> None:
        if self._current is not None:
            self.recorder.record(self._current.value, PhaseStatus.FAILED.value, detail)
            self.events.fatal(detail)

    async def _blueprint_phase(self) -> BlueprintResult:
        self._begin(Phase.BLUEPRINT)
        result = await self.provisioner.ensure_blueprint(self.settings.blueprint_name)

        blueprint = self.output.blueprint
        blueprint.app_id = result.app.app_id
        blueprint.object_id = result.app.object_id
        if result.service_principal is not None:
            blueprint.service_principal_id = result.service_principal.object_id
        if result.secret is not None:
            blueprint.client_secret = result.secret.secret_text

        self.recorder.record(Phase.BLUEPRINT.value, result.status.value, result.secret_error)
        return result

    async def _identity_phase(self, blueprint: BlueprintResult) -> str:
        self._begin(Phase.AGENT_IDENTITY)
        secret = blueprint.secret.secret_text if blueprint.secret else None
        ensured = await self.provisioner.ensure_agent_identity(
            self.settings.identity_name, blueprint.app.app_id, secret
        )
        self.output.agent_identity.id = ensured.resource.object_id
        self.recorder.record(Phase.AGENT_IDENTITY.value, ensured.status.value)
        return ensured.resource.object_id

    async def _user_phase(self, identity_id: str) -> str:
        self._begin(Phase.AGENT_USER)
        ensured = await self.provisioner.ensure_agent_user(
            self.settings.user_upn, self.settings.user_display_name, identity_id
        )
        self.output.agent_user.id = ensured.resource.object_id
        self.output.agent_user.upn = ensured.resource.user_principal_name or self.settings.user_upn
        self.recorder.record(Phase.AGENT_USER.value, ensured.status.value)
        return ensured.resource.object_id

    async def _grant_phase(self, identity_id: str, user_id: str) -> None:
        self._begin(Phase.PERMISSION_GRANT)
        ensured = await self.provisioner.ensure_permission_grant(
            identity_id, user_id, self.settings.scopes
        )
        self.output.permissions.oauth2_grant_id = ensured.resource.object_id
        self.recorder.record(Phase.PERMISSION_GRANT.value, ensured.status.value)

    async def _license_phase(self, user_id: str) -> None:
        self._begin(Phase.LICENSE)
        status, detail = await self.provisioner.assign_licenses(user_id, self.settings.license_sku_ids)
        self.recorder.record(Phase.LICENSE.value, status.value, detail)

    async def _role_phase(self) -> None:
        self._begin(Phase.ROLE_ASSIGNMENT)
        settings = self.settings
        if settings.skip_foundry:
            self._skip(Phase.ROLE_ASSIGNMENT, "Skipped by --skip-foundry flag")
            return
        if not settings.foundry_resource_id:
            self._skip(Phase.ROLE_ASSIGNMENT, "No Foundry resource ID provided")
            return

        assignee = self.output.blueprint.service_principal_id
        if not assignee:
            message = "Blueprint service principal unknown; cannot assign Foundry roles"
            self.events.warning(message)
            self.recorder.record(Phase.ROLE_ASSIGNMENT.value, PhaseStatus.WARNING.value, message)
            return

        status, detail = await self.provisioner.assign_foundry_roles(
            assignee, settings.foundry_resource_id
        )
        self.recorder.record(Phase.ROLE_ASSIGNMENT.value, status.value, detail)

    async def _webhook_phase(self) -> None:
        self._begin(Phase.WEBHOOK)
        settings = self.settings
        if settings.skip_webhook:
            self._skip(Phase.WEBHOOK, "Skipped by --skip-webhook flag")
            return
        if not settings.webhook_url:
            self._skip(Phase.WEBHOOK, "No webhook URL provided")
            return

        subscription_id = await self.provisioner.create_webhook(settings.webhook_url)
        if subscription_id is None:
            self.recorder.record(
                Phase.WEBHOOK.value, PhaseStatus.WARNING.value, "Subscription creation failed"
            )
            return
        self.output.permissions.subscription_id = subscription_id
        self.recorder.record(Phase.WEBHOOK.value, PhaseStatus.CREATED.value)

    def _skip(self, phase: Phase, reason: str) -> None:
        self.events.skipped(reason)
        self.recorder.record(phase.value, PhaseStatus.SKIPPED.value, reason)
