"""Citizen Agent Setup CLI (ca-setup).

Provisions the directory resources an autonomous agent needs: a blueprint
app, an agent identity, an agent user, a delegated permission grant, a
license and optional Foundry roles and webhook subscription.

Usage:
    ca-setup setup --tenant-id ... --blueprint-name ... --identity-name ... --user-upn ...
    ca-setup blueprint create --tenant-id ... --name ...
    ca-setup identity create --tenant-id ... --name ... --blueprint-app-id ... --blueprint-secret ...
    ca-setup user create --tenant-id ... --upn ... --identity-id ...
    ca-setup permissions grant --tenant-id ... --identity-id ... --user-id ...
    ca-setup config init | show | validate
"""

from __future__ import annotations

import functools
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from . import console
from .auth import TokenProvider, token_provider_for
from .azure_cli import AzureCli
from .config import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_GRANT_SCOPES,
    DEFAULT_OUTPUT_FILE,
    AuthSettings,
    PropagationPolicy,
    SetupSettings,
    default_config,
    find_config_file,
    load_config_file,
    save_config_file,
    validate_config,
)
from .errors import EXIT_CONFIGURATION, ConfigurationInvalid, SetupError
from .events import EventSink
from .finders import find_blueprint_app
from .graph_client import GraphClient
from .main import execute
from .models import SetupConfig
from .orchestrator import Provisioner, SetupOrchestrator
from .output import OutputRecorder
from .retry import CancellationSignal

VERSION = "0.1.0"

# =============================================================================
# Collaborator factories
# =============================================================================


def make_graph_client() -> GraphClient:
    return GraphClient()


def make_azure_cli() -> AzureCli | None:
    cli_tool = AzureCli()
    return cli_tool if cli_tool.is_available() else None


def make_token_provider(auth: AuthSettings) -> TokenProvider:
    return token_provider_for(auth)


def propagation_policy() -> PropagationPolicy:
    return PropagationPolicy()


def build_provisioner(
    graph: GraphClient,
    tenant_id: str,
    cancel: CancellationSignal,
    events: EventSink,
) -> Provisioner:
    return Provisioner(
        graph,
        tenant_id=tenant_id,
        policy=propagation_policy(),
        events=events,
        cancel=cancel,
        azure_cli=make_azure_cli(),
    )


# =============================================================================
# Shared options
# =============================================================================


def auth_options() -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Tenant and management-app credential options."""

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        options = [
            click.option("--tenant-id", envvar="CA_TENANT_ID", help="Directory tenant ID"),
            click.option("--client-id", envvar="CA_CLIENT_ID", help="Management app client ID"),
            click.option(
                "--client-secret", envvar="CA_CLIENT_SECRET", help="Management app client secret"
            ),
            click.option(
                "--interactive",
                is_flag=True,
                help="Authenticate as the signed-in user (Azure CLI, then browser)",
            ),
            click.option("--client-app-id", help="Client app ID for interactive browser login"),
        ]
        for option in reversed(options):
            f = option(f)
        return f

    return decorator


def run_options(f: Callable[..., Any]) -> Callable[..., Any]:
    f = click.option("--log-file", type=click.Path(path_type=Path), help="Log file path")(f)
    f = click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")(f)
    return f


def exit_with(code: int) -> None:
    if code:
        sys.exit(code)


def auth_settings(kwargs: dict[str, Any]) -> AuthSettings:
    return AuthSettings(
        tenant_id=kwargs.get("tenant_id") or "",
        client_id=kwargs.get("client_id"),
        client_secret=kwargs.get("client_secret"),
        interactive=bool(kwargs.get("interactive")),
        client_app_id=kwargs.get("client_app_id"),
    )


def preflight(build: Callable[[], Any]) -> Any:
    """Build settings, rendering validation errors and exiting before any remote call."""
    try:
        return build()
    except ConfigurationInvalid as e:
        console.render_error(e)
        click.echo("\nProvide values via command line options or create a config file:", err=True)
        click.echo("  ca-setup config init", err=True)
        sys.exit(e.exit_code)


def single_phase(title: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a standalone command's coroutine in authentication and execute()."""

    def decorator(f: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(f)
        def wrapper(**kwargs: Any) -> None:
            auth = preflight(lambda: auth_settings(kwargs))

            async def work(cancel: CancellationSignal, events: EventSink) -> None:
                async with make_graph_client() as graph:
                    provisioner = build_provisioner(graph, auth.tenant_id, cancel, events)
                    events.phase_start(f.__name__, title)
                    await provisioner.authenticate(make_token_provider(auth))
                    await f(provisioner, **kwargs)

            exit_with(
                execute(
                    f.__name__.replace("_", "-"),
                    work,
                    verbose=kwargs.get("verbose", False),
                    log_file=kwargs.get("log_file"),
                )
            )

        return wrapper

    return decorator


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="ca-setup")
def cli() -> None:
    """Citizen Agent Setup CLI (ca-setup).

    Provisions a blueprint, agent identity, agent user and permissions.

    \b
    Quick Start:
        ca-setup config init   # Create citizen-agent.config.json
        ca-setup setup         # Run every phase using the config file
    """
    pass


# =============================================================================
# Setup Command
# =============================================================================


@cli.command()
@auth_options()
@click.option("--blueprint-name", help="Blueprint app display name")
@click.option("--identity-name", help="Agent identity display name")
@click.option("--user-upn", help="Agent user UPN (e.g. agent@contoso.com)")
@click.option("--user-display-name", help="Agent user display name [default: Agent User]")
@click.option("--foundry-resource", "foundry_resource_id", help="Foundry resource ID for RBAC")
@click.option("--skip-foundry", is_flag=True, help="Skip the Foundry role assignment phase")
@click.option("--webhook-url", help="HTTPS endpoint for chat message notifications")
@click.option("--skip-webhook", is_flag=True, help="Skip the webhook subscription phase")
@click.option("--scopes", help="Delegated scopes to grant (space separated)")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Configuration file")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_OUTPUT_FILE,
    show_default=True,
    help="Result document path",
)
@run_options
def setup(config_path: Path | None, verbose: bool, log_file: Path | None, **kwargs: Any) -> None:
    """Run the complete provisioning sequence."""

    def build() -> SetupSettings:
        file_path = find_config_file(config_path)
        file_config = load_config_file(file_path) if file_path else None
        if file_path:
            click.echo(f"[INFO] Loaded configuration from {file_path}")
        return SetupSettings.from_sources(
            {**kwargs, "policy": propagation_policy()}, file_config
        )

    settings: SetupSettings = preflight(build)
    console.render_banner()

    async def work(cancel: CancellationSignal, events: EventSink) -> None:
        recorder = OutputRecorder(settings.output_path, tenant_id=settings.tenant_id)
        async with make_graph_client() as graph:
            provisioner = build_provisioner(graph, settings.tenant_id, cancel, events)
            orchestrator = SetupOrchestrator(settings, provisioner, recorder)
            try:
                output = await orchestrator.run(make_token_provider(settings.auth))
            except SetupError:
                click.echo(f"\nPartial output saved to: {settings.output_path}", err=True)
                raise
        console.render_summary(output, settings.output_path)
        console.render_next_steps(output)

    exit_with(execute("setup", work, verbose=verbose, log_file=log_file))


cli.add_command(setup, name="all")


# =============================================================================
# Blueprint Commands
# =============================================================================


@cli.group()
def blueprint() -> None:
    """Manage the blueprint app registration."""
    pass


@blueprint.command("create")
@auth_options()
@click.option("--name", required=True, help="Blueprint app display name")
@click.option(
    "--create-secret/--no-create-secret",
    default=True,
    show_default=True,
    help="Mint a client secret for the blueprint",
)
@run_options
@single_phase("Blueprint Application")
async def blueprint_create(provisioner: Provisioner, name: str, create_secret: bool, **_: Any) -> None:
    """Find or create a blueprint app."""
    result = await provisioner.ensure_blueprint(name, create_secret=create_secret)
    click.echo()
    click.echo(f"App ID:            {result.app.app_id}")
    click.echo(f"Object ID:         {result.app.object_id}")
    if result.service_principal is not None:
        click.echo(f"Service Principal: {result.service_principal.object_id}")
    if result.secret is not None:
        click.secho(f"Client Secret:     {result.secret.secret_text}", fg="yellow")
        click.secho("! SAVE THIS SECRET - It won't be shown again!", fg="red")


@blueprint.command("list")
@auth_options()
@click.option("--name", required=True, help="Blueprint app display name")
@run_options
@single_phase("Blueprint Lookup")
async def blueprint_list(provisioner: Provisioner, name: str, **_: Any) -> None:
    """Find an existing blueprint app by name."""
    app = await find_blueprint_app(provisioner.graph, name)
    if app is None:
        provisioner.events.warning(f"No Blueprint named '{name}'")
        return
    provisioner.events.success(f"Found Blueprint '{app.display_name}'")
    click.echo(f"App ID:    {app.app_id}")
    click.echo(f"Object ID: {app.object_id}")


# =============================================================================
# Identity / User / Permissions Commands
# =============================================================================


@cli.group()
def identity() -> None:
    """Manage the agent identity."""
    pass


@identity.command("create")
@auth_options()
@click.option("--name", required=True, help="Agent identity display name")
@click.option("--blueprint-app-id", required=True, help="Blueprint app ID (client ID)")
@click.option("--blueprint-secret", required=True, help="Blueprint client secret")
@run_options
@single_phase("Agent Identity")
async def identity_create(
    provisioner: Provisioner,
    name: str,
    blueprint_app_id: str,
    blueprint_secret: str,
    **_: Any,
) -> None:
    """Find or create an agent identity, authenticating as the blueprint."""
    ensured = await provisioner.ensure_agent_identity(name, blueprint_app_id, blueprint_secret)
    click.echo(f"Agent Identity ID: {ensured.resource.object_id}")


@cli.group()
def user() -> None:
    """Manage the agent user."""
    pass


@user.command("create")
@auth_options()
@click.option("--upn", required=True, help="Agent user UPN")
@click.option("--display-name", default="Agent User", show_default=True, help="Display name")
@click.option("--identity-id", required=True, help="Agent identity object ID")
@run_options
@single_phase("Agent User")
async def user_create(
    provisioner: Provisioner,
    upn: str,
    display_name: str,
    identity_id: str,
    **_: Any,
) -> None:
    """Find or create an agent user linked to an agent identity."""
    ensured = await provisioner.ensure_agent_user(upn, display_name, identity_id)
    click.echo(f"Agent User ID: {ensured.resource.object_id}")


@cli.group()
def permissions() -> None:
    """Manage delegated permission grants."""
    pass


@permissions.command("grant")
@auth_options()
@click.option("--identity-id", required=True, help="Agent identity object ID")
@click.option("--user-id", required=True, help="Agent user object ID")
@click.option("--scopes", default=DEFAULT_GRANT_SCOPES, show_default=True, help="Scopes to grant")
@run_options
@single_phase("OAuth2 Permission Grant")
async def permissions_grant(
    provisioner: Provisioner,
    identity_id: str,
    user_id: str,
    scopes: str,
    **_: Any,
) -> None:
    """Find or create the grant for (identity, Graph, user)."""
    ensured = await provisioner.ensure_permission_grant(identity_id, user_id, scopes)
    click.echo(f"Grant ID: {ensured.resource.object_id}")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Manage configuration files."""
    pass


@config.command("init")
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Configuration file to write",
)
@click.option("--template", is_flag=True, help="Write a template without prompting")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(output_path: Path, template: bool, force: bool) -> None:
    """Create a configuration file (interactive unless --template)."""
    if output_path.exists() and not force:
        raise click.ClickException(f"{output_path} already exists (use --force to overwrite)")

    cfg = default_config()
    if not template:
        cfg = _prompt_config(cfg)

    save_config_file(cfg, output_path)
    click.secho(f"✓ Configuration written to {output_path}", fg="green")
    if template:
        click.echo("  Fill in the empty values, then run: ca-setup setup")


def _prompt_config(defaults: SetupConfig) -> SetupConfig:
    def ask(label: str, value: str | None, hide: bool = False) -> str:
        return click.prompt(label, default=value or "", hide_input=hide, show_default=not hide)

    return SetupConfig(
        tenant_id=ask("Tenant ID", defaults.tenant_id),
        subscription_id=ask("Subscription ID", defaults.subscription_id) or None,
        blueprint_display_name=ask("Blueprint name", defaults.blueprint_display_name),
        agent_identity_display_name=ask("Agent identity name", defaults.agent_identity_display_name),
        agent_user_upn=ask("Agent user UPN", defaults.agent_user_upn),
        agent_user_display_name=ask("Agent user display name", defaults.agent_user_display_name),
        mgmt_client_id=ask("Management app client ID", defaults.mgmt_client_id) or None,
        mgmt_client_secret=ask("Management app client secret", defaults.mgmt_client_secret, hide=True)
        or None,
        foundry_resource_id=ask("Foundry resource ID (optional)", defaults.foundry_resource_id) or None,
        webhook_url=ask("Webhook URL (optional)", defaults.webhook_url) or None,
    )


@config.command("show")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Configuration file",
)
def config_show(file_path: Path) -> None:
    """Print a configuration file with secrets masked."""
    cfg = _load_or_exit(file_path)
    click.echo(f"Configuration: {file_path}")
    click.echo("=" * 40)
    for key, value in cfg.masked().items():
        click.echo(f"  {key}: {value if value not in (None, '') else '(not set)'}")


@config.command("validate")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Configuration file",
)
@click.option("--interactive", is_flag=True, help="Validate for interactive authentication")
def config_validate(file_path: Path, interactive: bool) -> None:
    """Check a configuration file and report every problem."""
    cfg = _load_or_exit(file_path)
    errors = validate_config(cfg, interactive=interactive)
    if errors:
        click.secho(f"✗ {file_path} is not valid:", fg="red", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(EXIT_CONFIGURATION)
    click.secho(f"✓ {file_path} is valid", fg="green")


def _load_or_exit(file_path: Path) -> SetupConfig:
    try:
        return load_config_file(file_path)
    except ConfigurationInvalid as e:
        console.render_error(e)
        sys.exit(e.exit_code)


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
