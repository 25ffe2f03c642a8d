"""Terminal presentation for setup progress, errors and results."""

from __future__ import annotations

from pathlib import Path

import click

from .errors import DirectoryApiError, InsufficientPermissions, RetryExhausted, SetupError
from .events import EventKind, SetupEvent
from .models import SetupOutput

SEPARATOR = "-" * 64

_SYMBOLS = {
    EventKind.STEP: ("•", None),
    EventKind.SUCCESS: ("✓", "green"),
    EventKind.WARNING: ("!", "yellow"),
    EventKind.SKIPPED: ("-", "bright_black"),
    EventKind.ERROR: ("✗", "red"),
    EventKind.FATAL: ("✗", "red"),
}


class ConsolePresenter:
    """EventSink subscriber that renders events with click colors."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose
        self._in_countdown = False

    def __call__(self, event: SetupEvent) -> None:
        if event.kind == EventKind.WAIT:
            self._render_wait(event)
            return

        if self._in_countdown:
            click.echo()
            self._in_countdown = False

        if event.kind == EventKind.PHASE_START:
            click.echo()
            click.secho(event.message, fg="cyan", bold=True)
            click.echo(SEPARATOR)
            return

        symbol, color = _SYMBOLS[event.kind]
        click.secho(f"  {symbol} {event.message}", fg=color, err=event.kind == EventKind.FATAL)

        if self.verbose:
            for key, value in event.details.items():
                if "secret" not in key.lower():
                    click.secho(f"      {key}: {value}", fg="bright_black")

    def _render_wait(self, event: SetupEvent) -> None:
        remaining = event.details.get("remaining", 0)
        click.echo(f"\r    {event.message}... {remaining:.0f}s ", nl=False)
        self._in_countdown = True


def render_banner() -> None:
    click.echo()
    click.secho("╔══════════════════════════════════════════════════════════════╗", fg="cyan")
    click.secho("║                  Citizen Agent Setup CLI                     ║", fg="cyan")
    click.secho("╚══════════════════════════════════════════════════════════════╝", fg="cyan")


def render_error(exc: BaseException, log_path: Path | None = None) -> None:
    """Typed error banner: cause, context, suggestions, log pointer."""
    err = True
    click.echo(err=err)
    if isinstance(exc, SetupError):
        click.secho(f"ERROR [{exc.error_type}]", fg="red", bold=True, err=err)
        click.secho(f"  {exc.message}", fg="red", err=err)

        if isinstance(exc, DirectoryApiError):
            click.echo(f"  HTTP status: {exc.status_code}", err=err)
            if exc.error_code:
                click.echo(f"  Error code:  {exc.error_code}", err=err)
        if isinstance(exc, InsufficientPermissions) and exc.required_permissions:
            click.echo("  Required permissions:", err=err)
            for permission in exc.required_permissions:
                click.echo(f"    - {permission}", err=err)

        suggestions = list(exc.suggestions)
        if isinstance(exc, RetryExhausted) and isinstance(exc.last_error, SetupError):
            suggestions.extend(exc.last_error.suggestions)
        if suggestions:
            click.echo(err=err)
            click.secho("Suggestions:", fg="yellow", err=err)
            for suggestion in suggestions:
                click.echo(f"  • {suggestion}", err=err)
    else:
        click.secho("ERROR [Unexpected]", fg="red", bold=True, err=err)
        click.secho(f"  {type(exc).__name__}: {exc}", fg="red", err=err)

    cause = exc.__cause__
    if cause is not None:
        click.echo(err=err)
        click.secho(f"Caused by: {type(cause).__name__}: {cause}", fg="bright_black", err=err)

    if log_path is not None:
        click.echo(err=err)
        click.echo(f"Full log: {log_path}", err=err)


def render_summary(output: SetupOutput, output_path: Path | None = None) -> None:
    click.echo()
    click.secho("╔══════════════════════════════════════════════════════════════╗", fg="green")
    click.secho("║                       SETUP COMPLETE                         ║", fg="green")
    click.secho("╚══════════════════════════════════════════════════════════════╝", fg="green")
    click.echo()
    click.secho("SUMMARY:", fg="cyan")
    click.echo(SEPARATOR)
    click.echo(f"Tenant ID:              {output.tenant_id}")
    click.echo()

    blueprint = output.blueprint
    click.secho("Blueprint App:", fg="yellow")
    click.echo(f"  App ID:               {blueprint.app_id}")
    click.echo(f"  Object ID:            {blueprint.object_id}")
    click.echo(f"  Service Principal:    {blueprint.service_principal_id}")
    if blueprint.client_secret:
        click.secho(f"  Client Secret:        {blueprint.client_secret}", fg="yellow")
        click.secho("  ! SAVE THIS SECRET - It won't be shown again!", fg="red")
    click.echo()

    click.secho("Agent Identity:", fg="yellow")
    click.echo(f"  ID:                   {output.agent_identity.id}")
    click.echo()
    click.secho("Agent User:", fg="yellow")
    click.echo(f"  ID:                   {output.agent_user.id}")
    click.echo(f"  UPN:                  {output.agent_user.upn}")
    click.echo()
    click.secho("Permissions:", fg="yellow")
    click.echo(f"  OAuth2 Grant ID:      {output.permissions.oauth2_grant_id}")
    if output.permissions.subscription_id:
        click.echo(f"  Subscription ID:      {output.permissions.subscription_id}")

    warnings = [p for p in output.phases if p.status in ("warning", "skipped")]
    if warnings:
        click.echo()
        click.secho("Attention:", fg="yellow")
        for phase in warnings:
            click.echo(f"  {phase.name}: {phase.status} - {phase.detail or ''}")

    if output_path is not None:
        click.echo()
        click.echo(f"Output saved to: {output_path}")


def render_next_steps(output: SetupOutput) -> None:
    click.echo()
    click.secho("NEXT STEPS:", fg="yellow")
    click.echo(SEPARATOR)
    click.echo("1. Assign licenses to Agent User (if not done automatically)")
    click.echo()
    click.echo("2. Configure App Settings in Azure Web App:")
    for line in (
        f"TENANT_ID={output.tenant_id}",
        f"CLIENT_ID={output.blueprint.app_id}",
        "CLIENT_SECRET=<blueprint_secret>",
        f"AGENT_USER_ID={output.agent_user.id}",
        f"AGENT_USER_UPN={output.agent_user.upn}",
        f"AGENT_BLUEPRINT_ID={output.blueprint.app_id}",
        f"AGENT_IDENTITY_ID={output.agent_identity.id}",
    ):
        click.secho(f"   {line}", fg="cyan")
    click.echo()
    click.echo("3. Deploy your agent application to Azure")
    click.echo("4. Renew Graph subscription hourly (if using webhooks)")
