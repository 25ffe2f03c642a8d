"""Configuration management with validation.

Settings come from two places: an optional JSON/YAML settings file and the
command line. Command-line values win; the file fills in whatever the
command line left empty. The merged result is validated once, before any
remote call, and every problem is reported together.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import ConfigurationInvalid
from .models import SetupConfig

logger = logging.getLogger(__name__)

# File locations
DEFAULT_CONFIG_FILE = "citizen-agent.config.json"
DEFAULT_OUTPUT_FILE = "citizen-agent-output.json"
DEFAULT_LOG_DIR = Path.home() / ".citizen-agent" / "logs"

MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024  # 64KB max settings file

# Directory endpoints
GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"  # Microsoft Graph's own appId

# Delegated scopes granted to the agent identity on behalf of the agent user
DEFAULT_GRANT_SCOPES = (
    "Chat.ReadWrite Calendars.ReadWrite Mail.ReadWrite "
    "OnlineMeetings.ReadWrite Presence.Read User.Read"
)

# Microsoft 365 E5 Developer (without Windows and Audio Conferencing)
DEFAULT_LICENSE_SKU_IDS = ("06ebc4ee-1bb5-47dd-8120-11324bc54e06",)

# Roles assigned to the blueprint service principal on a Foundry resource
FOUNDRY_ROLES = (
    "Azure AI Developer",
    "Azure AI User",
    "Azure AI Administrator",
    "Cognitive Services User",
)

WEBHOOK_RESOURCE = "/chats/getAllMessages"
WEBHOOK_CHANGE_TYPE = "created"
WEBHOOK_CLIENT_STATE = "CitizenAgent-webhook-secret"
WEBHOOK_EXPIRY_MINUTES = 60

SECRET_DISPLAY_NAME_PREFIX = "CitizenAgent-Secret"
SECRET_VALIDITY_DAYS = 365

# Input validation patterns
VALID_GUID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_UPN_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


@dataclass(frozen=True)
class PropagationPolicy:
    """Timing for the directory's eventual consistency.

    App visibility is polled. Secrets, identities and users are visible
    before they are usable, so those get a fixed wait instead.
    """

    poll_attempts: int = 10
    poll_delay_seconds: float = 2.0

    retry_attempts: int = 5
    retry_delay_seconds: float = 3.0

    secret_wait_seconds: float = 10.0
    identity_wait_seconds: float = 15.0
    user_wait_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.poll_attempts < 1 or self.retry_attempts < 1:
            raise ConfigurationInvalid("Propagation policy attempts must be at least 1")
        delays = (
            self.poll_delay_seconds,
            self.retry_delay_seconds,
            self.secret_wait_seconds,
            self.identity_wait_seconds,
            self.user_wait_seconds,
        )
        if any(d < 0 for d in delays):
            raise ConfigurationInvalid("Propagation policy delays cannot be negative")


@dataclass(frozen=True)
class AuthSettings:
    """How the tool authenticates against the directory."""

    tenant_id: str
    client_id: str | None = None
    client_secret: str | None = None
    interactive: bool = False
    client_app_id: str | None = None

    def __post_init__(self) -> None:
        errors = self.validation_errors()
        if errors:
            raise ConfigurationInvalid(_format_errors(errors), errors=errors)

    def validation_errors(self) -> list[str]:
        errors: list[str] = []
        if not self.tenant_id:
            errors.append("--tenant-id is required")
        elif not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"--tenant-id must be a valid GUID: {self.tenant_id}")

        if not self.interactive:
            if not self.client_id:
                errors.append("--client-id is required (or use --interactive)")
            if not self.client_secret:
                errors.append("--client-secret is required (or use --interactive)")
        return errors

    def client_credentials(self) -> tuple[str, str]:
        """Management app id and secret for non-interactive authentication."""
        if not self.client_id or not self.client_secret:
            errors = ["--client-id and --client-secret are required (or use --interactive)"]
            raise ConfigurationInvalid(_format_errors(errors), errors=errors)
        return self.client_id, self.client_secret


@dataclass(frozen=True)
class SetupSettings:
    """Validated settings for a full setup run.

    All fields are validated at construction time. Every missing or
    malformed value is collected and raised as one ConfigurationInvalid.
    """

    # Required fields
    tenant_id: str
    blueprint_name: str
    identity_name: str
    user_upn: str

    # Authentication
    client_id: str | None = None
    client_secret: str | None = None
    interactive: bool = False
    client_app_id: str | None = None

    user_display_name: str = "Agent User"

    # Optional phases
    foundry_resource_id: str | None = None
    skip_foundry: bool = False
    webhook_url: str | None = None
    skip_webhook: bool = False

    scopes: str = DEFAULT_GRANT_SCOPES
    license_sku_ids: tuple[str, ...] = DEFAULT_LICENSE_SKU_IDS
    output_path: Path = field(default_factory=lambda: Path(DEFAULT_OUTPUT_FILE))
    policy: PropagationPolicy = field(default_factory=PropagationPolicy)

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.tenant_id:
            errors.append("--tenant-id is required")
        elif not re.match(VALID_GUID_PATTERN, self.tenant_id.lower()):
            errors.append(f"--tenant-id must be a valid GUID: {self.tenant_id}")

        if not self.blueprint_name:
            errors.append("--blueprint-name is required")
        if not self.identity_name:
            errors.append("--identity-name is required")

        if not self.user_upn:
            errors.append("--user-upn is required")
        elif not re.match(VALID_UPN_PATTERN, self.user_upn):
            errors.append(f"--user-upn must look like user@domain: {self.user_upn}")

        if not self.interactive:
            if not self.client_id:
                errors.append("--client-id is required (or use --interactive)")
            if not self.client_secret:
                errors.append("--client-secret is required (or use --interactive)")

        if self.webhook_url and not self.skip_webhook and not self.webhook_url.startswith("https://"):
            errors.append(f"--webhook-url must use https: {self.webhook_url}")

        if not self.scopes.strip():
            errors.append("--scopes cannot be empty")

        if errors:
            raise ConfigurationInvalid(_format_errors(errors), errors=errors)

    @property
    def auth(self) -> AuthSettings:
        return AuthSettings(
            tenant_id=self.tenant_id,
            client_id=self.client_id,
            client_secret=self.client_secret,
            interactive=self.interactive,
            client_app_id=self.client_app_id,
        )

    @classmethod
    def from_sources(
        cls,
        cli_values: dict[str, Any],
        file_config: SetupConfig | None = None,
    ) -> SetupSettings:
        """Merge command-line values over settings-file values.

        Args:
            cli_values: Values from the command line keyed by SetupSettings
                field name. None means "not given".
            file_config: Parsed settings file, if any.

        Returns:
            Validated settings.

        Raises:
            ConfigurationInvalid: Listing every missing or malformed value.
        """
        file_config = file_config or SetupConfig()

        def pick(name: str, file_value: Any) -> Any:
            value = cli_values.get(name)
            return value if value not in (None, "") else file_value

        kwargs: dict[str, Any] = {
            "tenant_id": pick("tenant_id", file_config.tenant_id) or "",
            "blueprint_name": pick("blueprint_name", file_config.blueprint_display_name) or "",
            "identity_name": pick("identity_name", file_config.agent_identity_display_name) or "",
            "user_upn": pick("user_upn", file_config.agent_user_upn) or "",
            "user_display_name": pick("user_display_name", file_config.agent_user_display_name),
            "client_id": pick("client_id", file_config.mgmt_client_id),
            "client_secret": pick("client_secret", file_config.mgmt_client_secret),
            "client_app_id": pick("client_app_id", file_config.client_app_id),
            "foundry_resource_id": pick("foundry_resource_id", file_config.foundry_resource_id),
            "webhook_url": pick("webhook_url", file_config.webhook_url),
            "interactive": bool(cli_values.get("interactive")),
            "skip_foundry": bool(cli_values.get("skip_foundry")),
            "skip_webhook": bool(cli_values.get("skip_webhook")),
        }
        for name in ("scopes", "output_path", "policy", "license_sku_ids"):
            if cli_values.get(name) not in (None, "", ()):
                kwargs[name] = cli_values[name]
        if "output_path" in kwargs:
            kwargs["output_path"] = Path(kwargs["output_path"])

        return cls(**kwargs)


def _format_errors(errors: list[str]) -> str:
    return "Configuration validation failed:\n  - " + "\n  - ".join(errors)


# =============================================================================
# Settings file
# =============================================================================


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Return the settings file to use, or None when there is none.

    An explicitly named file must exist; otherwise the default file name is
    looked up in the working directory.
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigurationInvalid(f"Configuration file not found: {path}")
        return path

    default = Path.cwd() / DEFAULT_CONFIG_FILE
    return default if default.exists() else None


def load_config_file(path: Path) -> SetupConfig:
    """Load and validate a settings file (JSON or YAML).

    Raises:
        ConfigurationInvalid: If the file is unreadable, too large or invalid.
    """
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationInvalid(f"Failed to stat configuration file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationInvalid(
            f"Configuration file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationInvalid(f"Failed to read configuration file {path}: {e}") from e

    # JSON is a subset of YAML, so one parser covers both formats
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationInvalid(f"Invalid configuration file {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigurationInvalid(f"Configuration file must contain a mapping: {path}")

    try:
        config = SetupConfig.model_validate(raw_data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationInvalid(
            f"Validation failed for {path}:\n  - " + "\n  - ".join(errors), errors=errors
        ) from e

    logger.info("Loaded configuration", extra={"path": str(path)})
    return config


def save_config_file(config: SetupConfig, path: Path) -> None:
    """Write a settings file atomically, readable only by the owner."""
    content = config.model_dump_json(by_alias=True, indent=2)
    atomic_write(path, content)
    logger.info("Saved configuration", extra={"path": str(path)})


def default_config() -> SetupConfig:
    """Template written by `config init`."""
    return SetupConfig(
        tenant_id="",
        subscription_id="",
        blueprint_display_name="CitizenAgent-Blueprint",
        agent_identity_display_name="CitizenAgent-Identity",
        agent_user_upn="",
        agent_user_display_name="Agent User",
        mgmt_client_id="",
        mgmt_client_secret="",
    )


def validate_config(config: SetupConfig, *, interactive: bool = False) -> list[str]:
    """Return every validation error for a settings file; empty when valid."""
    try:
        SetupSettings.from_sources({"interactive": interactive}, config)
    except ConfigurationInvalid as e:
        return e.errors or [e.message]
    return []


def atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
