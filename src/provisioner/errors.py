"""Error taxonomy and classification for the provisioning run.

Every fatal category carries its own process exit code so automation can
tell failure categories apart without parsing text:

    10  AuthenticationFailure
    20  DirectoryApiError
    30  ConfigurationInvalid
    40  ResourceNotFound (internal "absent" signal, normally never surfaced)
    50  InsufficientPermissions
    60  RetryExhausted
    61  PropagationTimeout
    70  BlueprintSecretUnavailable
    130 SetupCancelled

classify_error() decides whether the orchestrator retries, treats the
failure as "resource absent", or aborts the run.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_AUTHENTICATION = 10
EXIT_DIRECTORY_API = 20
EXIT_CONFIGURATION = 30
EXIT_NOT_FOUND = 40
EXIT_INSUFFICIENT_PERMISSIONS = 50
EXIT_RETRY_EXHAUSTED = 60
EXIT_PROPAGATION_TIMEOUT = 61
EXIT_SECRET_UNAVAILABLE = 70
EXIT_CANCELLED = 130

# HTTP statuses the directory API uses for throttling and server-side faults.
# Status 0 is used for transport errors where no response was received.
TRANSIENT_STATUS_CODES = frozenset({0, 408, 429, 500, 502, 503, 504})

# Right after a write the directory may answer 400/404 for the new object.
PROPAGATION_STATUS_CODES = frozenset({400, 404})


class SetupError(Exception):
    """Base class for all errors surfaced to the operator."""

    exit_code: int = EXIT_UNEXPECTED
    error_type: str = "Error"

    def __init__(self, message: str, suggestions: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestions: list[str] = list(suggestions or [])


class AuthenticationFailure(SetupError):
    """Token acquisition failed or no token is available."""

    exit_code = EXIT_AUTHENTICATION
    error_type = "Authentication Error"

    DEFAULT_SUGGESTIONS = (
        "Verify your client credentials are correct",
        "Ensure the management app has required permissions",
        "Check if admin consent has been granted",
    )

    def __init__(self, message: str, suggestions: Iterable[str] | None = None) -> None:
        super().__init__(message, suggestions or self.DEFAULT_SUGGESTIONS)


class DirectoryApiError(SetupError):
    """The directory API answered with an error status."""

    exit_code = EXIT_DIRECTORY_API
    error_type = "Graph API Error"

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: str | None = None,
        suggestions: Iterable[str] | None = None,
    ) -> None:
        super().__init__(message, suggestions)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def is_transient(self) -> bool:
        return self.status_code in TRANSIENT_STATUS_CODES


class ConfigurationInvalid(SetupError):
    """Required settings are missing or malformed. Raised before any remote call."""

    exit_code = EXIT_CONFIGURATION
    error_type = "Configuration Error"

    DEFAULT_SUGGESTIONS = (
        "Verify all required parameters are provided",
        "Check the configuration file format",
        "Use 'ca-setup config init' to create a new configuration",
    )

    def __init__(
        self,
        message: str,
        errors: Iterable[str] | None = None,
        suggestions: Iterable[str] | None = None,
    ) -> None:
        super().__init__(message, suggestions or self.DEFAULT_SUGGESTIONS)
        self.errors: list[str] = list(errors or [])


class ResourceNotFound(SetupError):
    """Internal signal meaning "the looked-up resource does not exist"."""

    exit_code = EXIT_NOT_FOUND
    error_type = "Resource Not Found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} '{resource_id}' not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class InsufficientPermissions(SetupError):
    """The caller lacks directory permissions for the attempted operation."""

    exit_code = EXIT_INSUFFICIENT_PERMISSIONS
    error_type = "Insufficient Permissions"

    def __init__(
        self,
        message: str,
        required_permissions: Iterable[str],
        suggestions: Iterable[str] | None = None,
    ) -> None:
        self.required_permissions: list[str] = list(required_permissions)
        super().__init__(
            message,
            suggestions
            or (
                f"Required permissions: {', '.join(self.required_permissions)}",
                "Grant admin consent in Azure Portal",
                "Verify you have Application Administrator or Global Administrator role",
            ),
        )


class RetryExhausted(SetupError):
    """An operation kept failing until its attempt budget ran out."""

    exit_code = EXIT_RETRY_EXHAUSTED
    error_type = "Retry Exhausted"

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}",
            ("Wait a few minutes for directory replication and run setup again",),
        )
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error


class PropagationTimeout(SetupError):
    """A freshly created resource never became visible to reads."""

    exit_code = EXIT_PROPAGATION_TIMEOUT
    error_type = "Propagation Timeout"

    def __init__(self, resource: str, attempts: int) -> None:
        super().__init__(
            f"{resource} failed to propagate after {attempts} checks. Please try again.",
            ("Re-run setup; existing resources are detected and reused",),
        )
        self.resource = resource
        self.attempts = attempts


class BlueprintSecretUnavailable(SetupError):
    """Agent identity creation needs a client secret minted during this run."""

    exit_code = EXIT_SECRET_UNAVAILABLE
    error_type = "Blueprint Secret Unavailable"

    def __init__(self) -> None:
        super().__init__(
            "Blueprint client secret required for Agent Identity creation",
            (
                "The Blueprint client secret is needed to authenticate with Microsoft Graph",
                "Check the client secret step above for the underlying failure",
                "Ensure the management app can add passwords to the Blueprint application",
            ),
        )


class SetupCancelled(SetupError):
    """The operator aborted the run."""

    exit_code = EXIT_CANCELLED
    error_type = "Cancelled"

    def __init__(self, message: str = "Setup cancelled by operator") -> None:
        super().__init__(message, ("Re-run setup to resume; completed phases are detected",))


class ErrorDisposition(str, Enum):
    """What the orchestrator should do with a failure."""

    RETRY = "retry"
    ABSENT = "absent"
    ABORT = "abort"


def classify_error(exc: BaseException) -> ErrorDisposition:
    """Map a failure to retry / absent / abort."""
    if isinstance(exc, ResourceNotFound):
        return ErrorDisposition.ABSENT
    if isinstance(exc, DirectoryApiError):
        if exc.status_code == 404:
            return ErrorDisposition.ABSENT
        if exc.is_transient:
            return ErrorDisposition.RETRY
    return ErrorDisposition.ABORT


def is_transient(exc: BaseException) -> bool:
    """True for throttling, server faults and transport failures."""
    return classify_error(exc) is ErrorDisposition.RETRY


def is_absent(exc: BaseException) -> bool:
    """True when a lookup failure means the resource does not exist."""
    return classify_error(exc) is ErrorDisposition.ABSENT


def is_propagation_race(exc: BaseException) -> bool:
    """True for failures a create call may hit while its parent is still replicating.

    Widens the classifier: besides RETRY, an ABSENT parent or a 400 on a
    fresh reference is worth another attempt.
    """
    if classify_error(exc) is not ErrorDisposition.ABORT:
        return True
    return isinstance(exc, DirectoryApiError) and exc.status_code in PROPAGATION_STATUS_CODES


def exit_code_for(exc: BaseException) -> int:
    """Process exit code for an exception escaping the run."""
    if isinstance(exc, SetupError):
        return exc.exit_code
    return EXIT_UNEXPECTED
