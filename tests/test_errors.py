"""Tests for the error taxonomy and failure classification."""

from __future__ import annotations

import pytest

from provisioner.errors import (
    EXIT_UNEXPECTED,
    AuthenticationFailure,
    BlueprintSecretUnavailable,
    ConfigurationInvalid,
    DirectoryApiError,
    ErrorDisposition,
    InsufficientPermissions,
    PropagationTimeout,
    ResourceNotFound,
    RetryExhausted,
    SetupCancelled,
    classify_error,
    exit_code_for,
    is_absent,
    is_propagation_race,
    is_transient,
)


class TestExitCodes:
    """Each failure category has its own exit code."""

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (AuthenticationFailure("bad credentials"), 10),
            (DirectoryApiError("boom", 500), 20),
            (ConfigurationInvalid("missing"), 30),
            (InsufficientPermissions("denied", ["User.ReadWrite.All"]), 50),
            (RetryExhausted("Agent user creation", 5, DirectoryApiError("x", 503)), 60),
            (PropagationTimeout("Blueprint application", 10), 61),
            (BlueprintSecretUnavailable(), 70),
            (SetupCancelled(), 130),
        ],
    )
    def test_exit_code_per_category(self, error: Exception, expected: int) -> None:
        """Test that exit_code_for returns the category's code."""
        assert exit_code_for(error) == expected

    def test_codes_are_distinct(self) -> None:
        """Test that no two fatal categories share an exit code."""
        codes = [
            AuthenticationFailure.exit_code,
            DirectoryApiError.exit_code,
            ConfigurationInvalid.exit_code,
            InsufficientPermissions.exit_code,
            RetryExhausted.exit_code,
            PropagationTimeout.exit_code,
            BlueprintSecretUnavailable.exit_code,
            SetupCancelled.exit_code,
        ]
        assert len(set(codes)) == len(codes)

    def test_unexpected_exception(self) -> None:
        """Test that non-setup exceptions map to the generic code."""
        assert exit_code_for(RuntimeError("kaboom")) == EXIT_UNEXPECTED


class TestClassification:
    """Tests for classify_error / is_transient / is_propagation_race."""

    @pytest.mark.parametrize("status", [0, 408, 429, 500, 502, 503, 504])
    def test_transient_statuses_retry(self, status: int) -> None:
        error = DirectoryApiError("throttled", status)
        assert is_transient(error)
        assert classify_error(error) == ErrorDisposition.RETRY

    def test_not_found_is_absent(self) -> None:
        assert classify_error(ResourceNotFound("User", "x@contoso.com")) == ErrorDisposition.ABSENT
        assert classify_error(DirectoryApiError("gone", 404)) == ErrorDisposition.ABSENT

    @pytest.mark.parametrize("status", [400, 401, 403, 409])
    def test_client_errors_abort(self, status: int) -> None:
        assert classify_error(DirectoryApiError("rejected", status)) == ErrorDisposition.ABORT

    def test_permission_error_aborts(self) -> None:
        error = InsufficientPermissions("denied", ["Application.ReadWrite.All"])
        assert not is_transient(error)
        assert classify_error(error) == ErrorDisposition.ABORT

    def test_plain_exception_aborts(self) -> None:
        assert classify_error(ValueError("bad")) == ErrorDisposition.ABORT

    def test_propagation_race_includes_400_and_404(self) -> None:
        """Test that a create may retry while its parent is still replicating."""
        assert is_propagation_race(DirectoryApiError("not yet", 400))
        assert is_propagation_race(ResourceNotFound("Application", "abc"))
        assert is_propagation_race(DirectoryApiError("throttled", 429))
        assert not is_propagation_race(DirectoryApiError("conflict", 409))

    @pytest.mark.parametrize(
        "error",
        [
            DirectoryApiError("throttled", 429),
            DirectoryApiError("gone", 404),
            ResourceNotFound("User", "x@contoso.com"),
            DirectoryApiError("rejected", 400),
            AuthenticationFailure("expired"),
            ValueError("bad"),
        ],
    )
    def test_predicates_follow_classifier(self, error: Exception) -> None:
        """Test that retry and absent decisions all come from classify_error."""
        disposition = classify_error(error)
        assert is_transient(error) == (disposition is ErrorDisposition.RETRY)
        assert is_absent(error) == (disposition is ErrorDisposition.ABSENT)
        if disposition is not ErrorDisposition.ABORT:
            assert is_propagation_race(error)
        assert not is_propagation_race(InsufficientPermissions("denied", []))


class TestErrorContent:
    """Tests for error messages and suggestions."""

    def test_retry_exhausted_carries_last_error(self) -> None:
        last = DirectoryApiError("Service unavailable", 503)
        error = RetryExhausted("Agent user creation", 5, last)

        assert error.attempts == 5
        assert error.last_error is last
        assert "5 attempts" in error.message
        assert "Service unavailable" in error.message

    def test_insufficient_permissions_lists_permissions(self) -> None:
        error = InsufficientPermissions("denied", ["AgentIdentity.Create.OwnedBy"])
        assert error.required_permissions == ["AgentIdentity.Create.OwnedBy"]
        assert any("AgentIdentity.Create.OwnedBy" in s for s in error.suggestions)

    def test_authentication_failure_default_suggestions(self) -> None:
        assert AuthenticationFailure("nope").suggestions

    def test_configuration_invalid_keeps_error_list(self) -> None:
        error = ConfigurationInvalid("invalid", errors=["--tenant-id is required"])
        assert error.errors == ["--tenant-id is required"]
        assert any("config init" in s for s in error.suggestions)
