"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for graph_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from graph_mock import MockDirectory  # noqa: E402

from provisioner.config import PropagationPolicy  # noqa: E402


@pytest.fixture
def directory() -> MockDirectory:
    """Empty directory with a signed-in sponsor and Graph's service principal."""
    return MockDirectory()


@pytest.fixture
def fast_policy() -> PropagationPolicy:
    """Propagation policy without any real waiting."""
    return PropagationPolicy(
        poll_attempts=3,
        poll_delay_seconds=0,
        retry_attempts=3,
        retry_delay_seconds=0,
        secret_wait_seconds=0,
        identity_wait_seconds=0,
        user_wait_seconds=0,
    )
