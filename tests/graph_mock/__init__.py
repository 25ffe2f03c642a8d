"""Microsoft Graph mock for integration testing.

Provides an in-memory directory served through httpx.MockTransport so the
real GraphClient, finders, creators and orchestrator run unchanged.

Key Features:
- In-memory applications, service principals, users, grants and SKUs
- Request log with per-method/path counters
- Scripted failures (status sequences per route)
- Read-after-write lag for freshly created applications

Usage:
    from graph_mock import MockDirectory, connected_graph

    directory = MockDirectory()
    async with connected_graph(directory) as graph:
        ...
    assert directory.count("POST", "/users") == 1
"""

from .directory import GRAPH_APP_ID, MockDirectory, RecordedRequest, ScriptedFailure
from .fakes import (
    MANAGEMENT_TOKEN,
    TENANT_ID,
    FakeAzureCli,
    FakeBlueprintTokenFactory,
    FakeTokenProvider,
    connected_graph,
)

__all__ = [
    "GRAPH_APP_ID",
    "MANAGEMENT_TOKEN",
    "TENANT_ID",
    "FakeAzureCli",
    "FakeBlueprintTokenFactory",
    "FakeTokenProvider",
    "MockDirectory",
    "RecordedRequest",
    "ScriptedFailure",
    "connected_graph",
]
