"""
Shared pytest fixtures for shipline tests.

This module provides:
- Trigger contexts for the push / pull-request / descriptor-only cases
- A recording tool registry for in-process jobs
- Isolated settings and a sample deployment descriptor
"""

from __future__ import annotations

import pytest

from shipline.core.settings import ShiplineSettings
from shipline.orchestration.trigger import TriggerContext
from tests._support import DEPLOYMENT_YAML, RecordingTools


@pytest.fixture
def tools() -> RecordingTools:
    return RecordingTools()


@pytest.fixture
def push_main() -> TriggerContext:
    return TriggerContext(
        event="push",
        ref="refs/heads/main",
        changed_paths={"src/app.js"},
        commit="abc123",
        commit_message="Add feature",
        repository="org/repo",
    )


@pytest.fixture
def pull_request() -> TriggerContext:
    return TriggerContext(
        event="pull_request",
        ref="refs/heads/main",
        changed_paths={"src/app.js"},
        commit="def456",
        repository="org/repo",
    )


@pytest.fixture
def descriptor_only_push() -> TriggerContext:
    return TriggerContext(
        event="push",
        ref="refs/heads/main",
        changed_paths={"kubernetes/deployment.yaml"},
        commit="fed987",
        commit_message="Bump replicas",
        repository="org/repo",
    )


@pytest.fixture
def settings(tmp_path, monkeypatch) -> ShiplineSettings:
    """Settings isolated from the host environment and any .env file."""
    monkeypatch.chdir(tmp_path)
    for var in (
        "SHIPLINE_REPOSITORY",
        "SHIPLINE_REGISTRY",
        "SHIPLINE_BRANCH",
        "SHIPLINE_GITHUB_TOKEN",
        "SHIPLINE_KEEP_LAST",
        "SHIPLINE_PUSH",
    ):
        monkeypatch.delenv(var, raising=False)
    return ShiplineSettings(repository="org/repo", data_dir=tmp_path / "data")


@pytest.fixture
def descriptor_text() -> str:
    return DEPLOYMENT_YAML
