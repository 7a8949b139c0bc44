"""Shared fixtures for the agent-fleet test suite."""

from __future__ import annotations

import tempfile
from typing import Generator

import pytest

from agent_fleet.core.models import init_db


class FakeClock:
    """Manually advanced time source in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """A fake clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def temp_db() -> Generator[str, None, None]:
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    init_db(db_path)

    yield db_path


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip environment overrides that would leak into config defaults."""
    for name in (
        "GITHUB_REPOSITORY",
        "GITHUB_PROJECT_MODE",
        "GITHUB_PROJECT_ID",
        "GITHUB_PROJECT_NUMBER",
        "GITHUB_PROJECT_OWNER",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "GITHUB_PAT",
        "AGENT_FLEET_GITHUB_USER_TOKEN",
        "AGENT_FLEET_GITHUB_INSTALLATION_TOKEN",
        "AGENT_FLEET_TASK_LABEL",
        "AGENT_FLEET_ENFORCE_TASK_LABEL",
        "AGENT_FLEET_STATE_DIR",
        "SLACK_BOT_TOKEN",
        "AGENT_FLEET_SLACK_CHANNEL",
    ):
        monkeypatch.delenv(name, raising=False)
