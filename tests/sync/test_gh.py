"""Tests for the gh CLI wrapper and token resolution.

Subprocesses are replaced with mocks of ``asyncio.create_subprocess_exec``
so no real ``gh`` binary is needed.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agent_fleet.config import SyncConfig
from agent_fleet.sync.backoff import BackoffState
from agent_fleet.sync.errors import CommandBackoffError, GhCommandError, RateLimitedError, is_not_found_error
from agent_fleet.sync.gh import GhClient, resolve_github_token

SUBPROCESS = "agent_fleet.sync.gh.asyncio.create_subprocess_exec"


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


def make_proc(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    proc.returncode = returncode
    proc.wait = AsyncMock()
    return proc


@pytest.fixture
def backoff(clock) -> BackoffState:
    return BackoffState(clock=clock)


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def client(backoff: BackoffState, sleep: AsyncMock) -> GhClient:
    """Create a GhClient with an in-memory backoff and a fake sleep."""
    return GhClient(SyncConfig(), backoff, sleep=sleep)


# -----------------------------------------------------------------------------
# Tests for GhClient.run()
# -----------------------------------------------------------------------------


class TestRun:
    """Tests for running single gh commands."""

    @pytest.mark.asyncio
    async def test_parses_json(self, client: GhClient) -> None:
        """Verify JSON output is parsed and args are passed through."""
        spawn = AsyncMock(return_value=make_proc(json.dumps([{"number": 1}])))
        with patch(SUBPROCESS, spawn):
            result = await client.run(["issue", "list", "--limit", 10])

        assert result == [{"number": 1}]
        assert spawn.call_args.args == ("gh", "issue", "list", "--limit", "10")
        assert client.calls == 1

    @pytest.mark.asyncio
    async def test_empty_output_and_text_mode(self, client: GhClient) -> None:
        """Verify empty output is None and parse_json=False returns text."""
        with patch(SUBPROCESS, AsyncMock(side_effect=[make_proc(""), make_proc("https://x/issues/3\n")])):
            assert await client.run(["api", "x"]) is None
            assert await client.run(["issue", "create"], parse_json=False) == "https://x/issues/3"

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, client: GhClient) -> None:
        """Verify malformed JSON output raises GhCommandError."""
        with patch(SUBPROCESS, AsyncMock(return_value=make_proc("not json"))):
            with pytest.raises(GhCommandError, match="invalid JSON"):
                await client.run(["issue", "list"])

    @pytest.mark.asyncio
    async def test_token_is_exported(self, backoff: BackoffState) -> None:
        """Verify an explicit token is passed to gh as GH_TOKEN."""
        client = GhClient(SyncConfig(), backoff, token="ghp_test")
        spawn = AsyncMock(return_value=make_proc("{}"))
        with patch(SUBPROCESS, spawn):
            await client.run(["api", "user"])

        assert spawn.call_args.kwargs["env"]["GH_TOKEN"] == "ghp_test"

    @pytest.mark.asyncio
    async def test_rate_limit_sets_shared_deadline(self, client: GhClient, backoff: BackoffState) -> None:
        """Verify a rate-limit response blocks every later call."""
        spawn = AsyncMock(return_value=make_proc(stderr="API rate limit exceeded", returncode=1))
        with patch(SUBPROCESS, spawn):
            with pytest.raises(RateLimitedError) as exc_info:
                await client.run(["issue", "list"])
            assert exc_info.value.retry_after == 60.0
            assert backoff.rate_limit_remaining() == pytest.approx(60.0)

            with pytest.raises(RateLimitedError):
                await client.run(["issue", "list"])

        assert spawn.call_count == 1

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, client: GhClient, sleep: AsyncMock) -> None:
        """Verify transient failures retry on the configured delays."""
        procs = [make_proc(stderr="HTTP 502: Bad Gateway", returncode=1), make_proc("[]")]
        with patch(SUBPROCESS, AsyncMock(side_effect=procs)):
            assert await client.run(["issue", "list"]) == []

        sleep.assert_awaited_once_with(2.0)
        assert client.calls == 2

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(self, client: GhClient, sleep: AsyncMock) -> None:
        """Verify the last transient failure is raised after all delays."""
        procs = [make_proc(stderr="HTTP 503", returncode=1) for _ in range(4)]
        with patch(SUBPROCESS, AsyncMock(side_effect=procs)):
            with pytest.raises(GhCommandError):
                await client.run(["issue", "list"])

        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_permanent_error(self, client: GhClient, sleep: AsyncMock) -> None:
        """Verify non-transient failures raise immediately with stderr."""
        with patch(SUBPROCESS, AsyncMock(return_value=make_proc(stderr="HTTP 404: Not Found", returncode=1))):
            with pytest.raises(GhCommandError) as exc_info:
                await client.run(["issue", "view", "9"])

        assert exc_info.value.returncode == 1
        assert "HTTP 404" in str(exc_info.value)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_binary(self, client: GhClient) -> None:
        """Verify a missing gh executable becomes GhCommandError."""
        with patch(SUBPROCESS, AsyncMock(side_effect=FileNotFoundError("gh"))):
            with pytest.raises(GhCommandError, match="not installed") as exc_info:
                await client.run(["issue", "list"])

        assert is_not_found_error(exc_info.value) is False

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, backoff: BackoffState) -> None:
        """Verify a timed-out command is killed and reported."""
        client = GhClient(SyncConfig(transient_retry_delays=()), backoff)
        proc = make_proc()
        proc.communicate = AsyncMock(side_effect=asyncio.TimeoutError())
        with patch(SUBPROCESS, AsyncMock(return_value=proc)):
            with pytest.raises(GhCommandError, match="timed out"):
                await client.run(["issue", "list"], timeout=1)

        proc.kill.assert_called_once()


# -----------------------------------------------------------------------------
# Tests for GhClient.run_project_command()
# -----------------------------------------------------------------------------


def owner_args(owner):
    args = ["project", "item-list", "7", "--format", "json"]
    return args + ["--owner", owner] if owner else args


class TestRunProjectCommand:
    """Tests for owner rotation and persisted command backoff."""

    @pytest.mark.asyncio
    async def test_rotates_owner_on_owner_type_error(self, client: GhClient) -> None:
        """Verify owner-type errors move on to the next candidate."""
        client.run = AsyncMock(side_effect=[GhCommandError("x", stderr="unknown owner type"), {"items": []}])

        result = await client.run_project_command("items:7", owner_args, ["acme-org", "acme"])

        assert result == {"items": []}
        called_with = [c.args[0] for c in client.run.await_args_list]
        assert called_with[0][-1] == "acme-org"
        assert called_with[1][-1] == "acme"

    @pytest.mark.asyncio
    async def test_remembers_working_owner(self, client: GhClient) -> None:
        """Verify the owner that worked is tried first next time."""
        client.run = AsyncMock(side_effect=[GhCommandError("x", stderr="unknown owner type"), [], []])

        await client.run_project_command("items:7", owner_args, ["acme-org", "acme"])
        await client.run_project_command("items:7", owner_args, ["acme-org", "acme"])

        assert client.run.await_args_list[2].args[0][-1] == "acme"

    @pytest.mark.asyncio
    async def test_ownerless_fallback(self, client: GhClient) -> None:
        """Verify gh is finally run without --owner."""
        client.run = AsyncMock(side_effect=[GhCommandError("x", stderr="unknown owner type"), []])

        await client.run_project_command("items:7", owner_args, ["acme", None])

        assert "--owner" not in client.run.await_args_list[1].args[0]

    @pytest.mark.asyncio
    async def test_all_owners_rejected_opens_backoff(self, client: GhClient, backoff: BackoffState) -> None:
        """Verify exhausting owners backs the command off."""
        client.run = AsyncMock(side_effect=GhCommandError("x", stderr="unknown owner type"))

        with pytest.raises(GhCommandError, match="no candidate owner"):
            await client.run_project_command("items:7", owner_args, ["acme"])

        assert backoff.commands["items:7"]["reason"] == "owner_type"
        assert backoff.command_backoff_remaining("items:7") == pytest.approx(300.0)

        calls = client.run.await_count
        with pytest.raises(CommandBackoffError):
            await client.run_project_command("items:7", owner_args, ["acme"])
        assert client.run.await_count == calls

    @pytest.mark.asyncio
    async def test_other_error_opens_backoff(self, client: GhClient, backoff: BackoffState) -> None:
        """Verify a non-owner failure backs off and re-raises."""
        client.run = AsyncMock(side_effect=GhCommandError("x", stderr="HTTP 500"))

        with pytest.raises(GhCommandError):
            await client.run_project_command("items:7", owner_args, ["acme"])

        assert backoff.commands["items:7"]["reason"] == "error"
        assert client.run.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_opens_backoff(self, client: GhClient, backoff: BackoffState) -> None:
        """Verify a rate limit backs the command off and propagates."""
        client.run = AsyncMock(side_effect=RateLimitedError("limited", retry_after=60))

        with pytest.raises(RateLimitedError):
            await client.run_project_command("items:7", owner_args, ["acme"])

        assert backoff.commands["items:7"]["reason"] == "rate_limit"

    @pytest.mark.asyncio
    async def test_success_clears_backoff(self, client: GhClient, backoff: BackoffState, clock) -> None:
        """Verify success after the window forgets earlier failures."""
        backoff.record_command_failure("items:7", backoff_seconds=10)
        clock.advance(11)
        client.run = AsyncMock(return_value=[])

        await client.run_project_command("items:7", owner_args, ["acme"])

        assert backoff.command_failures("items:7") == 0


# -----------------------------------------------------------------------------
# Tests for resolve_github_token()
# -----------------------------------------------------------------------------


class TestResolveGithubToken:
    """Tests for the token precedence chain."""

    @pytest.mark.asyncio
    async def test_oauth_env_first(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify the OAuth user token beats everything else."""
        monkeypatch.setenv("AGENT_FLEET_GITHUB_USER_TOKEN", "oauth-token")
        monkeypatch.setenv("GITHUB_TOKEN", "env-token")

        token = await resolve_github_token()

        assert (token.token, token.source) == ("oauth-token", "oauth")

    @pytest.mark.asyncio
    async def test_saved_oauth_state(self, tmp_path: Path, clock) -> None:
        """Verify an unexpired saved token is used."""
        (tmp_path / "github-auth-state.json").write_text(
            json.dumps({"accessToken": "saved", "expiresAt": clock.now + 100})
        )

        token = await resolve_github_token(state_dir=tmp_path, clock=clock)

        assert (token.token, token.source) == ("saved", "oauth")

    @pytest.mark.asyncio
    async def test_expired_saved_state_falls_through(
        self, tmp_path: Path, clock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Verify an expired saved token is skipped."""
        (tmp_path / "github-auth-state.json").write_text(
            json.dumps({"accessToken": "saved", "expiresAt": clock.now - 1})
        )
        monkeypatch.setenv("AGENT_FLEET_GITHUB_INSTALLATION_TOKEN", "install")

        token = await resolve_github_token(state_dir=tmp_path, clock=clock)

        assert (token.token, token.source) == ("install", "installation")

    @pytest.mark.asyncio
    async def test_gh_cli_token(self) -> None:
        """Verify `gh auth token` output is used before env tokens."""
        with patch(SUBPROCESS, AsyncMock(return_value=make_proc("cli-token\n"))):
            token = await resolve_github_token()

        assert (token.token, token.source) == ("cli-token", "gh-cli")

    @pytest.mark.asyncio
    async def test_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify GITHUB_TOKEN is used when gh has no token."""
        monkeypatch.setenv("GH_TOKEN", "env-token")
        with patch(SUBPROCESS, AsyncMock(return_value=make_proc(stderr="not logged in", returncode=1))):
            token = await resolve_github_token()

        assert (token.token, token.source) == ("env-token", "env")

    @pytest.mark.asyncio
    async def test_nothing_available(self) -> None:
        """Verify None when no source yields a token."""
        with patch(SUBPROCESS, AsyncMock(side_effect=FileNotFoundError("gh"))):
            assert await resolve_github_token() is None
