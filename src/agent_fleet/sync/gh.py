"""Async wrapper around the ``gh`` CLI with rate-limit and backoff handling."""

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from agent_fleet.config import SyncConfig, env_str
from agent_fleet.monitoring.logging import get_logger
from agent_fleet.storage.state_files import read_json_state
from agent_fleet.sync.backoff import BackoffState
from agent_fleet.sync.errors import (
    CommandBackoffError,
    GhCommandError,
    RateLimitedError,
    is_owner_type_error,
    is_rate_limit_error,
    is_transient_error,
)

logger = get_logger(__name__)

GH_AUTH_TOKEN_TIMEOUT_SECONDS = 5.0
OUTPUT_PREVIEW_CHARS = 300


@dataclass(frozen=True)
class GitHubToken:
    token: str
    source: str  # oauth | installation | gh-cli | env


def _saved_oauth_token(path: Path, now: float) -> Optional[str]:
    data = read_json_state(path, {})
    token = data.get("accessToken") or data.get("access_token")
    if not token:
        return None
    expires = data.get("expiresAt") or data.get("expires_at")
    if isinstance(expires, (int, float)) and expires < now:
        return None
    return str(token)


async def _gh_cli_token(executable: str = "gh") -> Optional[str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            "auth",
            "token",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError:
        return None
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), GH_AUTH_TOKEN_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return None
    if proc.returncode != 0:
        return None
    return stdout.decode(errors="replace").strip() or None


async def resolve_github_token(
    *,
    state_dir: Optional[Path] = None,
    executable: str = "gh",
    clock: Callable[[], float] = time.time,
) -> Optional[GitHubToken]:
    """Best available token, or None.

    Order: OAuth user token (env, then the saved auth-state file), app
    installation token, ``gh auth token``, then ``GITHUB_TOKEN`` /
    ``GH_TOKEN`` / ``GITHUB_PAT``.
    """
    oauth = env_str("AGENT_FLEET_GITHUB_USER_TOKEN")
    if not oauth and state_dir is not None:
        oauth = _saved_oauth_token(Path(state_dir) / "github-auth-state.json", clock())
    if oauth:
        return GitHubToken(oauth, "oauth")

    installation = env_str("AGENT_FLEET_GITHUB_INSTALLATION_TOKEN")
    if installation:
        return GitHubToken(installation, "installation")

    cli_token = await _gh_cli_token(executable)
    if cli_token:
        return GitHubToken(cli_token, "gh-cli")

    for name in ("GITHUB_TOKEN", "GH_TOKEN", "GITHUB_PAT"):
        value = env_str(name)
        if value:
            return GitHubToken(value, "env")
    return None


def _preview(text: str) -> str:
    text = text.strip()
    return text if len(text) <= OUTPUT_PREVIEW_CHARS else text[:OUTPUT_PREVIEW_CHARS] + "..."


class GhClient:
    """Runs ``gh`` subcommands.

    Every call first checks the shared rate-limit deadline in ``backoff``.
    A rate-limit response extends that deadline for all callers; transient
    failures are retried on ``config.transient_retry_delays``.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        backoff: Optional[BackoffState] = None,
        *,
        executable: str = "gh",
        token: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or SyncConfig()
        self.backoff = backoff or BackoffState(
            warning_throttle_seconds=self.config.warning_throttle_seconds,
            max_backoff_seconds=self.config.command_backoff_max_seconds,
        )
        self.executable = executable
        self.token = token
        self._sleep = sleep
        self._preferred_owner: Dict[str, Optional[str]] = {}
        self.calls = 0

    def _env(self) -> Optional[Mapping[str, str]]:
        if not self.token:
            return None
        env = dict(os.environ)
        env["GH_TOKEN"] = self.token
        return env

    async def _exec(self, args: Sequence[str], timeout: float) -> Tuple[int, str, str]:
        proc = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env(),
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return proc.returncode or 0, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def run(self, args: Sequence[str], *, parse_json: bool = True, timeout: Optional[float] = None) -> Any:
        """Run ``gh <args>``; returns parsed JSON (None for empty output) or text."""
        args = [str(a) for a in args]
        remaining = self.backoff.rate_limit_remaining()
        if remaining > 0:
            raise RateLimitedError(
                f"gh rate limited for another {remaining:.0f}s",
                retry_after=remaining,
                args=args,
            )

        timeout = timeout or self.config.command_timeout_seconds
        delays = list(self.config.transient_retry_delays)
        attempt = 0
        while True:
            self.calls += 1
            try:
                returncode, stdout, stderr = await self._exec(args, timeout)
            except FileNotFoundError as e:
                raise GhCommandError(f"{self.executable} executable is not installed or not on PATH", args=args) from e
            except asyncio.TimeoutError:
                returncode, stdout, stderr = -1, "", f"gh command timed out after {timeout:.0f}s (etimedout)"

            if returncode == 0:
                return self._parse(stdout, args) if parse_json else stdout.strip()

            error_text = stderr.strip() or stdout.strip() or f"exit status {returncode}"
            if is_rate_limit_error(error_text):
                retry_after = self.config.rate_limit_retry_seconds
                self.backoff.record_rate_limit(retry_after)
                raise RateLimitedError(
                    "gh rate limited",
                    retry_after=retry_after,
                    args=args,
                    stderr=error_text,
                    returncode=returncode,
                )
            if is_transient_error(error_text) and attempt < len(delays):
                delay = delays[attempt]
                attempt += 1
                logger.warning(
                    "gh.transient_retry",
                    command=" ".join(args[:2]),
                    attempt=attempt,
                    delay_seconds=delay,
                    error=_preview(error_text),
                )
                await self._sleep(delay)
                continue
            raise GhCommandError(
                f"gh {' '.join(args[:2])} failed",
                args=args,
                stderr=error_text,
                returncode=returncode,
            )

    @staticmethod
    def _parse(stdout: str, args: Sequence[str]) -> Any:
        text = stdout.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise GhCommandError(
                f"gh {' '.join(args[:2])} returned invalid JSON",
                args=args,
                stderr=_preview(text),
            ) from e

    def _owner_candidates(self, key: str, owners: Sequence[Optional[str]]) -> List[Optional[str]]:
        candidates: List[Optional[str]] = []
        preferred = self._preferred_owner.get(key, "")
        if preferred != "":
            candidates.append(preferred)
        for owner in owners:
            owner = (owner or "").strip() or None
            if owner and owner not in candidates:
                candidates.append(owner)
        # Let gh infer the owner as a last resort
        if None not in candidates:
            candidates.append(None)
        return candidates

    async def run_project_command(
        self,
        key: str,
        build_args: Callable[[Optional[str]], Sequence[str]],
        owners: Sequence[Optional[str]],
        *,
        parse_json: bool = True,
    ) -> Any:
        """Run a project command, rotating owners on owner-type errors.

        ``build_args(owner)`` builds the argument list; ``owner`` is None for
        the ownerless fallback. Failures open a persisted backoff window for
        ``key`` so a broken project does not hammer the API every cycle.
        """
        remaining = self.backoff.command_backoff_remaining(key)
        if remaining > 0:
            raise CommandBackoffError(
                f"project command {key!r} backing off for {remaining:.0f}s",
                retry_after=remaining,
            )

        last_error: Optional[GhCommandError] = None
        for owner in self._owner_candidates(key, owners):
            try:
                result = await self.run(build_args(owner), parse_json=parse_json)
            except RateLimitedError as e:
                self.backoff.record_command_failure(
                    key,
                    backoff_seconds=self.config.project_rate_limit_backoff_seconds,
                    error=str(e),
                    reason="rate_limit",
                )
                raise
            except GhCommandError as e:
                if not is_owner_type_error(e):
                    self.backoff.record_command_failure(
                        key,
                        backoff_seconds=self.config.command_backoff_seconds,
                        error=str(e),
                        reason="error",
                    )
                    raise
                logger.info("gh.owner_rejected", key=key, owner=owner, error=_preview(str(e)))
                last_error = e
                continue
            self._preferred_owner[key] = owner
            self.backoff.record_command_success(key)
            return result

        self.backoff.record_command_failure(
            key,
            backoff_seconds=self.config.owner_retry_seconds,
            error=str(last_error) if last_error else "",
            reason="owner_type",
        )
        raise GhCommandError(
            f"no candidate owner accepted project command {key!r}",
            stderr=last_error.stderr if last_error else "",
        )
