"""Persisted backoff windows for board API calls.

One ``BackoffState`` is shared by every client in a process. It is saved
to a JSON file so a restart does not forget an established window. Other
processes may write the same file: ``save`` re-reads it first and merges,
and the last writer wins for any key both touched. Windows are advisory,
so this is good enough.
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Union

from agent_fleet.monitoring.logging import get_logger
from agent_fleet.storage.state_files import read_json_state, write_json_state

logger = get_logger(__name__)

STATE_VERSION = 1


def normalize_command_key(key: str) -> str:
    """Canonical form of a command backoff key (whitespace-insensitive, lower-case)."""
    return re.sub(r"\s+", "", str(key or "")).lower()


def warning_key(role: str, name: str, reason: str) -> str:
    return f"{role}:{name}:{reason}"


class BackoffState:
    """Rate-limit deadline, per-command failure windows, and warning throttle."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        clock: Callable[[], float] = time.time,
        warning_throttle_seconds: float = 60.0,
        max_backoff_seconds: float = 1800.0,
    ):
        self.path = Path(path) if path else None
        self._clock = clock
        self.warning_throttle_seconds = warning_throttle_seconds
        self.max_backoff_seconds = max_backoff_seconds

        self.rate_limit_until = 0.0
        self.commands: Dict[str, Dict[str, Any]] = {}
        self.payload_warnings: Dict[str, float] = {}
        self._cleared: Set[str] = set()
        self.load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _read_disk(self) -> Dict[str, Any]:
        if self.path is None:
            return {}
        return read_json_state(self.path, {})

    def load(self) -> None:
        """Merge persisted state into memory. Unreadable files are ignored."""
        data = self._read_disk()
        self._merge(data)

    def _merge(self, data: Dict[str, Any]) -> None:
        try:
            disk_until = float(data.get("rate_limit_until") or 0.0)
        except (TypeError, ValueError):
            disk_until = 0.0
        self.rate_limit_until = max(self.rate_limit_until, disk_until)

        commands = data.get("commands")
        if isinstance(commands, dict):
            for key, entry in commands.items():
                key = normalize_command_key(key)
                if key in self.commands or key in self._cleared or not isinstance(entry, dict):
                    continue
                try:
                    self.commands[key] = {
                        "failures": int(entry.get("failures") or 0),
                        "until": float(entry.get("until") or 0.0),
                        "reason": str(entry.get("reason") or "error"),
                        "last_error": str(entry.get("last_error") or "")[:500],
                    }
                except (TypeError, ValueError):
                    continue

        warnings = data.get("payload_warnings")
        if isinstance(warnings, dict):
            for key, at in warnings.items():
                try:
                    self.payload_warnings[key] = max(self.payload_warnings.get(key, 0.0), float(at))
                except (TypeError, ValueError):
                    continue

    def save(self) -> bool:
        """Refresh from disk, merge, and write back."""
        if self.path is None:
            return False
        self._merge(self._read_disk())
        self._prune()
        ok = write_json_state(
            self.path,
            {
                "version": STATE_VERSION,
                "rate_limit_until": self.rate_limit_until,
                "commands": self.commands,
                "payload_warnings": self.payload_warnings,
            },
        )
        if ok:
            self._cleared.clear()
        return ok

    def _prune(self) -> None:
        now = self._clock()
        if self.rate_limit_until and self.rate_limit_until <= now:
            self.rate_limit_until = 0.0
        horizon = now - max(self.warning_throttle_seconds, 1.0) * 10
        self.payload_warnings = {k: at for k, at in self.payload_warnings.items() if at > horizon}

    def reset(self, *, persist: bool = True) -> None:
        """Forget every window. Test and operator hook."""
        self.rate_limit_until = 0.0
        self._cleared.update(self.commands)
        self.commands = {}
        self.payload_warnings = {}
        if persist and self.path is not None:
            write_json_state(
                self.path,
                {"version": STATE_VERSION, "rate_limit_until": 0.0, "commands": {}, "payload_warnings": {}},
            )
            self._cleared.clear()
        logger.info("backoff.reset", path=str(self.path) if self.path else None)

    # -------------------------------------------------------------------------
    # Rate limit
    # -------------------------------------------------------------------------

    def record_rate_limit(self, retry_after_seconds: float) -> float:
        """Extend the process-wide deadline. Returns the deadline."""
        deadline = self._clock() + max(retry_after_seconds, 0.0)
        if deadline > self.rate_limit_until:
            self.rate_limit_until = deadline
            logger.warning("backoff.rate_limited", retry_after_seconds=round(retry_after_seconds, 1))
            self.save()
        return self.rate_limit_until

    def rate_limit_remaining(self) -> float:
        return max(0.0, self.rate_limit_until - self._clock())

    # -------------------------------------------------------------------------
    # Command failures
    # -------------------------------------------------------------------------

    def record_command_failure(
        self,
        key: str,
        *,
        backoff_seconds: float,
        error: str = "",
        reason: str = "error",
    ) -> float:
        """Count a failure of ``key`` and open a window that doubles per failure."""
        key = normalize_command_key(key)
        entry = self.commands.get(key) or {"failures": 0, "until": 0.0}
        failures = int(entry.get("failures") or 0) + 1
        window = min(backoff_seconds * (2 ** (failures - 1)), max(self.max_backoff_seconds, backoff_seconds))
        until = self._clock() + window
        self.commands[key] = {
            "failures": failures,
            "until": until,
            "reason": reason,
            "last_error": str(error)[:500],
        }
        self._cleared.discard(key)
        logger.info(
            "backoff.command_failed",
            key=key,
            failures=failures,
            reason=reason,
            window_seconds=round(window, 1),
        )
        self.save()
        return until

    def record_command_success(self, key: str) -> None:
        key = normalize_command_key(key)
        if self.commands.pop(key, None) is not None:
            self._cleared.add(key)
            self.save()

    def command_backoff_remaining(self, key: str) -> float:
        entry = self.commands.get(normalize_command_key(key))
        if not entry:
            return 0.0
        return max(0.0, float(entry.get("until") or 0.0) - self._clock())

    def command_failures(self, key: str) -> int:
        entry = self.commands.get(normalize_command_key(key))
        return int(entry.get("failures") or 0) if entry else 0

    # -------------------------------------------------------------------------
    # Warning throttle
    # -------------------------------------------------------------------------

    def should_warn(self, role: str, name: str, reason: str) -> bool:
        """True at most once per throttle window for each ``role:name:reason``."""
        key = warning_key(role, name, reason)
        now = self._clock()
        last = self.payload_warnings.get(key)
        if last is not None and now - last < self.warning_throttle_seconds:
            return False
        self.payload_warnings[key] = now
        return True

    def reset_payload_warnings(self) -> None:
        self.payload_warnings = {}
