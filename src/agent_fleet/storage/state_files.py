"""Best-effort JSON state files shared across restarts and processes."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)


def read_json_state(path: Union[str, Path], default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Read a JSON object from ``path``.

    Missing, unreadable, or malformed files yield a copy of ``default``.
    """
    fallback = dict(default or {})
    state_path = Path(path)
    try:
        raw = state_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return fallback
    except OSError as exc:
        logger.debug("state_file.read_failed", path=str(state_path), error=str(exc))
        return fallback

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.debug("state_file.parse_failed", path=str(state_path), error=str(exc))
        return fallback

    if not isinstance(data, dict):
        logger.debug("state_file.not_an_object", path=str(state_path), kind=type(data).__name__)
        return fallback
    return data


def write_json_state(path: Union[str, Path], data: Dict[str, Any]) -> bool:
    """Atomically replace ``path`` with ``data``. Returns False on failure."""
    state_path = Path(path)
    tmp_name: Optional[str] = None
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{state_path.name}.", dir=state_path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True, default=str)
        os.replace(tmp_name, state_path)
        return True
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("state_file.write_failed", path=str(state_path), error=str(exc))
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
        return False
