"""Executor slot state machine.

A slot moves ``IDLE -> ACTIVE -> (RETRY_PENDING -> ACTIVE)* -> IDLE``. The
return to ``IDLE`` happens in exactly one place, the ``finally`` of
``run_turn``, whatever way the turn ended.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol

from agent_fleet.config import RunnerConfig
from agent_fleet.core.retry import RetryConfig, is_transient_stream_error, stream_retry_delay
from agent_fleet.monitoring.logging import get_logger

logger = get_logger(__name__)


class ExecutorUnavailableError(RuntimeError):
    """No executor transport is configured for this slot."""


class TurnState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    RETRY_PENDING = "retry_pending"


@dataclass
class ExecResult:
    final_response: str
    items: List[Any] = field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None
    status: str = "completed"  # completed | busy | timeout | aborted | stream_failed

    @classmethod
    def coerce(cls, value: Any) -> "ExecResult":
        if isinstance(value, ExecResult):
            return value
        if isinstance(value, Mapping):
            return cls(
                final_response=str(value.get("final_response") or value.get("finalResponse") or ""),
                items=list(value.get("items") or []),
                usage=value.get("usage"),
            )
        return cls(final_response="" if value is None else str(value))


class Executor(Protocol):
    async def exec_prompt(self, message: str, *, timeout: float) -> Any: ...


class TurnRunner:
    """Runs one prompt at a time against an executor, retrying stream faults."""

    def __init__(
        self,
        executor: Optional[Executor] = None,
        config: Optional[RunnerConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.executor = executor
        self.config = config or RunnerConfig()
        self.retry_config = RetryConfig(
            max_retries=self.config.max_stream_retries,
            base_delay_seconds=self.config.stream_retry_base_seconds,
            max_delay_seconds=self.config.stream_retry_max_seconds,
        )
        self._sleep = sleep
        self.state = TurnState.IDLE
        self._inner: Optional["asyncio.Task[Any]"] = None
        self._aborted = False
        self.turns_completed = 0

    @property
    def busy(self) -> bool:
        return self.state != TurnState.IDLE

    async def run_turn(self, message: str, *, timeout: Optional[float] = None) -> ExecResult:
        """Run ``message`` to completion.

        Timeouts, user aborts and exhausted stream retries come back as an
        ``ExecResult`` with a non-``completed`` status. Other executor errors
        propagate.
        """
        if self.executor is None:
            raise ExecutorUnavailableError("no executor configured")
        if self.state != TurnState.IDLE:
            logger.info("runner.busy", state=self.state.value)
            return ExecResult("Agent is busy with another turn.", status="busy")

        timeout = timeout or self.config.turn_timeout_seconds
        self.state = TurnState.ACTIVE
        self._aborted = False
        attempt = 0
        try:
            while True:
                self._inner = asyncio.ensure_future(self.executor.exec_prompt(message, timeout=timeout))
                try:
                    result = await asyncio.wait_for(self._inner, timeout)
                    self.turns_completed += 1
                    return ExecResult.coerce(result)
                except asyncio.TimeoutError:
                    logger.warning("runner.turn.timeout", timeout_seconds=timeout)
                    await self._abort_executor("timeout")
                    return ExecResult(f"Agent timed out after {timeout:.0f}s", status="timeout")
                except asyncio.CancelledError:
                    if self._aborted:
                        return ExecResult("Agent stopped by user.", status="aborted")
                    raise
                except Exception as e:
                    if self._aborted:
                        return ExecResult("Agent stopped by user.", status="aborted")
                    if not is_transient_stream_error(e):
                        raise
                    if attempt >= self.retry_config.max_retries:
                        logger.error("runner.stream.exhausted", attempts=attempt + 1, error=str(e))
                        return ExecResult(
                            f"Stream disconnected after {attempt} retries: {e}",
                            status="stream_failed",
                        )
                    delay = stream_retry_delay(attempt, self.retry_config)
                    attempt += 1
                    self.state = TurnState.RETRY_PENDING
                    logger.warning(
                        "runner.stream.retry",
                        attempt=attempt,
                        max_retries=self.retry_config.max_retries,
                        delay_seconds=round(delay, 2),
                        error=str(e),
                    )
                    await self._reset_session()
                    await self._sleep(delay)
                    if self._aborted:
                        return ExecResult("Agent stopped by user.", status="aborted")
                    self.state = TurnState.ACTIVE
        finally:
            self._inner = None
            self.state = TurnState.IDLE

    async def cancel(self, reason: str = "user_stop") -> bool:
        """Abort the running turn. Returns False when the slot is idle."""
        if self.state == TurnState.IDLE:
            return False
        self._aborted = True
        await self._abort_executor(reason)
        if self._inner is not None and not self._inner.done():
            self._inner.cancel()
        logger.info("runner.turn.cancelled", reason=reason)
        return True

    async def _abort_executor(self, reason: str) -> None:
        abort = getattr(self.executor, "abort", None)
        if abort is None:
            return
        try:
            outcome = abort(reason)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning("runner.abort.failed", reason=reason, error=str(e))

    async def _reset_session(self) -> None:
        reset = getattr(self.executor, "reset_session", None)
        if reset is None:
            return
        outcome = reset()
        if inspect.isawaitable(outcome):
            await outcome
