"""Tests for the executor turn runner.

Covers the IDLE/ACTIVE/RETRY_PENDING state machine, stream retries with
session reset, timeouts, user cancellation and result coercion.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_fleet.config import RunnerConfig
from agent_fleet.core.runner import ExecResult, ExecutorUnavailableError, TurnRunner, TurnState


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def executor() -> MagicMock:
    """An executor whose prompt call succeeds immediately."""
    executor = MagicMock()
    executor.exec_prompt = AsyncMock(return_value={"final_response": "done", "items": [1]})
    executor.abort = AsyncMock()
    executor.reset_session = AsyncMock()
    return executor


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def runner(executor: MagicMock, sleep: AsyncMock) -> TurnRunner:
    return TurnRunner(executor, RunnerConfig(max_stream_retries=2), sleep=sleep)


# -----------------------------------------------------------------------------
# Tests for ExecResult
# -----------------------------------------------------------------------------


class TestExecResult:
    """Tests for ExecResult.coerce()."""

    def test_from_mapping(self) -> None:
        """Verify both key spellings are accepted."""
        assert ExecResult.coerce({"finalResponse": "hi"}).final_response == "hi"
        result = ExecResult.coerce({"final_response": "ok", "usage": {"tokens": 3}})
        assert result.usage == {"tokens": 3}
        assert result.status == "completed"

    def test_from_text_and_none(self) -> None:
        """Verify plain values become the response text."""
        assert ExecResult.coerce("text").final_response == "text"
        assert ExecResult.coerce(None).final_response == ""

    def test_passthrough(self) -> None:
        """Verify an ExecResult is returned unchanged."""
        result = ExecResult("x", status="timeout")
        assert ExecResult.coerce(result) is result


# -----------------------------------------------------------------------------
# Tests for run_turn()
# -----------------------------------------------------------------------------


class TestRunTurn:
    """Tests for normal turns and error handling."""

    @pytest.mark.asyncio
    async def test_success(self, runner: TurnRunner, executor: MagicMock) -> None:
        """Verify a completed turn returns the response and goes idle."""
        result = await runner.run_turn("fix the build")

        assert result.final_response == "done"
        assert result.items == [1]
        assert runner.state == TurnState.IDLE
        assert runner.turns_completed == 1
        executor.exec_prompt.assert_awaited_once_with("fix the build", timeout=3600.0)

    @pytest.mark.asyncio
    async def test_no_executor(self) -> None:
        """Verify a slot without an executor refuses to run."""
        with pytest.raises(ExecutorUnavailableError):
            await TurnRunner().run_turn("hi")

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates(self, runner: TurnRunner, executor: MagicMock) -> None:
        """Verify ordinary failures are raised and the slot is released."""
        executor.exec_prompt.side_effect = ValueError("bad prompt")

        with pytest.raises(ValueError):
            await runner.run_turn("hi")

        assert runner.state == TurnState.IDLE
        executor.reset_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_timeout_aborts_executor(self, executor: MagicMock) -> None:
        """Verify a turn past its timeout is aborted and reported."""

        async def slow(message: str, *, timeout: float) -> str:
            await asyncio.sleep(10)
            return "late"

        executor.exec_prompt = slow
        runner = TurnRunner(executor)

        result = await runner.run_turn("hi", timeout=0.05)

        assert result.status == "timeout"
        executor.abort.assert_awaited_once_with("timeout")
        assert runner.state == TurnState.IDLE


class TestStreamRetries:
    """Tests for transient stream fault handling."""

    @pytest.mark.asyncio
    async def test_retry_then_success(self, runner: TurnRunner, executor: MagicMock, sleep: AsyncMock) -> None:
        """Verify a dropped stream resets the session and retries."""
        executor.exec_prompt.side_effect = [RuntimeError("stream disconnected before completion"), "recovered"]

        result = await runner.run_turn("hi")

        assert result.final_response == "recovered"
        executor.reset_session.assert_awaited_once()
        delay = sleep.await_args.args[0]
        assert 2.0 <= delay <= 3.0
        assert runner.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, runner: TurnRunner, executor: MagicMock, sleep: AsyncMock) -> None:
        """Verify the turn gives up after the configured retries."""
        executor.exec_prompt.side_effect = RuntimeError("HTTP 503 from upstream")

        result = await runner.run_turn("hi")

        assert result.status == "stream_failed"
        assert result.final_response.startswith("Stream disconnected after 2 retries")
        assert executor.exec_prompt.await_count == 3
        assert sleep.await_count == 2
        assert runner.turns_completed == 0

    @pytest.mark.asyncio
    async def test_invalid_request_is_not_retried(self, runner: TurnRunner, executor: MagicMock) -> None:
        """Verify a 503 marked invalid_request is treated as permanent."""
        executor.exec_prompt.side_effect = RuntimeError("503 invalid_request_error")

        with pytest.raises(RuntimeError):
            await runner.run_turn("hi")


class TestCancel:
    """Tests for cancel() and the busy guard."""

    @pytest.mark.asyncio
    async def test_cancel_idle(self, runner: TurnRunner) -> None:
        """Verify cancelling an idle slot is a no-op."""
        assert await runner.cancel() is False

    @pytest.mark.asyncio
    async def test_busy_then_cancel(self, executor: MagicMock) -> None:
        """Verify a second turn is refused and cancel aborts the first."""
        gate = asyncio.Event()

        async def blocked(message: str, *, timeout: float) -> str:
            await gate.wait()
            return "never"

        executor.exec_prompt = blocked
        runner = TurnRunner(executor)

        first = asyncio.create_task(runner.run_turn("long job"))
        await asyncio.sleep(0.01)

        assert runner.busy is True
        second = await runner.run_turn("another")
        assert second.status == "busy"

        assert await runner.cancel("user_stop") is True
        result = await first

        assert result.status == "aborted"
        executor.abort.assert_awaited_once_with("user_stop")
        assert runner.busy is False
