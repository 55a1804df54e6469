"""Tests for verification checks."""

import asyncio
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from agentloop.config import VerificationConfig
from agentloop.process_registry import ProcessRegistry
from agentloop.progress import ProgressLog
from agentloop.verification import (
    CheckResult,
    VerificationHandler,
    VerificationResult,
    format_verification_result,
    generate_verification_retry_context,
    run_check,
    run_verification,
)


class TestRunCheck:
    """Tests for run_check()."""

    @pytest.mark.asyncio
    async def test_passing_command(self):
        result = await run_check("build", "echo built")

        assert result.passed
        assert result.output == "built"

    @pytest.mark.asyncio
    async def test_failing_command_includes_stderr(self):
        result = await run_check("test", "echo out; echo err >&2; exit 2")

        assert not result.passed
        assert result.output == "out\n\nerr"

    @pytest.mark.asyncio
    async def test_empty_command(self):
        result = await run_check("lint", "   ")

        assert not result.passed
        assert "empty command" in result.output

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await run_check("test", "exec sleep 30", timeout_seconds=0.2)

        assert not result.passed
        assert result.output == "Check timed out after 0.2 seconds"

    @pytest.mark.asyncio
    async def test_output_keeps_tail(self):
        result = await run_check("build", "yes x | head -n 4000")

        assert len(result.output) == 5000
        assert result.output.endswith("x")


class TestRunVerification:
    """Tests for run_verification()."""

    @pytest.mark.asyncio
    async def test_disabled_passes(self):
        result = await run_verification(VerificationConfig(enabled=False, test_command="false"))

        assert result.passed
        assert result.checks == []

    @pytest.mark.asyncio
    async def test_runs_checks_in_order(self):
        config = VerificationConfig(
            enabled=True,
            build_command="true",
            test_command="false",
            custom_checks=["true", "false"],
        )

        result = await run_verification(config)

        assert [c.name for c in result.checks] == ["build", "test", "custom-1", "custom-2"]
        assert result.failed_checks == ["test", "custom-2"]
        assert not result.passed


class TestAbort:
    """Tests for stopping checks through the process registry."""

    @pytest.mark.asyncio
    async def test_abort_kills_running_check(self):
        registry = ProcessRegistry()
        asyncio.get_running_loop().call_later(0.2, registry.kill_all)

        start = time.monotonic()
        result = await run_check("test", "sleep 30; echo done", registry=registry)

        assert result.aborted
        assert not result.passed
        assert result.output == "Check aborted"
        assert time.monotonic() - start < 5
        assert registry.active_ids() == []

    @pytest.mark.asyncio
    async def test_check_is_registered_while_running(self):
        registry = ProcessRegistry()
        seen = []
        asyncio.get_running_loop().call_later(
            0.2, lambda: seen.append(registry.active_ids())
        )

        result = await run_check("build", "sleep 0.5", registry=registry)

        assert result.passed
        assert seen == [["verification:build"]]
        assert registry.get_process("verification:build") is None

    @pytest.mark.asyncio
    async def test_aborted_registry_skips_check(self):
        registry = ProcessRegistry()
        registry.kill_all()

        result = await run_check("lint", "true", registry=registry)

        assert result.aborted
        assert result.duration_ms == 0

    @pytest.mark.asyncio
    async def test_abort_ends_verification_run(self):
        registry = ProcessRegistry()
        config = VerificationConfig(enabled=True, build_command="sleep 30", test_command="true")
        asyncio.get_running_loop().call_later(0.2, registry.kill_all)

        result = await run_verification(config, registry)

        assert result.aborted
        assert [c.name for c in result.checks] == ["build"]

    @pytest.mark.asyncio
    async def test_timeout_kills_whole_shell_pipeline(self):
        """Children of the shell are killed with it, so the timeout is honored."""
        start = time.monotonic()
        result = await run_check("test", "sleep 30 | cat", timeout_seconds=0.2)

        assert not result.passed
        assert not result.aborted
        assert time.monotonic() - start < 5


class TestFormatting:
    """Tests for result formatting and retry context."""

    def make_failed(self) -> VerificationResult:
        return VerificationResult(
            passed=False,
            checks=[
                CheckResult("build", True, "ok", 10),
                CheckResult("test", False, "\n".join(f"line {i}" for i in range(8)), 20),
            ],
            failed_checks=["test"],
            total_duration_ms=30,
        )

    def test_format_result(self):
        text = format_verification_result(self.make_failed())

        assert "  PASS: build (10ms)" in text
        assert "  FAIL: test (20ms)" in text
        assert "    line 4" in text
        assert "    line 5" not in text
        assert "...(truncated)" in text
        assert "Status: FAILED" in text

    def test_format_without_checks(self):
        text = format_verification_result(VerificationResult(passed=True))

        assert "No verification checks configured" in text

    def test_retry_context(self):
        context = generate_verification_retry_context(self.make_failed())

        assert context.startswith("## Verification Failed")
        assert "### test check failed" in context
        assert "### build check failed" not in context

    def test_retry_context_empty_when_passed(self):
        assert generate_verification_retry_context(VerificationResult(passed=True)) == ""


class TestVerificationHandler:
    """Tests for VerificationHandler."""

    @pytest.mark.asyncio
    async def test_run_records_result(self, tmp_path: Path):
        progress = ProgressLog(tmp_path)
        on_state_change = MagicMock()
        handler = VerificationHandler(progress, on_state_change)

        result = await handler.run(VerificationConfig(enabled=True, build_command="true"))

        assert result.passed
        assert handler.last_result is result
        assert not handler.is_running
        assert [c.args[0] for c in on_state_change.call_args_list] == [True, False]
        assert "=== Verification Results ===" in progress.path.read_text()

    @pytest.mark.asyncio
    async def test_reset(self):
        handler = VerificationHandler()
        await handler.run(VerificationConfig(enabled=False))

        handler.reset()

        assert handler.last_result is None
