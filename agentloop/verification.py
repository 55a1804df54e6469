"""Build, lint and test checks run after an iteration.

A failed check turns an iteration the agent considered finished into a
verification failure. The failing output is then fed back to the agent in
the next prompt.

Checks run in their own process group and, when a process registry is
given, are tracked under "verification:<name>" so that a stop request
kills the whole check.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from agentloop.config import VerificationConfig
from agentloop.process_registry import ProcessRegistry
from agentloop.progress import ProgressLog

logger = logging.getLogger(__name__)

OUTPUT_MAX_LENGTH = 5000
CONTEXT_MAX_LENGTH = 2000
FORMAT_OUTPUT_LINES = 5
VERIFICATION_PROCESS_PREFIX = "verification:"
ABORTED_CHECK_MESSAGE = "Check aborted"


@dataclass
class CheckResult:
    name: str
    passed: bool
    output: str
    duration_ms: int
    aborted: bool = False


@dataclass
class VerificationResult:
    passed: bool
    checks: list[CheckResult] = field(default_factory=list)
    failed_checks: list[str] = field(default_factory=list)
    total_duration_ms: int = 0
    aborted: bool = False


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_check(
    name: str,
    command: str,
    timeout_seconds: float = 600,
    registry: ProcessRegistry | None = None,
) -> CheckResult:
    """Run one shell command and report whether it exited with 0.

    Output is stdout followed by stderr, trimmed and cut to its last
    OUTPUT_MAX_LENGTH characters. A command that cannot be started or
    exceeds timeout_seconds fails the check.

    Args:
        name: Check name, also used for the registry id
        command: Shell command line
        timeout_seconds: Time after which the check is killed
        registry: When given, the check is registered and an abort of its
            id (or a global abort) kills it
    """
    start = time.monotonic()
    if not command.strip():
        return CheckResult(name, False, "Invalid command: empty command string", 0)

    process_id = f"{VERIFICATION_PROCESS_PREFIX}{name}"
    if registry is not None and registry.is_aborted(process_id):
        return CheckResult(name, False, ABORTED_CHECK_MESSAGE, 0, aborted=True)

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return CheckResult(name, False, f"Failed to execute command: {e}", _elapsed_ms(start))

    output_task = asyncio.ensure_future(process.communicate())
    waiters: list[asyncio.Future] = [output_task]
    if registry is not None:
        registry.set_process(process_id, process)
        waiters.append(
            asyncio.ensure_future(registry.wait_for_abort(process_id, timeout_seconds))
        )

    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout_seconds, return_when=asyncio.FIRST_COMPLETED
        )
        finished = output_task in done
        if not finished:
            _kill_process_group(process)
            await output_task
    finally:
        for waiter in waiters[1:]:
            waiter.cancel()
        if not output_task.done():
            _kill_process_group(process)
            output_task.cancel()
        if registry is not None:
            registry.unregister(process_id, process)

    if not finished:
        if registry is not None and registry.is_aborted(process_id):
            logger.info(f"{name} check aborted")
            return CheckResult(
                name, False, ABORTED_CHECK_MESSAGE, _elapsed_ms(start), aborted=True
            )
        return CheckResult(
            name,
            False,
            f"Check timed out after {timeout_seconds:g} seconds",
            _elapsed_ms(start),
        )

    stdout, stderr = output_task.result()
    output = stdout.decode(errors="replace")
    error_output = stderr.decode(errors="replace")
    if error_output:
        output += f"\n{error_output}"

    return CheckResult(
        name=name,
        passed=process.returncode == 0,
        output=output.strip()[-OUTPUT_MAX_LENGTH:],
        duration_ms=_elapsed_ms(start),
    )


async def run_verification(
    config: VerificationConfig, registry: ProcessRegistry | None = None
) -> VerificationResult:
    """Run the configured checks in order: build, lint, test, then custom-N.

    An aborted check ends the run; the checks after it are skipped and the
    result is marked aborted.
    """
    if not config.enabled:
        return VerificationResult(passed=True)

    start = time.monotonic()
    commands = [
        ("build", config.build_command),
        ("lint", config.lint_command),
        ("test", config.test_command),
    ]
    commands += [
        (f"custom-{index}", command) for index, command in enumerate(config.custom_checks, 1)
    ]

    checks = []
    aborted = False
    for name, command in commands:
        if not command:
            continue
        logger.info(f"Running {name} check: {command}")
        check = await run_check(name, command, config.timeout_seconds, registry)
        checks.append(check)
        if check.aborted:
            aborted = True
            break

    failed = [check.name for check in checks if not check.passed]
    return VerificationResult(
        passed=not failed,
        checks=checks,
        failed_checks=failed,
        total_duration_ms=_elapsed_ms(start),
        aborted=aborted,
    )


def format_verification_result(result: VerificationResult) -> str:
    lines = ["=== Verification Results ==="]
    if not result.checks:
        lines.append("No verification checks configured")
        return "\n".join(lines)

    for check in result.checks:
        status = "PASS" if check.passed else "FAIL"
        lines.append(f"  {status}: {check.name} ({check.duration_ms}ms)")
        if not check.passed and check.output:
            output_lines = check.output.split("\n")
            lines += [f"    {line}" for line in output_lines[:FORMAT_OUTPUT_LINES]]
            if len(output_lines) > FORMAT_OUTPUT_LINES:
                lines.append("    ...(truncated)")

    lines += [
        "",
        f"Total: {len(result.checks)} checks, {len(result.failed_checks)} failed",
        f"Duration: {result.total_duration_ms}ms",
        f"Status: {'PASSED' if result.passed else 'FAILED'}",
    ]
    return "\n".join(lines)


def generate_verification_retry_context(result: VerificationResult) -> str:
    """Prompt section describing the failed checks, empty if all passed."""
    if result.passed or not result.failed_checks:
        return ""

    lines = [
        "## Verification Failed",
        "",
        "The previous iteration completed but verification checks failed:",
        "",
    ]
    for check in result.checks:
        if check.passed:
            continue
        lines += [f"### {check.name} check failed", ""]
        if check.output:
            lines += ["```", check.output[:CONTEXT_MAX_LENGTH], "```", ""]

    lines.append("Please fix the issues identified by the verification checks before proceeding.")
    return "\n".join(lines)


class VerificationHandler:
    """Runs verification and remembers the last result.

    Args:
        progress_log: Receives the formatted result of every run
        on_state_change: Called with (is_running, result) before and after a run
        registry: Process registry the checks are tracked in, so they can be
            aborted
    """

    def __init__(
        self,
        progress_log: ProgressLog | None = None,
        on_state_change: Callable[[bool, VerificationResult | None], None] | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.progress_log = progress_log
        self.on_state_change = on_state_change
        self.registry = registry
        self.last_result: VerificationResult | None = None
        self.is_running = False

    def reset(self) -> None:
        self.last_result = None
        self.is_running = False

    async def run(self, config: VerificationConfig) -> VerificationResult:
        self.is_running = True
        if self.on_state_change is not None:
            self.on_state_change(True, None)

        try:
            result = await run_verification(config, self.registry)
        finally:
            self.is_running = False

        self.last_result = result
        if self.on_state_change is not None:
            self.on_state_change(False, result)
        if self.progress_log is not None:
            self.progress_log.append(format_verification_result(result) + "\n")

        if result.aborted:
            logger.info("Verification aborted")
        elif result.passed:
            logger.info("Verification passed")
        else:
            logger.warning(f"Verification failed: {', '.join(result.failed_checks)}")
        return result
