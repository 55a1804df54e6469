"""Agent subprocess execution with timeouts, stall detection and retries.

One AgentRunner drives the agent for one process id. run() is the retry
loop: it invokes the agent, classifies failures, retries retryable ones with
exponential backoff and returns immediately on fatal errors or abort.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable

from opentelemetry import trace

from agentloop import telemetry
from agentloop.classifier import analyze_failure, classify_error, generate_retry_context
from agentloop.config import LoopConfig
from agentloop.models import AgentRunResult, RetryContext
from agentloop.process_registry import DEFAULT_PROCESS_ID, ProcessRegistry
from agentloop.prompt import COMPLETION_MARKER
from agentloop.stream_parser import OutputEmitter, parse_stream_line

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
MAX_STDERR_BYTES = 64 * 1024
STALL_CHECK_MAX_INTERVAL_MS = 30_000

ABORTED_MESSAGE = "Agent execution was aborted"


def format_minutes(milliseconds: int) -> str:
    """Render a duration in minutes, e.g. 1800000 -> "30", 90000 -> "1.5"."""
    return f"{round(milliseconds / 60000, 1):g}"


class OutputHistory:
    """Parsed agent output, keeping only the most recent max_bytes."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, text: str) -> None:
        chunk = text if text.endswith("\n") else text + "\n"
        self._chunks.append(chunk)
        self._size += len(chunk.encode())
        while self._size > self.max_bytes and self._chunks:
            oldest = self._chunks.popleft()
            oldest_size = len(oldest.encode())
            overflow = self._size - self.max_bytes
            if oldest_size > overflow and not self._chunks:
                # A single chunk larger than the cap keeps its tail
                tail = oldest.encode()[overflow:].decode(errors="ignore")
                self._chunks.append(tail)
                self._size = len(tail.encode())
                break
            self._size -= oldest_size

    def text(self) -> str:
        return "".join(self._chunks)


class AgentRunner:
    """Runs the agent command for one process id.

    Args:
        config: Loop configuration (command, retry and timeout settings)
        registry: Process registry shared with the orchestrator
        process_id: Registry id, "default" in standard mode, the task id in
            parallel mode
        on_output: Receives displayable agent text as it streams
        on_retry: Called with (attempt, delay_ms, error) before each retry
        cwd: Working directory for the agent process
        tracer: OpenTelemetry tracer (uses the global tracer if None)
    """

    def __init__(
        self,
        config: LoopConfig,
        registry: ProcessRegistry,
        process_id: str = DEFAULT_PROCESS_ID,
        on_output: Callable[[str], None] | None = None,
        on_retry: Callable[[int, int, str], None] | None = None,
        cwd: str | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.process_id = process_id
        self.on_output = on_output
        self.on_retry = on_retry
        self.cwd = cwd
        self.tracer = tracer or trace.get_tracer("agentloop")

    def retry_delay_ms(self, retry_count: int) -> int:
        """Backoff before the retry that follows retry_count earlier retries."""
        return self.config.retry_delay_ms * 2**retry_count

    async def run(self, prompt: str) -> AgentRunResult:
        """Run the agent, retrying retryable failures with backoff.

        The retry counter for this process id is reset first, so every call
        gets the full retry budget.

        Args:
            prompt: Prompt for the first attempt

        Returns:
            AgentRunResult for the last attempt. Fatal errors and exhausted
            retries come back as unsuccessful results, not exceptions.
        """
        self.registry.reset_retry(self.process_id)
        retry_contexts: list[RetryContext] = []
        current_prompt = prompt
        last_result: AgentRunResult | None = None

        with self.tracer.start_as_current_span("agentloop.agent_run") as span:
            span.set_attribute("agent.process_id", self.process_id)
            span.set_attribute("agent.max_retries", self.config.max_retries)

            while (
                self.registry.get_retry_count(self.process_id) <= self.config.max_retries
                and not self.registry.is_aborted(self.process_id)
            ):
                retry_count = self.registry.get_retry_count(self.process_id)
                result = await self._run_once(current_prompt)
                result.retry_count = retry_count
                result.retry_contexts = list(retry_contexts)

                if result.aborted or self.registry.is_aborted(self.process_id):
                    span.set_attribute("agent.outcome", "aborted")
                    return self._aborted_result(result.output, retry_count, retry_contexts)

                if result.success:
                    span.set_attribute("agent.outcome", "success")
                    span.set_attribute("agent.retry_count", retry_count)
                    span.set_attribute("agent.is_complete", result.is_complete)
                    self._record_run("success")
                    return result

                error = result.error or ""
                classification = classify_error(error, result.exit_code)
                if classification.is_fatal:
                    logger.error(f"Fatal agent error: {classification.message}")
                    span.set_attribute("agent.outcome", "fatal")
                    span.set_attribute("agent.error_code", classification.code.value)
                    self._record_run("fatal")
                    try:
                        telemetry.fatal_errors_counter.add(1, {"code": classification.code.value})
                    except (AttributeError, NameError):
                        pass
                    result.error = f"Fatal error: {classification.message}"
                    result.is_fatal = True
                    return result

                self._record_run("failed")
                last_result = result

                if retry_count >= self.config.max_retries:
                    break

                delay_ms = self.retry_delay_ms(retry_count)
                attempt = self.registry.increment_retry(self.process_id)
                logger.warning(
                    f"Agent attempt failed ({error}), retry {attempt}/"
                    f"{self.config.max_retries} in {delay_ms}ms"
                )

                if self.config.retry_with_context:
                    analysis = analyze_failure(error, result.output, result.exit_code)
                    current_prompt = (
                        f"{prompt}\n\n{generate_retry_context(analysis, attempt)}"
                    )
                    retry_contexts.append(
                        RetryContext(
                            attempt_number=attempt,
                            failure_category=analysis.category,
                            root_cause=analysis.root_cause,
                            context_injected=True,
                        )
                    )

                try:
                    telemetry.retries_counter.add(1, {"process_id": self.process_id})
                except (AttributeError, NameError):
                    pass

                if self.on_retry is not None:
                    self.on_retry(attempt, delay_ms, error)

                if await self.registry.wait_for_abort(self.process_id, delay_ms / 1000):
                    break

            retry_count = self.registry.get_retry_count(self.process_id)
            if self.registry.is_aborted(self.process_id) or last_result is None:
                span.set_attribute("agent.outcome", "aborted")
                output = last_result.output if last_result is not None else ""
                return self._aborted_result(output, retry_count, retry_contexts)

            span.set_attribute("agent.outcome", "max_retries")
            span.set_attribute("agent.retry_count", retry_count)
            return AgentRunResult(
                success=False,
                exit_code=last_result.exit_code,
                output=last_result.output,
                is_complete=False,
                retry_count=retry_count,
                error=(
                    f"Max retries ({self.config.max_retries}) exceeded. "
                    f"Last error: {last_result.error}"
                ),
                retry_contexts=list(retry_contexts),
            )

    async def _run_once(self, prompt: str) -> AgentRunResult:
        """Run the agent command once and wait for it to finish or be killed."""
        command = [*self.config.agent_command, prompt]
        logger.info(f"Starting agent: {self.config.agent_command[0]} ({self.process_id})")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            return AgentRunResult(
                success=False,
                exit_code=127,
                output="",
                is_complete=False,
                error=f"Agent command not found: {e}",
            )
        except PermissionError as e:
            return AgentRunResult(
                success=False,
                exit_code=126,
                output="",
                is_complete=False,
                error=f"Permission denied starting agent: {e}",
            )
        except OSError as e:
            return AgentRunResult(
                success=False,
                exit_code=None,
                output="",
                is_complete=False,
                error=f"Failed to start agent: {e}",
            )

        self.registry.set_process(self.process_id, process)
        if self.registry.is_aborted(self.process_id):
            # Abort requested while the process was being spawned
            self.registry.kill(self.process_id)
        loop = asyncio.get_running_loop()
        last_activity = loop.time()
        saw_completion = False
        timed_out = False
        stuck = False
        history = OutputHistory(self.config.max_output_history_bytes)
        emitter = OutputEmitter(self.on_output, self.config.output_throttle_ms)
        stderr_chunks: deque[bytes] = deque()
        stderr_size = 0

        def handle_line(line: str) -> None:
            nonlocal saw_completion
            if COMPLETION_MARKER in line:
                saw_completion = True
            parsed = parse_stream_line(line)
            if emitter.emit(parsed):
                history.append(parsed.text)

        async def read_stdout() -> None:
            nonlocal last_activity
            assert process.stdout is not None
            buffer = ""
            while True:
                chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                last_activity = loop.time()
                buffer += chunk.decode(errors="replace")
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    handle_line(line)
            if buffer:
                handle_line(buffer)

        async def read_stderr() -> None:
            nonlocal last_activity, stderr_size
            assert process.stderr is not None
            while True:
                chunk = await process.stderr.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                last_activity = loop.time()
                stderr_chunks.append(chunk)
                stderr_size += len(chunk)
                while stderr_size > MAX_STDERR_BYTES and len(stderr_chunks) > 1:
                    stderr_size -= len(stderr_chunks.popleft())

        async def enforce_deadline() -> None:
            nonlocal timed_out
            await asyncio.sleep(self.config.agent_timeout_ms / 1000)
            timed_out = True
            logger.warning(
                f"Agent timeout exceeded ({self.config.agent_timeout_ms}ms), killing process"
            )
            self.registry.kill(self.process_id)

        async def detect_stall() -> None:
            nonlocal stuck
            threshold_ms = self.config.stuck_threshold_ms
            interval_ms = min(threshold_ms / 4, STALL_CHECK_MAX_INTERVAL_MS)
            while True:
                await asyncio.sleep(interval_ms / 1000)
                silent_ms = (loop.time() - last_activity) * 1000
                if silent_ms >= threshold_ms:
                    stuck = True
                    logger.warning(
                        f"Agent appears stuck (no output for {silent_ms:.0f}ms), killing process"
                    )
                    self.registry.kill(self.process_id)
                    return

        watchers = []
        if self.config.agent_timeout_ms > 0:
            watchers.append(asyncio.create_task(enforce_deadline()))
        if self.config.stuck_threshold_ms > 0:
            watchers.append(asyncio.create_task(detect_stall()))

        try:
            await asyncio.gather(read_stdout(), read_stderr())
            exit_code = await process.wait()
        finally:
            for watcher in watchers:
                watcher.cancel()
            self.registry.unregister(self.process_id, process)
            emitter.flush()

        output = history.text()
        stderr_text = b"".join(stderr_chunks).decode(errors="replace").strip()

        if timed_out:
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=(
                    f"Agent timed out after "
                    f"{format_minutes(self.config.agent_timeout_ms)} minutes"
                ),
            )

        if stuck:
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=(
                    f"Agent stuck (no output for "
                    f"{format_minutes(self.config.stuck_threshold_ms)} minutes)"
                ),
            )

        if self.registry.is_aborted(self.process_id):
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=ABORTED_MESSAGE,
                aborted=True,
            )

        if exit_code != 0 and not saw_completion:
            return AgentRunResult(
                success=False,
                exit_code=exit_code,
                output=output,
                is_complete=False,
                error=stderr_text or f"Agent exited with code {exit_code}",
            )

        logger.info(
            f"Agent finished ({self.process_id}): exit code {exit_code}, "
            f"complete={saw_completion}"
        )
        return AgentRunResult(
            success=True,
            exit_code=exit_code,
            output=output,
            is_complete=saw_completion,
        )

    def _aborted_result(
        self, output: str, retry_count: int, retry_contexts: list[RetryContext]
    ) -> AgentRunResult:
        self._record_run("aborted")
        return AgentRunResult(
            success=False,
            exit_code=None,
            output=output,
            is_complete=False,
            retry_count=retry_count,
            error=ABORTED_MESSAGE,
            aborted=True,
            retry_contexts=list(retry_contexts),
        )

    def _record_run(self, outcome: str) -> None:
        try:
            telemetry.agent_runs_counter.add(1, {"outcome": outcome})
        except (AttributeError, NameError):
            pass
