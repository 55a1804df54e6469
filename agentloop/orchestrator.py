"""Session orchestration.

The Orchestrator composes the iteration controller, the agent runner and the
feedback handlers. It owns the session lifecycle: it starts or resumes a
session, runs iterations until the task list is complete or a limit is hit,
and records the outcome in the session record, the iteration logs, the usage
statistics and the notification channels.

In standard mode each iteration runs one agent on the next pending task. In
parallel mode each iteration runs one batch of an execution group, with up
to max_concurrent_tasks agents at once.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from opentelemetry import trace

from agentloop import telemetry
from agentloop.agent_runner import AgentRunner
from agentloop.branch_mode import BranchModeManager
from agentloop.config import LoopConfig
from agentloop.decomposition import DecompositionHandler, parse_decomposition_request
from agentloop.errors import AgentLoopError, ErrorCode
from agentloop.events import (
    AGENT_COMPLETE,
    AGENT_ERROR,
    AGENT_OUTPUT,
    AGENT_RETRY,
    AGENT_START,
    PARALLEL_GROUP_COMPLETE,
    PARALLEL_GROUP_START,
    PARALLEL_TASK_COMPLETE,
    PARALLEL_TASK_START,
    SESSION_COMPLETE,
    SESSION_RESUME,
    SESSION_START,
    SESSION_STOP,
    AgentCompleteEvent,
    AgentErrorEvent,
    AgentOutputEvent,
    AgentRetryEvent,
    AgentStartEvent,
    EventBus,
    ParallelGroupEvent,
    ParallelTaskEvent,
    SessionEvent,
)
from agentloop.failure_patterns import FailureHistoryStore
from agentloop.git import GitBranchService
from agentloop.guardrails import GuardrailStore, format_guardrails_for_prompt
from agentloop.iteration import IterationController, LoopState
from agentloop.iteration_logs import (
    IterationLogDecomposition,
    IterationLogStatus,
    IterationLogStore,
    IterationLogTask,
    IterationLogVerification,
    generate_session_id,
)
from agentloop.learning import IterationOutcome, LearningHandler, SessionMemoryStore
from agentloop.models import AgentRunResult, Task, TaskList
from agentloop.notifications import NotificationEvent, NotificationSink
from agentloop.parallel import ParallelExecutionManager
from agentloop.process_registry import DEFAULT_PROCESS_ID, ProcessRegistry
from agentloop.progress import ProgressLog
from agentloop.prompt import build_prompt
from agentloop.session import Session, SessionStatus, SessionStore, now_ms
from agentloop.task_list import (
    TaskListStore,
    count_completed,
    get_current_task_index,
    get_next_task_with_index,
    get_task_by_title,
    has_pending_tasks,
    is_complete,
)
from agentloop.tech_debt import TechnicalDebtHandler
from agentloop.usage_stats import SessionOutcome, SessionRecord, UsageStatisticsStore
from agentloop.verification import (
    VerificationHandler,
    VerificationResult,
    generate_verification_retry_context,
)

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW_LENGTH = 500

LIMIT_STATES: dict[str, NotificationEvent] = {
    "max_iterations": "max_iterations",
    "max_runtime": "max_runtime",
}


@dataclass
class SessionResult:
    """How a run ended."""

    state: LoopState
    iterations_run: int
    tasks_completed: int
    total_tasks: int
    error: str | None = None


def _iso_from_ms(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).isoformat()


class Orchestrator:
    """Runs a session over a task list.

    Args:
        config: Loop configuration
        events: Bus the orchestrator publishes on; the CLI subscribes to it
        registry: Process registry (a fresh one if None)
        tracer: OpenTelemetry tracer (uses the global tracer if None)
        cwd: Working directory for the agent and git
    """

    def __init__(
        self,
        config: LoopConfig,
        events: EventBus | None = None,
        registry: ProcessRegistry | None = None,
        tracer: trace.Tracer | None = None,
        cwd: Path | None = None,
    ) -> None:
        self.config = config
        self.events = events or EventBus()
        self.registry = registry or ProcessRegistry()
        self.tracer = tracer or trace.get_tracer("agentloop")
        self.cwd = cwd

        state_dir = config.state_dir
        self.task_list_store = TaskListStore(config.task_list_path)
        self.session_store = SessionStore(state_dir)
        self.progress_log = ProgressLog(state_dir)
        self.iteration_logs = IterationLogStore(state_dir)
        self.usage_stats = UsageStatisticsStore(state_dir)
        self.memory = SessionMemoryStore(state_dir)
        self.guardrails = GuardrailStore(state_dir)
        self.failure_history = FailureHistoryStore(state_dir)
        self.learning = LearningHandler(
            self.memory, enabled=config.learning_enabled, failure_history=self.failure_history
        )
        self.verification = VerificationHandler(self.progress_log, registry=self.registry)
        self.tech_debt = TechnicalDebtHandler(self.progress_log)
        self.notifications = NotificationSink(config.notifications)
        self.branch_mode = BranchModeManager(
            config.branch_mode,
            config.git_provider,
            GitBranchService(cwd),
            self.events,
            self.progress_log,
        )
        self.parallel = ParallelExecutionManager(self.session_store, self.progress_log)
        self.decomposition = DecompositionHandler(
            config.max_decompositions_per_task,
            save_task_list=self.task_list_store.save,
            append_progress=self.progress_log.append,
            on_restart_iteration=self._restart_after_decomposition,
        )

        self.session: Session | None = None
        self.session_id: str | None = None
        self.project_name = "Unknown Project"
        self.controller: IterationController | None = None
        self.fatal_error: str | None = None

        self._iteration_offset = 0
        self._verification_context: str | None = None
        self._last_iteration_failed = False
        self._attempted_tasks: set[str] = set()
        self._iteration_task: asyncio.Task | None = None
        self._iteration_error: BaseException | None = None
        self._regroup = False
        self._stopping = False

    # Session lifecycle

    def start_session(self, task_list: TaskList, total_iterations: int) -> Session:
        """Create a new session and prepare the iteration controller.

        Raises:
            AgentLoopError: If branch mode is enabled and the working tree is
                not clean
            SessionPersistenceError: If the session cannot be saved
        """
        self._prepare(task_list)
        self.session = self.session_store.create(
            total_iterations, max(0, get_current_task_index(task_list))
        )
        self.session_store.save(self.session)

        self.session_id = generate_session_id()
        self.iteration_logs.initialize(self.session_id, self.project_name)
        self.progress_log.log_session_start(
            self.project_name, total_iterations, len(task_list.tasks), count_completed(task_list)
        )

        self._iteration_offset = 0
        self.controller = self._create_controller(total_iterations)
        logger.info(
            f"Session started for '{self.project_name}': {total_iterations} iterations, "
            f"{count_completed(task_list)}/{len(task_list.tasks)} tasks done"
        )
        self.events.emit(
            SESSION_START,
            SessionEvent(project_name=self.project_name, total_iterations=total_iterations),
        )
        return self.session

    def resume_session(self, session: Session, task_list: TaskList) -> Session:
        """Continue a persisted session.

        The controller is given the iterations that remain (at least one) and
        iteration numbers continue from the session's current iteration.
        """
        self._prepare(task_list)
        remaining = max(1, session.total_iterations - session.current_iteration)
        self.session = session
        self.session_store.update_status(session, "running")
        self.session_store.save(session)

        index = self.iteration_logs.load_index()
        if index is None:
            self.session_id = generate_session_id()
            self.iteration_logs.initialize(self.session_id, self.project_name)
        else:
            self.session_id = index.session_id

        self.progress_log.log_session_resume(
            self.project_name,
            session.current_iteration,
            session.total_iterations,
            len(task_list.tasks),
            count_completed(task_list),
        )

        self._iteration_offset = session.current_iteration
        self.controller = self._create_controller(remaining)
        logger.info(
            f"Session resumed at iteration {session.current_iteration}/"
            f"{session.total_iterations}, {remaining} remaining"
        )
        self.events.emit(
            SESSION_RESUME,
            SessionEvent(
                project_name=self.project_name,
                total_iterations=session.total_iterations,
                current_iteration=session.current_iteration,
            ),
        )
        return session

    async def run(self) -> SessionResult:
        """Run iterations until the session reaches a terminal state.

        Raises:
            RuntimeError: If no session was started or resumed
            DependencyValidationError: If parallel mode is enabled and the
                task dependencies are invalid
            SessionPersistenceError: If the session cannot be saved
        """
        if self.controller is None or self.session is None:
            raise RuntimeError("start_session() or resume_session() must be called first")
        controller = self.controller

        if self.config.parallel:
            self._initialize_parallel()

        controller.on_iteration_start = self._on_iteration_start
        self._install_signal_handlers()
        try:
            with self.tracer.start_as_current_span("agentloop.session") as span:
                span.set_attribute("session.project", self.project_name)
                span.set_attribute("session.total_iterations", controller.total)
                span.set_attribute("session.parallel", self.config.parallel)

                controller.start()
                state = await controller.wait_until_finished()
                await self._drain_iteration_task()
                if self._iteration_error is not None:
                    raise self._iteration_error

                await self._finish_session(state)
                span.set_attribute("session.state", state)
        finally:
            self._remove_signal_handlers()

        task_list = self.task_list_store.load()
        return SessionResult(
            state=controller.state,
            iterations_run=self.session.stats.completed_iterations,
            tasks_completed=count_completed(task_list) if task_list else 0,
            total_tasks=len(task_list.tasks) if task_list else 0,
            error=self.fatal_error,
        )

    def stop(self) -> None:
        """Abort every agent, cancel the pending delay and persist a stopped session."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping session")
        self.registry.kill_all()
        if self.controller is not None:
            self.controller.stop()
        if self.session is not None:
            self.session_store.update_status(self.session, "stopped")
            self.session_store.save(self.session)

    async def handle_fatal_error(self, error: str, iteration: int) -> None:
        """End the session because of an error the user must fix.

        The session is persisted as stopped so it can be resumed afterwards.
        """
        logger.error(f"Fatal error in iteration {iteration}: {error}")
        self.fatal_error = error
        self.progress_log.write_entry(
            "fatal_error", error, iteration=iteration, total_iterations=self._display_total()
        )
        await self.notifications.notify("fatal_error", self.project_name, {"error": error})

        self.iteration_logs.append_error(iteration, error)
        self.iteration_logs.complete(iteration, "failed")

        if self.session is not None:
            self.session_store.record_iteration_end(self.session, iteration, False)
        self.record_usage_statistics(self.session, self.task_list_store.load(), "failed")
        if self.session is not None:
            self.session_store.update_status(self.session, "stopped")
            self.session_store.save(self.session)

        self.events.emit(
            SESSION_STOP,
            SessionEvent(
                project_name=self.project_name,
                total_iterations=self._display_total(),
                current_iteration=iteration,
                reason=error,
            ),
        )
        if self.controller is not None:
            self.controller.fail()

    def record_usage_statistics(
        self, session: Session | None, task_list: TaskList | None, status: SessionOutcome
    ) -> None:
        """Fold the session into the lifetime usage statistics.

        Failures are logged; usage statistics never end a session.
        """
        if session is None:
            return
        now = now_ms()
        stats = session.stats
        record = SessionRecord(
            id=self.session_id or generate_session_id(),
            started_at=_iso_from_ms(session.start_time),
            completed_at=_iso_from_ms(now),
            duration_ms=max(0, now - session.start_time),
            total_iterations=session.total_iterations,
            completed_iterations=stats.completed_iterations,
            successful_iterations=stats.successful_iterations,
            failed_iterations=stats.failed_iterations,
            tasks_completed=count_completed(task_list) if task_list else 0,
            tasks_attempted=len(self._attempted_tasks),
            status=status,
        )
        self.usage_stats.project_name = self.project_name
        try:
            self.usage_stats.record_session(record)
        except (OSError, AgentLoopError) as e:
            logger.warning(f"Failed to record usage statistics: {e}")

    # Standard mode

    async def run_iteration(self, iteration_number: int) -> None:
        """Run one standard-mode iteration and report it to the controller."""
        controller = self._require_controller()
        session = self._require_session()
        iteration = self._iteration_offset + iteration_number
        total = self._display_total()

        with self.tracer.start_as_current_span("agentloop.iteration") as span:
            span.set_attribute("iteration.number", iteration)
            iteration_start = time.monotonic()

            task_list = self.task_list_store.load()
            if task_list is None:
                await self.handle_fatal_error(
                    f"Task list not found: {self.task_list_store.path}", iteration
                )
                return
            if is_complete(task_list):
                controller.mark_iteration_complete(True)
                return

            next_task = get_next_task_with_index(task_list)
            task_title, task_index = next_task if next_task else (None, -1)
            span.set_attribute("iteration.task", task_title or "")
            if task_title:
                self._attempted_tasks.add(task_title)

            self.session_store.update_iteration(
                session, iteration, max(0, task_index), controller.elapsed_seconds()
            )
            self.session_store.record_iteration_start(session, iteration)
            self.session_store.save(session)
            self.iteration_logs.start(
                iteration,
                total,
                IterationLogTask(title=task_title, index=task_index) if task_title else None,
            )
            self.progress_log.write_entry(
                "iteration_start",
                f"Working on: {task_title}" if task_title else "Starting iteration",
                iteration=iteration,
                total_iterations=total,
            )

            if self.branch_mode.enabled and task_title:
                branch = self.branch_mode.create_task_branch(task_title, task_index)
                if not branch.success:
                    self.iteration_logs.append_error(
                        iteration, f"Failed to create task branch: {branch.error}"
                    )

            prompt = self._build_prompt(task_title)
            self.events.emit(
                AGENT_START,
                AgentStartEvent(
                    iteration=iteration, process_id=DEFAULT_PROCESS_ID, task_title=task_title
                ),
            )
            result = await self._create_runner(DEFAULT_PROCESS_ID).run(prompt)

            if result.aborted or self._stopping:
                self.iteration_logs.complete(
                    iteration,
                    "stopped",
                    exit_code=result.exit_code,
                    retry_count=result.retry_count,
                    output_length=len(result.output),
                )
                return

            if not result.success:
                self._emit_agent_error(result, DEFAULT_PROCESS_ID)
                if result.is_fatal:
                    await self.handle_fatal_error(result.error or "Unknown error", iteration)
                    return
                self._finish_failed_iteration(iteration, task_title, result, iteration_start)
                controller.mark_iteration_complete(False, has_pending_tasks(task_list))
                return

            decomposition = parse_decomposition_request(result.output)
            self.events.emit(
                AGENT_COMPLETE,
                AgentCompleteEvent(
                    is_complete=result.is_complete,
                    exit_code=result.exit_code,
                    output_length=len(result.output),
                    output_preview=result.output[-OUTPUT_PREVIEW_LENGTH:],
                    retry_count=result.retry_count,
                    retry_contexts=result.retry_contexts,
                    decomposition_request=decomposition.request,
                ),
            )

            if decomposition.error:
                logger.warning(f"Ignoring decomposition request: {decomposition.error}")
                self.iteration_logs.append_error(iteration, decomposition.error)
            if decomposition.request is not None:
                request = decomposition.request
                before = len(task_list.tasks)
                if self.decomposition.handle(request, task_list):
                    updated = self.task_list_store.load()
                    subtasks = (len(updated.tasks) - before + 1) if updated else 0
                    self.iteration_logs.complete(
                        iteration,
                        "decomposed",
                        exit_code=result.exit_code,
                        retry_count=result.retry_count,
                        output_length=len(result.output),
                        retry_contexts=result.retry_contexts,
                        decomposition=IterationLogDecomposition(
                            original_task_title=request.original_task_title,
                            reason=request.reason,
                            subtasks_created=subtasks,
                        ),
                    )
                    self.session_store.record_iteration_end(session, iteration, True)
                    self.session_store.save(session)
                    return

            task_list = self.task_list_store.load() or task_list
            project_complete = is_complete(task_list)
            verification = await self._verify(project_complete)
            if self._stopping:
                self.iteration_logs.complete(
                    iteration,
                    "stopped",
                    exit_code=result.exit_code,
                    retry_count=result.retry_count,
                    output_length=len(result.output),
                )
                return
            verification_failed = (
                verification is not None and not verification.passed and not project_complete
            )

            task = get_task_by_title(task_list, task_title) if task_title else None
            task_done = task is not None and task.done
            status: IterationLogStatus = (
                "verification_failed" if verification_failed else "completed"
            )

            self.learning.record_iteration_outcome(
                IterationOutcome(
                    iteration=iteration,
                    task_title=task_title or "",
                    was_successful=not verification_failed,
                    output=result.output,
                    exit_code=result.exit_code,
                    retry_count=result.retry_count,
                    retry_contexts=result.retry_contexts,
                    verification_failed=verification_failed,
                    failed_checks=verification.failed_checks if verification else [],
                )
            )
            self.iteration_logs.complete(
                iteration,
                status,
                exit_code=result.exit_code,
                retry_count=result.retry_count,
                output_length=len(result.output),
                task_was_completed=task_done,
                retry_contexts=result.retry_contexts,
                verification=self._verification_record(verification),
            )
            self._last_iteration_failed = verification_failed
            self.session_store.record_iteration_end(session, iteration, not verification_failed)
            self.session_store.save(session)
            self.progress_log.write_entry(
                "iteration_complete",
                f"Task {'done' if task_done else 'in progress'}: {task_title}",
                iteration=iteration,
                total_iterations=total,
                context={"status": status, "retries": result.retry_count},
            )

            if self.branch_mode.enabled and task_done and not verification_failed:
                completion = await self.branch_mode.complete_task(task_list, task_title)
                if not completion.success:
                    self.iteration_logs.append_error(
                        iteration, f"Branch completion failed: {completion.error}"
                    )

            self._record_iteration_metrics(status, iteration_start, task_done)
            span.set_attribute("iteration.status", status)
            controller.mark_iteration_complete(project_complete, has_pending_tasks(task_list))

    # Parallel mode

    async def run_parallel_iteration(self, iteration_number: int) -> None:
        """Run one batch of the current execution group concurrently."""
        controller = self._require_controller()
        session = self._require_session()
        iteration = self._iteration_offset + iteration_number
        iteration_start = time.monotonic()

        task_list = self.task_list_store.load()
        if task_list is None:
            await self.handle_fatal_error(
                f"Task list not found: {self.task_list_store.path}", iteration
            )
            return
        if is_complete(task_list):
            controller.mark_iteration_complete(True)
            return

        if self._regroup:
            self._regroup = False
            self.parallel.initialize(task_list, self.config.max_concurrent_tasks)
        group = self.parallel.start_next_group()
        if not group.started:
            # Failed tasks were dispatched already; regroup what is still pending
            self.parallel.initialize(task_list, self.config.max_concurrent_tasks)
            group = self.parallel.start_next_group()
        if not group.started:
            controller.mark_iteration_complete(is_complete(task_list), False)
            return

        self.session_store.update_iteration(
            session,
            iteration,
            max(0, self._task_index(task_list, group.tasks[0])),
            controller.elapsed_seconds(),
        )
        self.session_store.record_iteration_start(session, iteration)
        self.session_store.save(session)
        self.iteration_logs.start(iteration, self._display_total())
        titles = [task.title for task in group.tasks]
        self.progress_log.write_entry(
            "parallel_group_start",
            f"Group {group.group_index + 1}: {', '.join(titles)}",
            iteration=iteration,
            total_iterations=self._display_total(),
        )
        self.events.emit(
            PARALLEL_GROUP_START,
            ParallelGroupEvent(group_index=group.group_index, task_titles=titles),
        )

        semaphore = asyncio.Semaphore(self.parallel.max_concurrent_tasks)

        async def run_task(task: Task) -> tuple[Task, AgentRunResult]:
            async with semaphore:
                process_id = task.key
                self._attempted_tasks.add(task.title)
                index = self._task_index(task_list, task)
                self.parallel.record_task_start(task, index, process_id)
                self.events.emit(
                    PARALLEL_TASK_START,
                    ParallelTaskEvent(
                        task_id=task.key, task_title=task.title, process_id=process_id
                    ),
                )
                result = await self._create_runner(process_id).run(
                    self._build_prompt(task.title, specific=True)
                )
                return task, result

        with self.tracer.start_as_current_span("agentloop.parallel_group") as span:
            span.set_attribute("parallel.group_index", group.group_index)
            span.set_attribute("parallel.task_count", len(group.tasks))
            outcomes = await asyncio.gather(*(run_task(task) for task in group.tasks))

        fatal: str | None = None
        completed = failed = 0
        for task, result in outcomes:
            if result.aborted:
                continue
            if not result.success:
                self._emit_agent_error(result, task.key)
                self.iteration_logs.append_error(
                    iteration, f"{task.title}: {result.error}", {"task_id": task.key}
                )
                if result.is_fatal and fatal is None:
                    fatal = result.error
            else:
                decomposition = parse_decomposition_request(result.output)
                if decomposition.request is not None:
                    self.decomposition.handle(decomposition.request, self.task_list_store.load())

            self.parallel.record_task_complete(task.key, result.success, result.error)
            self.events.emit(
                PARALLEL_TASK_COMPLETE,
                ParallelTaskEvent(
                    task_id=task.key,
                    task_title=task.title,
                    process_id=task.key,
                    success=result.success,
                    error=result.error,
                ),
            )
            if result.success:
                completed += 1
            else:
                failed += 1
            self.learning.record_iteration_outcome(
                IterationOutcome(
                    iteration=iteration,
                    task_title=task.title,
                    was_successful=result.success,
                    agent_error=None if result.success else result.error,
                    output=result.output,
                    exit_code=result.exit_code,
                    retry_count=result.retry_count,
                    retry_contexts=result.retry_contexts,
                )
            )

        self.events.emit(
            PARALLEL_GROUP_COMPLETE,
            ParallelGroupEvent(
                group_index=group.group_index,
                task_titles=titles,
                completed=completed,
                failed=failed,
            ),
        )

        if self._stopping:
            self.iteration_logs.complete(iteration, "stopped")
            return
        if fatal is not None:
            await self.handle_fatal_error(fatal, iteration)
            return

        task_list = self.task_list_store.load() or task_list
        project_complete = is_complete(task_list)
        verification = await self._verify(project_complete)
        if self._stopping:
            self.iteration_logs.complete(iteration, "stopped")
            return
        verification_failed = (
            verification is not None and not verification.passed and not project_complete
        )
        succeeded = failed == 0 and not verification_failed
        status: IterationLogStatus = (
            "verification_failed" if verification_failed else "completed" if succeeded else "failed"
        )

        self.iteration_logs.complete(
            iteration,
            status,
            retry_count=sum(result.retry_count for _, result in outcomes),
            output_length=sum(len(result.output) for _, result in outcomes),
            verification=self._verification_record(verification),
        )
        self._last_iteration_failed = not succeeded
        self.session_store.record_iteration_end(session, iteration, succeeded)
        self.session_store.save(session)
        self._record_iteration_metrics(status, iteration_start, completed > 0)
        controller.mark_iteration_complete(project_complete, has_pending_tasks(task_list))

    # Internals

    def _prepare(self, task_list: TaskList) -> None:
        self.project_name = task_list.project or "Unknown Project"
        self.memory.project_name = self.project_name
        self.usage_stats.project_name = self.project_name
        self.fatal_error = None
        self._stopping = False
        self._verification_context = None
        self._last_iteration_failed = False
        self.guardrails.invalidate()
        self._attempted_tasks = set()
        self._iteration_error = None
        self.decomposition.reset()
        self.registry.reset()

        if self.branch_mode.enabled:
            result = self.branch_mode.initialize()
            if not result.is_valid:
                raise AgentLoopError(
                    result.error or "Branch mode could not be initialized",
                    ErrorCode.BRANCH_MODE_INVALID,
                )

    def _create_controller(self, total: int) -> IterationController:
        return IterationController(
            total,
            delay_ms=self.config.iteration_delay_ms,
            max_runtime_ms=self.config.max_runtime_ms,
            full_mode=self.config.full_mode,
            events=self.events,
        )

    def _initialize_parallel(self) -> None:
        task_list = self.task_list_store.load()
        if task_list is None:
            raise AgentLoopError(
                f"Task list not found: {self.task_list_store.path}", ErrorCode.PRD_NOT_FOUND
            )
        self.parallel.session = self.session
        self.parallel.initialize(task_list, self.config.max_concurrent_tasks)

    def _on_iteration_start(self, iteration_number: int) -> None:
        runner = self.run_parallel_iteration if self.config.parallel else self.run_iteration
        self._iteration_task = asyncio.get_running_loop().create_task(runner(iteration_number))
        self._iteration_task.add_done_callback(self._on_iteration_done)

    def _on_iteration_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Iteration failed with {type(error).__name__}: {error}")
            self._iteration_error = error
            if self.controller is not None:
                self.controller.fail()

    async def _drain_iteration_task(self) -> None:
        task = self._iteration_task
        if task is not None and not task.done():
            await asyncio.wait([task])

    def _restart_after_decomposition(self) -> None:
        if self.config.parallel:
            self._regroup = True
        elif self.controller is not None:
            self.controller.restart_current_iteration()

    async def _finish_session(self, state: LoopState) -> None:
        session = self._require_session()
        task_list = self.task_list_store.load()

        if state == "complete":
            logger.info(f"All tasks complete for '{self.project_name}'")
            self.progress_log.write_entry("session_complete", "All tasks complete")
            await self.notifications.notify("complete", self.project_name)
            if self.config.technical_debt_review:
                self.tech_debt.run(
                    self.session_id or "", self.iteration_logs.list_logs(), session.stats
                )
            self.record_usage_statistics(session, task_list, "completed")
            self.session_store.update_status(session, "completed")
            self.session_store.delete()
            self.events.emit(
                SESSION_COMPLETE,
                SessionEvent(
                    project_name=self.project_name,
                    total_iterations=session.total_iterations,
                    current_iteration=session.current_iteration,
                ),
            )
        elif state in LIMIT_STATES:
            event = LIMIT_STATES[state]
            logger.info(f"Session ended: {state}")
            self.progress_log.write_entry("session_stop", f"Session ended: {state}")
            await self.notifications.notify(event, self.project_name)
            self.record_usage_statistics(session, task_list, "stopped")
            self._persist_status("stopped")
            self._emit_session_stop(state)
        elif state == "stopped":
            self.progress_log.write_entry("session_stop", "Session stopped by user")
            await self.notifications.notify("session_stopped", self.project_name)
            self.record_usage_statistics(session, task_list, "stopped")
            self._persist_status("stopped")
            self._emit_session_stop("stopped")
        # "error" was recorded by handle_fatal_error

    def _persist_status(self, status: SessionStatus) -> None:
        session = self._require_session()
        self.session_store.update_status(session, status)
        self.session_store.save(session)

    def _emit_session_stop(self, reason: str) -> None:
        session = self._require_session()
        self.events.emit(
            SESSION_STOP,
            SessionEvent(
                project_name=self.project_name,
                total_iterations=session.total_iterations,
                current_iteration=session.current_iteration,
                reason=reason,
            ),
        )

    def _build_prompt(self, task_title: str | None, specific: bool = False) -> str:
        memory = None
        if self.config.learning_enabled:
            sections = [self.memory.get_memory_for_prompt()]
            if task_title:
                sections.append(self.memory.get_memory_for_task(task_title))
            memory = "\n".join(section for section in sections if section) or None

        guardrails = None
        if self.config.guardrails_enabled:
            after_failure = self._last_iteration_failed or bool(self._verification_context)
            active = self.guardrails.get_active("on-error" if after_failure else "always")
            guardrails = format_guardrails_for_prompt(active) or None

        return build_prompt(
            self.config.task_list_path,
            self.progress_log.path,
            specific_task=task_title if specific else None,
            instructions=self.task_list_store.load_instructions(),
            guardrails=guardrails,
            memory=memory,
            verification_context=self._verification_context,
        )

    def _create_runner(self, process_id: str) -> AgentRunner:
        def on_output(text: str) -> None:
            self.events.emit(AGENT_OUTPUT, AgentOutputEvent(text=text, process_id=process_id))

        def on_retry(attempt: int, delay_ms: int, error: str) -> None:
            self.events.emit(
                AGENT_RETRY,
                AgentRetryEvent(
                    attempt=attempt,
                    max_retries=self.config.max_retries,
                    delay_ms=delay_ms,
                    error=error,
                    process_id=process_id,
                ),
            )
            self.progress_log.write_entry(
                "retry", f"Retry {attempt}/{self.config.max_retries} in {delay_ms}ms: {error}"
            )

        return AgentRunner(
            self.config,
            self.registry,
            process_id=process_id,
            on_output=on_output,
            on_retry=on_retry,
            cwd=str(self.cwd) if self.cwd else None,
            tracer=self.tracer,
        )

    def _emit_agent_error(self, result: AgentRunResult, process_id: str) -> None:
        self.events.emit(
            AGENT_ERROR,
            AgentErrorEvent(
                error=result.error or "Unknown error",
                exit_code=result.exit_code,
                is_fatal=result.is_fatal,
                process_id=process_id,
                retry_contexts=result.retry_contexts,
            ),
        )

    def _finish_failed_iteration(
        self,
        iteration: int,
        task_title: str | None,
        result: AgentRunResult,
        iteration_start: float,
    ) -> None:
        session = self._require_session()
        error = result.error or "Unknown error"
        self.iteration_logs.append_error(iteration, error)
        self.iteration_logs.complete(
            iteration,
            "failed",
            exit_code=result.exit_code,
            retry_count=result.retry_count,
            output_length=len(result.output),
            retry_contexts=result.retry_contexts,
        )
        self.learning.record_iteration_outcome(
            IterationOutcome(
                iteration=iteration,
                task_title=task_title or "",
                was_successful=False,
                agent_error=error,
                output=result.output,
                exit_code=result.exit_code,
                retry_count=result.retry_count,
                retry_contexts=result.retry_contexts,
            )
        )
        self._last_iteration_failed = True
        self.session_store.record_iteration_end(session, iteration, False)
        self.session_store.save(session)
        self.progress_log.write_entry(
            "iteration_failed",
            error,
            iteration=iteration,
            total_iterations=self._display_total(),
        )
        self._record_iteration_metrics("failed", iteration_start, False)

    async def _verify(self, project_complete: bool) -> VerificationResult | None:
        """Run verification when enabled.

        A failure once every task is done does not fail the iteration, so no
        retry context is kept for it.

        Returns:
            The result, or None when verification is disabled, the session is
            stopping or the checks were aborted
        """
        if not self.config.verification.enabled or self._stopping:
            return None

        result = await self.verification.run(self.config.verification)
        if result.aborted or self._stopping:
            return None
        if result.passed or project_complete:
            self._verification_context = None
            return result

        self._verification_context = generate_verification_retry_context(result)
        await self.notifications.notify(
            "verification_failed", self.project_name, {"failed_checks": result.failed_checks}
        )
        return result

    @staticmethod
    def _verification_record(
        result: VerificationResult | None,
    ) -> IterationLogVerification | None:
        if result is None:
            return None
        return IterationLogVerification(
            passed=result.passed,
            failed_checks=result.failed_checks,
            total_duration_ms=result.total_duration_ms,
        )

    @staticmethod
    def _task_index(task_list: TaskList, task: Task) -> int:
        for index, candidate in enumerate(task_list.tasks):
            if candidate.key == task.key:
                return index
        return -1

    def _display_total(self) -> int:
        if self.session is not None:
            return max(
                self.session.total_iterations, self._iteration_offset + self._controller_total()
            )
        return self._controller_total()

    def _controller_total(self) -> int:
        return self.controller.total if self.controller is not None else 0

    def _record_iteration_metrics(self, status: str, started: float, task_done: bool) -> None:
        try:
            telemetry.iterations_counter.add(1, {"status": status})
            telemetry.iteration_duration.record(time.monotonic() - started, {"status": status})
            if task_done:
                telemetry.tasks_completed_counter.add(1)
        except (AttributeError, NameError):
            pass

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _require_controller(self) -> IterationController:
        if self.controller is None:
            raise RuntimeError("No active session")
        return self.controller

    def _require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError("No active session")
        return self.session
