"""Session persistence for resumable runs.

The session record answers "is a run in progress, and where is it". It is
written after every iteration start and end and every status change, so an
interrupted run can be resumed from the last recorded iteration. At most one
session exists per state directory; it is deleted when a run completes.

Timestamps are epoch milliseconds.
"""

import json
import logging
import time
from pathlib import Path
from typing import Literal

from pydantic import Field

from agentloop.errors import ConfigValidationError, ErrorCode, SessionPersistenceError
from agentloop.models import Record, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"

SessionStatus = Literal["running", "paused", "stopped", "completed"]
ExecutionStatus = Literal["pending", "running", "completed", "failed"]

RESUMABLE_STATUSES = ("running", "paused", "stopped")
TERMINAL_EXECUTION_STATUSES = ("completed", "failed")


def now_ms() -> int:
    return int(time.time() * 1000)


class IterationTiming(Record):
    iteration: int
    start_time: int
    end_time: int | None = None
    duration_ms: int | None = None


class SessionStatistics(Record):
    """Iteration counters for a session.

    average_duration_ms and success_rate are derived from the counters and
    recomputed on every iteration end. success_rate is a percentage.
    """

    total_iterations: int
    completed_iterations: int = 0
    failed_iterations: int = 0
    successful_iterations: int = 0
    total_duration_ms: int = 0
    average_duration_ms: float = 0
    success_rate: float = 0
    iteration_timings: list[IterationTiming] = Field(default_factory=list)


class ActiveTaskExecution(Record):
    """One task running (or finished) in parallel mode."""

    task_id: str
    task_title: str
    task_index: int
    status: ExecutionStatus = "running"
    process_id: str
    retry_count: int = 0
    last_error: str | None = None
    start_time: int = Field(default_factory=now_ms)
    end_time: int | None = None


class ExecutionGroupState(Record):
    group_index: int
    task_executions: list[ActiveTaskExecution] = Field(default_factory=list)
    is_complete: bool = False
    start_time: int = Field(default_factory=now_ms)
    end_time: int | None = None


class ParallelSessionState(Record):
    is_parallel_mode: bool = True
    current_group_index: int = -1
    execution_groups: list[ExecutionGroupState] = Field(default_factory=list)
    active_executions: list[ActiveTaskExecution] = Field(default_factory=list)
    max_concurrent_tasks: int


class Session(Record):
    """The persisted session record."""

    start_time: int
    last_update_time: int
    current_iteration: int = 0
    total_iterations: int
    current_task_index: int = 0
    status: SessionStatus = "running"
    elapsed_time_seconds: int = 0
    statistics: SessionStatistics | None = None
    parallel_state: ParallelSessionState | None = None

    @property
    def stats(self) -> SessionStatistics:
        """Statistics block, created on first access if missing."""
        if self.statistics is None:
            self.statistics = SessionStatistics(total_iterations=self.total_iterations)
        return self.statistics


class SessionStore:
    """Reads and writes the session record in the state directory.

    Mutators change the session in place and return it; callers decide when
    to save.

    Attributes:
        path: Location of session.json
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / SESSION_FILE_NAME

    def create(self, total_iterations: int, current_task_index: int) -> Session:
        """New running session at iteration 0."""
        now = now_ms()
        return Session(
            start_time=now,
            last_update_time=now,
            total_iterations=total_iterations,
            current_task_index=current_task_index,
            statistics=SessionStatistics(total_iterations=total_iterations),
        )

    def load(self) -> Session | None:
        """Load the session from disk.

        A session written without a statistics block gets a fresh one, which
        is saved back immediately.

        Returns:
            Session, or None if no session file exists

        Raises:
            ConfigValidationError: If the file is corrupt or malformed
        """
        if not self.path.exists():
            return None

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(self.path), code=ErrorCode.SESSION_CORRUPTED
            ) from e

        session = decode_record(
            Session, data, source=str(self.path), code=ErrorCode.SESSION_CORRUPTED
        )
        if session.statistics is None:
            session.statistics = SessionStatistics(total_iterations=session.total_iterations)
            self.save(session)
        return session

    def save(self, session: Session) -> None:
        """Write the session, replacing the file atomically.

        Raises:
            SessionPersistenceError: If the file cannot be written
        """
        try:
            write_json_atomic(self.path, session.to_json_dict())
        except OSError as e:
            raise SessionPersistenceError(f"Failed to save session to {self.path}: {e}") from e

    def delete(self) -> None:
        """Remove the session file. Safe to call when none exists."""
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.exists()

    def update_iteration(
        self,
        session: Session,
        current_iteration: int,
        current_task_index: int,
        elapsed_time_seconds: int,
    ) -> Session:
        session.current_iteration = current_iteration
        session.current_task_index = current_task_index
        session.elapsed_time_seconds = elapsed_time_seconds
        session.last_update_time = now_ms()
        return session

    def update_status(self, session: Session, status: SessionStatus) -> Session:
        session.status = status
        session.last_update_time = now_ms()
        return session

    def record_iteration_start(self, session: Session, iteration: int) -> Session:
        """Record the start time of an iteration.

        Calling this twice for the same iteration restarts its timing rather
        than adding a second entry.
        """
        now = now_ms()
        stats = session.stats
        existing = self._find_timing(stats, iteration)
        if existing is not None:
            existing.start_time = now
        else:
            stats.iteration_timings.append(IterationTiming(iteration=iteration, start_time=now))
        session.last_update_time = now
        return session

    def record_iteration_end(
        self, session: Session, iteration: int, was_successful: bool
    ) -> Session:
        """Record the end of an iteration and update the counters.

        Args:
            session: Session to update
            iteration: Iteration number that ended
            was_successful: Counts towards successful_iterations if True,
                failed_iterations otherwise

        Returns:
            The updated session
        """
        now = now_ms()
        stats = session.stats
        existing = self._find_timing(stats, iteration)
        if existing is not None:
            duration_ms = max(0, now - existing.start_time)
            existing.end_time = now
            existing.duration_ms = duration_ms
        else:
            duration_ms = 0
            stats.iteration_timings.append(
                IterationTiming(iteration=iteration, start_time=now, end_time=now, duration_ms=0)
            )

        stats.completed_iterations += 1
        if was_successful:
            stats.successful_iterations += 1
        else:
            stats.failed_iterations += 1
        stats.total_duration_ms += duration_ms
        stats.average_duration_ms = stats.total_duration_ms / stats.completed_iterations
        stats.success_rate = stats.successful_iterations / stats.completed_iterations * 100
        session.last_update_time = now
        return session

    def is_resumable(self, session: Session | None) -> bool:
        return session is not None and session.status in RESUMABLE_STATUSES

    # Parallel mode

    def enable_parallel_mode(self, session: Session, max_concurrent_tasks: int) -> Session:
        session.parallel_state = ParallelSessionState(max_concurrent_tasks=max_concurrent_tasks)
        session.last_update_time = now_ms()
        return session

    def disable_parallel_mode(self, session: Session) -> Session:
        session.parallel_state = None
        session.last_update_time = now_ms()
        return session

    def is_parallel_mode(self, session: Session) -> bool:
        return session.parallel_state is not None and session.parallel_state.is_parallel_mode

    def start_parallel_group(self, session: Session, group_index: int) -> Session:
        state = session.parallel_state
        if state is None:
            return session
        state.current_group_index = group_index
        state.execution_groups.append(ExecutionGroupState(group_index=group_index))
        session.last_update_time = now_ms()
        return session

    def complete_parallel_group(self, session: Session, group_index: int) -> Session:
        """Close a group and drop its finished executions from the active list."""
        state = session.parallel_state
        if state is None:
            return session
        now = now_ms()
        for group in state.execution_groups:
            if group.group_index == group_index and not group.is_complete:
                group.is_complete = True
                group.end_time = now
        state.active_executions = [
            execution for execution in state.active_executions if execution.status == "running"
        ]
        session.last_update_time = now
        return session

    def get_current_parallel_group(self, session: Session) -> ExecutionGroupState | None:
        state = session.parallel_state
        if state is None or state.current_group_index < 0:
            return None
        for group in state.execution_groups:
            if group.group_index == state.current_group_index and not group.is_complete:
                return group
        return None

    def start_task_execution(
        self,
        session: Session,
        task_id: str,
        task_title: str,
        task_index: int,
        process_id: str,
    ) -> Session:
        state = session.parallel_state
        if state is None:
            return session
        execution = ActiveTaskExecution(
            task_id=task_id,
            task_title=task_title,
            task_index=task_index,
            process_id=process_id,
        )
        state.active_executions.append(execution)
        group = self.get_current_parallel_group(session)
        if group is not None:
            group.task_executions.append(execution.model_copy())
        session.last_update_time = now_ms()
        return session

    def complete_task_execution(
        self, session: Session, task_id: str, was_successful: bool
    ) -> Session:
        """Mark a task execution completed (or failed). Terminal executions are left alone."""
        status: ExecutionStatus = "completed" if was_successful else "failed"
        return self._finish_execution(session, task_id, status, None)

    def fail_task_execution(self, session: Session, task_id: str, error: str) -> Session:
        return self._finish_execution(session, task_id, "failed", error)

    def retry_task_execution(self, session: Session, task_id: str) -> Session:
        """Put a task execution back to running and bump its retry count."""
        now = now_ms()
        for execution in self._executions_for(session, task_id):
            execution.status = "running"
            execution.start_time = now
            execution.end_time = None
            execution.retry_count += 1
            execution.last_error = None
        session.last_update_time = now
        return session

    def get_active_executions(self, session: Session) -> list[ActiveTaskExecution]:
        if session.parallel_state is None:
            return []
        return [e for e in session.parallel_state.active_executions if e.status == "running"]

    def get_task_execution(self, session: Session, task_id: str) -> ActiveTaskExecution | None:
        if session.parallel_state is None:
            return None
        for execution in session.parallel_state.active_executions:
            if execution.task_id == task_id:
                return execution
        return None

    def is_task_executing(self, session: Session, task_id: str) -> bool:
        execution = self.get_task_execution(session, task_id)
        return execution is not None and execution.status == "running"

    def _finish_execution(
        self, session: Session, task_id: str, status: ExecutionStatus, error: str | None
    ) -> Session:
        current = self.get_task_execution(session, task_id)
        if current is None or current.status in TERMINAL_EXECUTION_STATUSES:
            return session
        now = now_ms()
        for execution in self._executions_for(session, task_id):
            execution.status = status
            execution.end_time = now
            if error is not None:
                execution.last_error = error
        session.last_update_time = now
        return session

    @staticmethod
    def _executions_for(session: Session, task_id: str) -> list[ActiveTaskExecution]:
        state = session.parallel_state
        if state is None:
            return []
        matches = [e for e in state.active_executions if e.task_id == task_id]
        for group in state.execution_groups:
            matches.extend(e for e in group.task_executions if e.task_id == task_id)
        return matches

    @staticmethod
    def _find_timing(stats: SessionStatistics, iteration: int) -> IterationTiming | None:
        for timing in stats.iteration_timings:
            if timing.iteration == iteration:
                return timing
        return None
