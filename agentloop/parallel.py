"""Group-by-group bookkeeping for parallel execution.

The dependency scheduler splits the task list into execution groups. The
manager hands out one batch of at most max_concurrent_tasks tasks at a time,
counts completions and failures, and only moves to the next group once every
task of the current group has been dispatched and resolved. Progress is
mirrored into the session record when one is attached.
"""

import logging
import time
from dataclasses import dataclass, field

from agentloop.errors import DependencyValidationError
from agentloop.models import Task, TaskList
from agentloop.progress import ProgressLog
from agentloop.scheduler import get_execution_groups, validate_dependencies
from agentloop.session import Session, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class ParallelGroupState:
    """The batch currently in flight."""

    group_index: int
    tasks: list[Task]
    completed_task_ids: set[str] = field(default_factory=set)
    failed_task_ids: set[str] = field(default_factory=set)
    start_time: float = field(default_factory=time.monotonic)

    @property
    def resolved_count(self) -> int:
        return len(self.completed_task_ids) + len(self.failed_task_ids)


@dataclass
class StartGroupResult:
    started: bool
    group_index: int = -1
    tasks: list[Task] = field(default_factory=list)


@dataclass
class RecordTaskCompleteResult:
    group_complete: bool
    all_succeeded: bool


@dataclass
class ParallelExecutionSummary:
    total_groups: int
    completed_groups: int
    current_group_index: int
    is_active: bool


class ParallelExecutionManager:
    """Dispatches execution groups in order.

    Args:
        session_store: Persists parallel progress into the session record
        progress_log: Receives a line per finished group
    """

    def __init__(
        self,
        session_store: SessionStore | None = None,
        progress_log: ProgressLog | None = None,
    ) -> None:
        self.session_store = session_store
        self.progress_log = progress_log
        self.session: Session | None = None
        self.enabled = False
        self.max_concurrent_tasks = 1
        self.execution_groups: list[list[Task]] = []
        self.current_group_index = 0
        self.current_group: ParallelGroupState | None = None
        self._dispatched: set[str] = set()

    def initialize(self, task_list: TaskList, max_concurrent_tasks: int) -> None:
        """Validate the dependency graph and compute execution groups.

        Nothing is started when validation fails.

        Raises:
            DependencyValidationError: If dependencies are missing, self
                referencing or cyclic
        """
        validation = validate_dependencies(task_list)
        if not validation.is_valid:
            messages = [f"{error.type}: {error.details}" for error in validation.errors]
            logger.error(f"Dependency validation failed for parallel execution: {messages}")
            raise DependencyValidationError(messages)

        self.enabled = True
        self.max_concurrent_tasks = max(1, max_concurrent_tasks)
        self.execution_groups = get_execution_groups(task_list)
        self.current_group_index = 0
        self.current_group = None
        self._dispatched = set()
        logger.info(
            f"Initialized parallel execution: {len(self.execution_groups)} groups, "
            f"max {self.max_concurrent_tasks} concurrent tasks"
        )

        if self.session is not None and self.session_store is not None:
            self.session_store.enable_parallel_mode(self.session, self.max_concurrent_tasks)
            self.session_store.save(self.session)

    def start_next_group(self) -> StartGroupResult:
        """Select the next batch of pending tasks.

        Tasks already done are skipped, and groups with nothing left to do are
        passed over. A group larger than max_concurrent_tasks is dispatched in
        several batches before the next group starts.

        Returns:
            StartGroupResult with started=False once every group is finished
        """
        if self.current_group is not None:
            raise RuntimeError(
                f"Group {self.current_group.group_index} is still running"
            )

        while self.current_group_index < len(self.execution_groups):
            pending = self._pending_in_group(self.current_group_index)
            if pending:
                break
            logger.debug(f"Group {self.current_group_index} has no pending tasks, skipping")
            self.current_group_index += 1
        else:
            logger.info("All parallel groups completed")
            return StartGroupResult(started=False)

        batch = pending[: self.max_concurrent_tasks]
        self._dispatched.update(task.key for task in batch)
        self.current_group = ParallelGroupState(group_index=self.current_group_index, tasks=batch)
        logger.info(
            f"Starting parallel group {self.current_group_index} with {len(batch)} tasks: "
            f"{[task.title for task in batch]}"
        )

        if self.session is not None and self.session_store is not None:
            self.session_store.start_parallel_group(self.session, self.current_group_index)
            self.session_store.save(self.session)

        return StartGroupResult(started=True, group_index=self.current_group_index, tasks=batch)

    def record_task_start(self, task: Task, task_index: int, process_id: str) -> None:
        logger.info(f"Parallel task started: {task.title} ({process_id})")
        if self.session is not None and self.session_store is not None:
            self.session_store.start_task_execution(
                self.session,
                task_id=task.key,
                task_title=task.title,
                task_index=task_index,
                process_id=process_id,
            )
            self.session_store.save(self.session)

    def record_task_complete(
        self, task_id: str, was_successful: bool, error: str | None = None
    ) -> RecordTaskCompleteResult:
        """Record the outcome of one task in the current batch.

        The batch is complete once completed + failed reaches the number of
        dispatched tasks; it is then closed automatically.
        """
        group = self.current_group
        if group is None:
            logger.warning(f"No active parallel group when recording completion of {task_id}")
            return RecordTaskCompleteResult(group_complete=True, all_succeeded=False)

        if task_id in group.completed_task_ids or task_id in group.failed_task_ids:
            return RecordTaskCompleteResult(
                group_complete=group.resolved_count >= len(group.tasks),
                all_succeeded=not group.failed_task_ids,
            )

        if was_successful:
            group.completed_task_ids.add(task_id)
        else:
            group.failed_task_ids.add(task_id)
        logger.info(
            f"Parallel task {'completed' if was_successful else 'failed'}: {task_id} "
            f"({group.resolved_count}/{len(group.tasks)})"
        )

        if self.session is not None and self.session_store is not None:
            if was_successful:
                self.session_store.complete_task_execution(self.session, task_id, True)
            else:
                self.session_store.fail_task_execution(
                    self.session, task_id, error or "Unknown error"
                )
            self.session_store.save(self.session)

        group_complete = group.resolved_count >= len(group.tasks)
        all_succeeded = not group.failed_task_ids
        if group_complete:
            self.complete_current_group()
        return RecordTaskCompleteResult(group_complete=group_complete, all_succeeded=all_succeeded)

    def complete_current_group(self) -> None:
        """Close the current batch; advance to the next group when this one is exhausted."""
        group = self.current_group
        if group is None:
            return

        duration_seconds = time.monotonic() - group.start_time
        logger.info(
            f"Parallel group {group.group_index} finished: "
            f"{len(group.completed_task_ids)} completed, {len(group.failed_task_ids)} failed "
            f"in {duration_seconds:.0f}s"
        )

        if self.session is not None and self.session_store is not None:
            self.session_store.complete_parallel_group(self.session, group.group_index)
            self.session_store.save(self.session)

        if self.progress_log is not None:
            self.progress_log.append(
                f"=== Parallel Group {group.group_index + 1} Complete ===\n"
                f"Completed: {len(group.completed_task_ids)}, "
                f"Failed: {len(group.failed_task_ids)}, "
                f"Duration: {round(duration_seconds)}s\n"
            )

        self.current_group = None
        if not self._pending_in_group(group.group_index):
            self.current_group_index = group.group_index + 1

    def has_more_groups(self) -> bool:
        return any(
            self._pending_in_group(index)
            for index in range(self.current_group_index, len(self.execution_groups))
        )

    def get_summary(self) -> ParallelExecutionSummary:
        return ParallelExecutionSummary(
            total_groups=len(self.execution_groups),
            completed_groups=self.current_group_index,
            current_group_index=self.current_group_index,
            is_active=self.current_group is not None,
        )

    def disable(self) -> None:
        if not self.enabled:
            return
        logger.info("Disabling parallel execution")
        self.reset()
        if self.session is not None and self.session_store is not None:
            self.session_store.disable_parallel_mode(self.session)
            self.session_store.save(self.session)

    def reset(self) -> None:
        self.enabled = False
        self.max_concurrent_tasks = 1
        self.execution_groups = []
        self.current_group_index = 0
        self.current_group = None
        self._dispatched = set()

    def _pending_in_group(self, group_index: int) -> list[Task]:
        return [
            task
            for task in self.execution_groups[group_index]
            if not task.done and task.key not in self._dispatched
        ]
