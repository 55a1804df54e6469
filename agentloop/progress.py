"""Plain-text progress log shared with the agent.

The agent is told to read progress.txt at the start of every iteration, so
the orchestrator writes session milestones there: a summary header followed
by one timestamped line per event. The file is rotated once it grows past
a size limit.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

PROGRESS_FILE_NAME = "progress.txt"
PROGRESS_LOG_MARKER = "PROGRESS LOG"
DEFAULT_MAX_FILE_SIZE_BYTES = 1024 * 1024
DEFAULT_MAX_BACKUP_FILES = 2


@dataclass
class SessionSummary:
    """Header block at the top of progress.txt."""

    project_name: str
    started_at: str
    last_updated_at: str
    total_iterations: int
    completed_iterations: int
    tasks_completed: int
    total_tasks: int
    status: str


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_summary(summary: SessionSummary) -> str:
    rule = "=" * 60
    lines = [
        rule,
        "SESSION SUMMARY",
        rule,
        f"Project: {summary.project_name}",
        f"Started: {summary.started_at}",
        f"Last Updated: {summary.last_updated_at}",
        f"Status: {summary.status}",
        f"Iterations: {summary.completed_iterations} / {summary.total_iterations}",
        f"Tasks: {summary.tasks_completed} / {summary.total_tasks}",
        rule,
        "",
        PROGRESS_LOG_MARKER,
        "-" * 60,
        "",
    ]
    return "\n".join(lines)


class ProgressLog:
    """Appends session milestones to progress.txt.

    Attributes:
        path: Location of the progress file
    """

    def __init__(
        self,
        state_dir: Path,
        max_file_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
        max_backup_files: int = DEFAULT_MAX_BACKUP_FILES,
    ) -> None:
        self.path = state_dir / PROGRESS_FILE_NAME
        self.max_file_size_bytes = max_file_size_bytes
        self.max_backup_files = max_backup_files

    def write_entry(
        self,
        entry_type: str,
        message: str,
        iteration: int | None = None,
        total_iterations: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Append one timestamped line.

        Args:
            entry_type: Kind of entry, e.g. "session_start" or "retry"
            message: Human-readable message
            iteration: Current iteration, if any
            total_iterations: Iteration budget, shown next to the iteration
            context: Extra key/values, appended as JSON
        """
        self._rotate_if_needed()
        iteration_info = (
            f"[Iteration {iteration}/{total_iterations}] " if iteration is not None else ""
        )
        type_tag = f"[{entry_type.upper().replace('_', ' ')}]"
        context_str = f" | {json.dumps(context)}" if context else ""
        line = f"{_timestamp()} {type_tag} {iteration_info}{message}{context_str}"
        self.append(line + "\n")

    def append(self, text: str) -> None:
        """Append free-form text."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.write(text)

    def initialize(self, summary: SessionSummary) -> None:
        """Start a fresh file with the summary header."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._rotate_if_needed()
        self.path.write_text(format_summary(summary))

    def update_summary(self, summary: SessionSummary) -> None:
        """Replace the summary header, keeping the log entries below it."""
        if not self.path.exists():
            self.initialize(summary)
            return

        content = self.path.read_text()
        marker_index = content.find(PROGRESS_LOG_MARKER)
        if marker_index == -1:
            self.initialize(summary)
            return

        header = format_summary(summary)
        new_header = header[: header.index(PROGRESS_LOG_MARKER)]
        self.path.write_text(new_header + content[marker_index:])

    def log_session_start(
        self, project_name: str, total_iterations: int, total_tasks: int, completed_tasks: int
    ) -> None:
        now = _timestamp()
        self.initialize(
            SessionSummary(
                project_name=project_name,
                started_at=now,
                last_updated_at=now,
                total_iterations=total_iterations,
                completed_iterations=0,
                tasks_completed=completed_tasks,
                total_tasks=total_tasks,
                status="Running",
            )
        )
        self.write_entry(
            "session_start",
            f'Session started for project "{project_name}"',
            iteration=0,
            total_iterations=total_iterations,
            context={"totalTasks": total_tasks, "completedTasks": completed_tasks},
        )

    def log_session_resume(
        self,
        project_name: str,
        current_iteration: int,
        total_iterations: int,
        total_tasks: int,
        completed_tasks: int,
    ) -> None:
        self.write_entry(
            "session_resume",
            f'Session resumed for project "{project_name}"',
            iteration=current_iteration,
            total_iterations=total_iterations,
            context={"totalTasks": total_tasks, "completedTasks": completed_tasks},
        )
        now = _timestamp()
        self.update_summary(
            SessionSummary(
                project_name=project_name,
                started_at=now,
                last_updated_at=now,
                total_iterations=total_iterations,
                completed_iterations=current_iteration,
                tasks_completed=completed_tasks,
                total_tasks=total_tasks,
                status="Running",
            )
        )

    def _rotate_if_needed(self) -> None:
        if not self.path.exists():
            return
        if self.path.stat().st_size < self.max_file_size_bytes:
            return

        # progress.txt -> .1 -> .2 ..., dropping the oldest backup
        for index in range(self.max_backup_files - 1, -1, -1):
            current = self.path if index == 0 else self.path.with_name(f"{self.path.name}.{index}")
            if not current.exists():
                continue
            target = self.path.with_name(f"{self.path.name}.{index + 1}")
            try:
                current.replace(target)
            except OSError as e:
                logger.warning(f"Failed to rotate {current}: {e}")
