"""Per-iteration log records.

Each iteration gets logs/iteration-NNN.json, created when the iteration
starts and finalized when it ends. A finalized record is never written
again within a session; starting a new session clears the old records.
logs/index.json lists every iteration with its status and filename.
"""

import json
import logging
import secrets
import time
from collections.abc import Iterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import Field

from agentloop.errors import ConfigValidationError
from agentloop.models import Record, RetryContext, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

LOGS_DIR_NAME = "logs"
INDEX_FILE_NAME = "index.json"

IterationLogStatus = Literal[
    "running", "completed", "failed", "stopped", "verification_failed", "decomposed"
]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_session_id() -> str:
    """Short sortable id: base-36 millisecond timestamp plus a random suffix."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    encoded = ""
    while millis:
        millis, remainder = divmod(millis, 36)
        encoded = digits[remainder] + encoded
    return f"{encoded or '0'}-{secrets.token_hex(3)}"


def iteration_filename(iteration: int) -> str:
    return f"iteration-{iteration:03d}.json"


class IterationLogTask(Record):
    title: str
    index: int
    was_completed: bool = False


class IterationLogAgent(Record):
    exit_code: int | None = None
    retry_count: int = 0
    output_length: int = 0
    retry_contexts: list[RetryContext] | None = None


class IterationLogVerification(Record):
    passed: bool
    failed_checks: list[str] = Field(default_factory=list)
    total_duration_ms: int = 0


class IterationLogDecomposition(Record):
    original_task_title: str
    reason: str
    subtasks_created: int


class IterationLogError(Record):
    timestamp: str = Field(default_factory=_now_iso)
    message: str
    context: dict[str, Any] | None = None


class IterationLog(Record):
    iteration: int
    total_iterations: int
    started_at: str
    completed_at: str | None = None
    duration_ms: int | None = None
    status: IterationLogStatus = "running"
    task: IterationLogTask | None = None
    agent: IterationLogAgent = Field(default_factory=IterationLogAgent)
    verification: IterationLogVerification | None = None
    decomposition: IterationLogDecomposition | None = None
    errors: list[IterationLogError] = Field(default_factory=list)

    @property
    def is_finalized(self) -> bool:
        return self.status != "running"


class IterationIndexEntry(Record):
    iteration: int
    status: IterationLogStatus
    filename: str


class IterationLogsIndex(Record):
    session_id: str
    project_name: str
    started_at: str = Field(default_factory=_now_iso)
    last_updated_at: str = Field(default_factory=_now_iso)
    iterations: list[IterationIndexEntry] = Field(default_factory=list)


class IterationLogStore:
    """Reads and writes iteration records under state_dir/logs.

    Args:
        state_dir: Directory the logs directory lives in
    """

    def __init__(self, state_dir: Path) -> None:
        self.logs_dir = state_dir / LOGS_DIR_NAME
        self.index_path = self.logs_dir / INDEX_FILE_NAME

    def initialize(self, session_id: str, project_name: str) -> IterationLogsIndex:
        """Start a fresh index for a new session.

        Records left by an earlier session are removed, so iteration numbers
        start over with empty records.
        """
        if self.logs_dir.is_dir():
            for path in self.logs_dir.glob("iteration-*.json"):
                path.unlink(missing_ok=True)
        index = IterationLogsIndex(session_id=session_id, project_name=project_name)
        write_json_atomic(self.index_path, index.to_json_dict())
        return index

    def load_index(self) -> IterationLogsIndex | None:
        return self._read(self.index_path, IterationLogsIndex)

    def load(self, iteration: int) -> IterationLog | None:
        return self._read(self.logs_dir / iteration_filename(iteration), IterationLog)

    def start(
        self, iteration: int, total_iterations: int, task: IterationLogTask | None = None
    ) -> IterationLog | None:
        """Create the record for an iteration that is starting.

        An iteration rerun after it was finalized (for example after a
        decomposition) keeps its first record; None is returned.
        """
        existing = self.load(iteration)
        if existing is not None and existing.is_finalized:
            logger.debug(f"Iteration {iteration} log already finalized, not restarting it")
            return None

        log = IterationLog(
            iteration=iteration,
            total_iterations=total_iterations,
            started_at=_now_iso(),
            task=task,
        )
        self._write(log)
        return log

    def append_error(
        self, iteration: int, message: str, context: dict[str, Any] | None = None
    ) -> None:
        """Add an error to a running iteration. Finalized records are left alone."""
        log = self.load(iteration)
        if log is None or log.is_finalized:
            return
        log.errors.append(IterationLogError(message=message, context=context))
        self._write(log)

    def complete(
        self,
        iteration: int,
        status: IterationLogStatus,
        exit_code: int | None = None,
        retry_count: int = 0,
        output_length: int = 0,
        task_was_completed: bool = False,
        retry_contexts: list[RetryContext] | None = None,
        verification: IterationLogVerification | None = None,
        decomposition: IterationLogDecomposition | None = None,
    ) -> IterationLog | None:
        """Finalize an iteration record.

        Returns:
            The finalized record, or None if there is no record or it was
            already finalized
        """
        log = self.load(iteration)
        if log is None:
            return None
        if log.is_finalized:
            logger.debug(f"Iteration {iteration} log already finalized as {log.status}")
            return None

        completed_at = datetime.now(timezone.utc)
        started_at = datetime.fromisoformat(log.started_at)
        log.completed_at = completed_at.isoformat()
        log.duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        log.status = status
        log.agent.exit_code = exit_code
        log.agent.retry_count = retry_count
        log.agent.output_length = output_length
        if retry_contexts:
            log.agent.retry_contexts = retry_contexts
        if verification is not None:
            log.verification = verification
        if decomposition is not None:
            log.decomposition = decomposition
        if log.task is not None:
            log.task.was_completed = task_was_completed

        self._write(log)
        return log

    def list_logs(self) -> list[IterationLog]:
        return list(self.iter_logs())

    def iter_logs(self) -> Iterator[IterationLog]:
        """Records in index order; missing or unreadable files are skipped."""
        index = self.load_index()
        if index is None:
            return
        for entry in index.iterations:
            try:
                log = self.load(entry.iteration)
            except ConfigValidationError as e:
                logger.warning(f"Skipping unreadable iteration log {entry.filename}: {e}")
                continue
            if log is not None:
                yield log

    def _write(self, log: IterationLog) -> None:
        path = self.logs_dir / iteration_filename(log.iteration)
        write_json_atomic(path, log.to_json_dict())
        self._update_index(log.iteration, log.status)

    def _update_index(self, iteration: int, status: IterationLogStatus) -> None:
        index = self.load_index()
        if index is None:
            return
        for entry in index.iterations:
            if entry.iteration == iteration:
                entry.status = status
                break
        else:
            index.iterations.append(
                IterationIndexEntry(
                    iteration=iteration, status=status, filename=iteration_filename(iteration)
                )
            )
        index.last_updated_at = _now_iso()
        write_json_atomic(self.index_path, index.to_json_dict())

    @staticmethod
    def _read(path: Path, model_type: type) -> Any:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError([f"<root>: {e}"], source=str(path)) from e
        return decode_record(model_type, data, source=str(path))
