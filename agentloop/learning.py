"""Session memory: what the agent learned across iterations and sessions.

Lessons, successful patterns and approaches to avoid are stored in
session-memory.json and injected into later prompts.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from pydantic import Field

from agentloop.classifier import analyze_failure
from agentloop.errors import ConfigValidationError, ErrorCode
from agentloop.failure_patterns import PATTERN_THRESHOLD, FailureHistoryStore
from agentloop.models import Record, RetryContext, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

MEMORY_FILE_NAME = "session-memory.json"
MAX_LESSONS = 50
MAX_PATTERNS = 20
MAX_FAILED_APPROACHES = 20
RECURRING_FAILURE_THRESHOLD = 3


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionMemory(Record):
    project_name: str
    lessons_learned: list[str] = Field(default_factory=list)
    successful_patterns: list[str] = Field(default_factory=list)
    failed_approaches: list[str] = Field(default_factory=list)
    task_notes: dict[str, str] = Field(default_factory=dict)
    last_updated: str = Field(default_factory=_now_iso)


@dataclass
class MemoryStats:
    lessons_count: int = 0
    patterns_count: int = 0
    failed_approaches_count: int = 0
    task_notes_count: int = 0
    last_updated: str | None = None


def _append_capped(entries: list[str], entry: str, limit: int) -> bool:
    """Append entry unless already present, dropping the oldest past limit."""
    if entry in entries:
        return False
    entries.append(entry)
    del entries[:-limit]
    return True


class SessionMemoryStore:
    """Loads, updates and saves session-memory.json.

    Every add_* call saves immediately. Duplicate entries are ignored and the
    oldest entries are dropped once a list reaches its limit.

    Args:
        state_dir: Directory holding the memory file
        project_name: Used when a new memory record is created
    """

    def __init__(self, state_dir: Path, project_name: str = "Unknown Project") -> None:
        self.path = state_dir / MEMORY_FILE_NAME
        self.project_name = project_name
        self._memory: SessionMemory | None = None

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> SessionMemory:
        """Read the memory file, or a fresh record if there is none.

        Raises:
            ConfigValidationError: If the file is corrupt or malformed
        """
        if not self.path.exists():
            return SessionMemory(project_name=self.project_name)

        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(self.path), code=ErrorCode.CONFIG_INVALID_JSON
            ) from e
        return decode_record(SessionMemory, data, source=str(self.path))

    def get(self) -> SessionMemory:
        if self._memory is None:
            self._memory = self.load()
        return self._memory

    def save(self, memory: SessionMemory) -> None:
        memory.last_updated = _now_iso()
        write_json_atomic(self.path, memory.to_json_dict())
        self._memory = memory

    def invalidate(self) -> None:
        self._memory = None

    def add_lesson(self, lesson: str) -> None:
        memory = self.get()
        if _append_capped(memory.lessons_learned, lesson, MAX_LESSONS):
            self.save(memory)

    def add_success_pattern(self, pattern: str) -> None:
        memory = self.get()
        if _append_capped(memory.successful_patterns, pattern, MAX_PATTERNS):
            self.save(memory)

    def add_failed_approach(self, approach: str) -> None:
        memory = self.get()
        if _append_capped(memory.failed_approaches, approach, MAX_FAILED_APPROACHES):
            self.save(memory)

    def add_task_note(self, task_title: str, note: str) -> None:
        """Attach a note to a task, appending to any existing note."""
        memory = self.get()
        existing = memory.task_notes.get(task_title)
        memory.task_notes[task_title] = f"{existing}\n{note}" if existing else note
        self.save(memory)

    def get_task_note(self, task_title: str) -> str | None:
        return self.get().task_notes.get(task_title)

    def clear(self) -> None:
        """Empty the memory, keeping the project name."""
        if not self.exists():
            return
        self.save(SessionMemory(project_name=self.get().project_name))

    def get_stats(self) -> MemoryStats:
        if not self.exists():
            return MemoryStats()
        memory = self.get()
        return MemoryStats(
            lessons_count=len(memory.lessons_learned),
            patterns_count=len(memory.successful_patterns),
            failed_approaches_count=len(memory.failed_approaches),
            task_notes_count=len(memory.task_notes),
            last_updated=memory.last_updated,
        )

    def get_memory_for_prompt(self) -> str:
        """Prompt section with everything learned so far, empty if nothing."""
        memory = self.get()
        sections = []
        if memory.lessons_learned:
            items = "\n".join(f"- {lesson}" for lesson in memory.lessons_learned)
            sections.append(f"### Lessons Learned\n{items}")
        if memory.successful_patterns:
            items = "\n".join(f"- {pattern}" for pattern in memory.successful_patterns)
            sections.append(f"### Successful Patterns\n{items}")
        if memory.failed_approaches:
            items = "\n".join(f"- Avoid: {approach}" for approach in memory.failed_approaches)
            sections.append(f"### Approaches to Avoid\n{items}")

        if not sections:
            return ""
        return "## Lessons from Previous Sessions\n" + "\n\n".join(sections) + "\n"

    def get_memory_for_task(self, task_title: str) -> str:
        note = self.get_task_note(task_title)
        if not note:
            return ""
        return f"### Notes for this task\n{note}\n"

    def export_markdown(self) -> str:
        memory = self.get()
        lines = [
            f"# Session Memory: {memory.project_name}",
            "",
            f"Last updated: {memory.last_updated}",
            "",
        ]
        for heading, entries in (
            ("Lessons Learned", memory.lessons_learned),
            ("Successful Patterns", memory.successful_patterns),
            ("Failed Approaches", memory.failed_approaches),
        ):
            if entries:
                lines += [f"## {heading}", ""]
                lines += [f"- {entry}" for entry in entries]
                lines.append("")

        if memory.task_notes:
            lines += ["## Task Notes", ""]
            for title, note in memory.task_notes.items():
                lines += [f"### {title}", "", note, ""]

        return "\n".join(lines)


@dataclass
class IterationOutcome:
    """What happened in one iteration, as far as learning is concerned."""

    iteration: int
    task_title: str
    was_successful: bool
    agent_error: str | None = None
    output: str = ""
    exit_code: int | None = None
    retry_count: int = 0
    retry_contexts: list[RetryContext] = field(default_factory=list)
    verification_failed: bool = False
    failed_checks: list[str] = field(default_factory=list)


class LearningHandler:
    """Turns iteration outcomes into session memory entries.

    Args:
        memory: Store the entries are written to
        enabled: When False every call is a no-op
        failure_history: Where failures are recorded for pattern analysis
    """

    def __init__(
        self,
        memory: SessionMemoryStore,
        enabled: bool = True,
        failure_history: FailureHistoryStore | None = None,
    ) -> None:
        self.memory = memory
        self.enabled = enabled
        self.failure_history = failure_history
        self.failure_categories: Counter[str] = Counter()

    def record_iteration_outcome(self, outcome: IterationOutcome) -> None:
        if not self.enabled:
            return

        if outcome.agent_error or outcome.verification_failed:
            self._record_failure(outcome)

        if outcome.was_successful and outcome.retry_count > 0 and outcome.retry_contexts:
            last = outcome.retry_contexts[-1]
            self.memory.add_lesson(
                f'Task "{outcome.task_title}" succeeded after retry: '
                f"{last.root_cause} was resolved"
            )
            self.memory.add_success_pattern(
                f"Recovered from {last.failure_category} by addressing: {last.root_cause}"
            )

        if outcome.was_successful:
            self.memory.add_success_pattern(f"Completed task: {outcome.task_title}")

    def _record_failure(self, outcome: IterationOutcome) -> None:
        error = outcome.agent_error or "Verification failed"
        analysis = analyze_failure(error, outcome.output, outcome.exit_code)
        self.failure_categories[analysis.category] += 1
        count = self.failure_categories[analysis.category]
        if count == RECURRING_FAILURE_THRESHOLD:
            logger.info(f"Recurring failure pattern detected: {analysis.category} ({count}x)")

        if self.failure_history is not None:
            self.failure_history.record_failure(
                error, outcome.output, outcome.task_title, outcome.exit_code, outcome.iteration
            )
            recurring = [
                pattern
                for pattern in self.failure_history.analyze_patterns()
                if pattern.occurrences >= PATTERN_THRESHOLD
            ]
            if recurring:
                logger.info(
                    f"{len(recurring)} recurring failure pattern(s), top: {recurring[0].category}"
                )

        if outcome.verification_failed and outcome.failed_checks:
            self.memory.add_failed_approach(
                f"Verification failed: {', '.join(outcome.failed_checks)}"
            )
