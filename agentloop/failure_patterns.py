"""Failure history and recurring failure patterns.

Every failed iteration is appended to failure-history.json. Failures of the
same category whose normalized messages share most of their words are
grouped into a pattern; a pattern seen PATTERN_THRESHOLD times or more comes
with a suggested guardrail the user can adopt.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import Field

from agentloop.classifier import analyze_failure
from agentloop.errors import ConfigValidationError, ErrorCode
from agentloop.guardrails import PromptGuardrail, generate_guardrail_id
from agentloop.models import Record, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

FAILURE_HISTORY_FILE_NAME = "failure-history.json"
MAX_FAILURE_HISTORY_ENTRIES = 100
PATTERN_THRESHOLD = 3
SIMILARITY_THRESHOLD = 0.7
PATTERN_MAX_LENGTH = 200

CATEGORY_GUARDRAILS = {
    "build_failure": "Always run the build command and fix any errors before committing changes",
    "test_failure": "Run the test suite after making changes and ensure all tests pass",
    "lint_error": "Run the linter before committing and fix all style issues",
    "permission_error": "Verify file permissions before attempting to modify files",
    "timeout": "Break large tasks into smaller, more focused subtasks",
    "stuck": "Use incremental changes with frequent saves to avoid getting stuck",
    "network_error": (
        "Check network connectivity before operations that require external services"
    ),
    "syntax_error": "Validate syntax by running the compiler/interpreter after each change",
    "dependency_error": "Verify all dependencies are installed before running the project",
    "unknown": "Review error messages carefully and address the root cause before proceeding",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FailureHistoryEntry(Record):
    timestamp: str = Field(default_factory=_now_iso)
    error: str
    task_title: str
    category: str
    root_cause: str
    exit_code: int | None = None
    iteration: int


class FailurePattern(Record):
    pattern: str
    category: str
    occurrences: int
    first_seen: str
    last_seen: str
    affected_tasks: list[str] = Field(default_factory=list)
    suggested_guardrail: str | None = None
    resolved: bool = False


class FailureHistory(Record):
    entries: list[FailureHistoryEntry] = Field(default_factory=list)
    patterns: list[FailurePattern] = Field(default_factory=list)
    last_analyzed_at: str | None = None


def normalize_error(error: str) -> str:
    """Lowercase, with numbers and quoted text masked, so similar errors compare equal."""
    normalized = re.sub(r"\d+", "N", error.lower())
    normalized = re.sub(r"""['"`].*?['"`]""", '"..."', normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    return normalized[:PATTERN_MAX_LENGTH]


def word_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the space-separated words of two strings."""
    first_words, second_words = set(first.split(" ")), set(second.split(" "))
    union = first_words | second_words
    return len(first_words & second_words) / len(union) if union else 1.0


def group_entries(entries: list[FailureHistoryEntry]) -> list[list[FailureHistoryEntry]]:
    """Group entries by category and message similarity, oldest first."""
    groups = []
    grouped: set[int] = set()
    for index, entry in enumerate(entries):
        if index in grouped:
            continue
        grouped.add(index)
        normalized = normalize_error(entry.error)
        group = [entry]
        for other_index in range(index + 1, len(entries)):
            other = entries[other_index]
            if other_index in grouped or other.category != entry.category:
                continue
            if word_similarity(normalized, normalize_error(other.error)) > SIMILARITY_THRESHOLD:
                group.append(other)
                grouped.add(other_index)
        groups.append(group)
    return groups


def suggest_guardrail(category: str, entries: list[FailureHistoryEntry]) -> str:
    suggestion = CATEGORY_GUARDRAILS.get(category)
    if suggestion:
        return suggestion
    root_cause = entries[0].root_cause if entries else ""
    return f"Address common issue: {root_cause or 'unknown error'}"


class FailureHistoryStore:
    """Records failures and derives recurring patterns from them.

    Args:
        state_dir: Directory holding failure-history.json
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / FAILURE_HISTORY_FILE_NAME

    def load(self) -> FailureHistory:
        """Read the history, or an empty one if there is none.

        Raises:
            ConfigValidationError: If the file is corrupt or malformed
        """
        if not self.path.exists():
            return FailureHistory()
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(self.path), code=ErrorCode.CONFIG_INVALID_JSON
            ) from e
        return decode_record(FailureHistory, data, source=str(self.path))

    def save(self, history: FailureHistory) -> None:
        write_json_atomic(self.path, history.to_json_dict(), indent="\t")

    def record_failure(
        self,
        error: str,
        output: str,
        task_title: str,
        exit_code: int | None,
        iteration: int,
    ) -> FailureHistoryEntry:
        """Append a classified failure, keeping the newest entries only."""
        history = self.load()
        analysis = analyze_failure(error, output, exit_code)
        entry = FailureHistoryEntry(
            error=error,
            task_title=task_title,
            category=analysis.category,
            root_cause=analysis.root_cause,
            exit_code=exit_code,
            iteration=iteration,
        )
        history.entries.append(entry)
        del history.entries[:-MAX_FAILURE_HISTORY_ENTRIES]
        self.save(history)
        return entry

    def analyze_patterns(self) -> list[FailurePattern]:
        """Group the history into patterns, most frequent first, and save them.

        Failures seen only once are not patterns.
        """
        history = self.load()
        patterns = []
        for group in group_entries(history.entries):
            if len(group) < 2:
                continue
            first, last = group[0], group[-1]
            patterns.append(
                FailurePattern(
                    pattern=normalize_error(first.error),
                    category=first.category,
                    occurrences=len(group),
                    first_seen=first.timestamp,
                    last_seen=last.timestamp,
                    affected_tasks=list(dict.fromkeys(entry.task_title for entry in group)),
                    suggested_guardrail=(
                        suggest_guardrail(first.category, group)
                        if len(group) >= PATTERN_THRESHOLD
                        else None
                    ),
                )
            )
        patterns.sort(key=lambda pattern: pattern.occurrences, reverse=True)

        history.patterns = patterns
        history.last_analyzed_at = _now_iso()
        self.save(history)
        return patterns

    def get_suggested_guardrails(self) -> list[PromptGuardrail]:
        """Disabled guardrails proposed for the recurring patterns."""
        suggestions = []
        for pattern in self.analyze_patterns():
            if pattern.occurrences < PATTERN_THRESHOLD or not pattern.suggested_guardrail:
                continue
            suggestions.append(
                PromptGuardrail(
                    id=generate_guardrail_id("suggested"),
                    instruction=pattern.suggested_guardrail,
                    category="quality",
                    enabled=False,
                    added_after_failure=(
                        f"Pattern detected: {pattern.pattern[:50]}... "
                        f"({pattern.occurrences} occurrences)"
                    ),
                )
            )
        return suggestions

    def clear(self) -> None:
        self.save(FailureHistory())
