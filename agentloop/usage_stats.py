"""Lifetime usage statistics across sessions.

usage-statistics.json keeps running totals, the most recent sessions and a
per-day rollup. It is updated once at the end of every session.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Literal

from pydantic import Field

from agentloop.errors import ConfigValidationError, ErrorCode
from agentloop.models import Record, decode_record
from agentloop.task_list import write_json_atomic

logger = logging.getLogger(__name__)

USAGE_FILE_NAME = "usage-statistics.json"
STATISTICS_VERSION = 1
MAX_RECENT_SESSIONS = 20
MAX_DAILY_USAGE_DAYS = 30

SessionOutcome = Literal["completed", "stopped", "failed"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LifetimeStatistics(Record):
    total_sessions: int = 0
    total_iterations: int = 0
    total_tasks_completed: int = 0
    total_tasks_attempted: int = 0
    total_duration_ms: int = 0
    successful_iterations: int = 0
    failed_iterations: int = 0
    average_iterations_per_session: float = 0
    average_tasks_per_session: float = 0
    average_session_duration_ms: float = 0
    overall_success_rate: float = 0


class SessionRecord(Record):
    id: str
    started_at: str
    completed_at: str | None = None
    duration_ms: int
    total_iterations: int
    completed_iterations: int
    successful_iterations: int
    failed_iterations: int
    tasks_completed: int
    tasks_attempted: int
    status: SessionOutcome


class DailyUsage(Record):
    date: str
    sessions_started: int = 0
    iterations_run: int = 0
    tasks_completed: int = 0
    total_duration_ms: int = 0


class UsageStatistics(Record):
    version: int = STATISTICS_VERSION
    project_name: str
    created_at: str = Field(default_factory=_now_iso)
    last_updated_at: str = Field(default_factory=_now_iso)
    lifetime: LifetimeStatistics = Field(default_factory=LifetimeStatistics)
    recent_sessions: list[SessionRecord] = Field(default_factory=list)
    daily_usage: list[DailyUsage] = Field(default_factory=list)


@dataclass
class UsageSummary:
    total_sessions: int
    total_iterations: int
    total_tasks_completed: int
    total_duration_ms: int
    overall_success_rate: float
    average_session_duration_ms: float
    average_iterations_per_session: float
    last_session_at: str | None
    streak_days: int


def format_duration(milliseconds: float) -> str:
    """Human duration: 2h 5m, 3m 20s or 45s."""
    seconds = int(milliseconds // 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def calculate_streak_days(daily_usage: list[DailyUsage], today: date | None = None) -> int:
    """Consecutive days with usage, ending today or yesterday."""
    if not daily_usage:
        return 0

    today = today or datetime.now(timezone.utc).date()
    used = {entry.date for entry in daily_usage}
    if today.isoformat() in used:
        expected = today
    elif (today - timedelta(days=1)).isoformat() in used:
        expected = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while expected.isoformat() in used:
        streak += 1
        expected -= timedelta(days=1)
    return streak


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class UsageStatisticsStore:
    """Reads and updates usage-statistics.json.

    Args:
        state_dir: Directory holding the statistics file
        project_name: Used when a new statistics record is created
    """

    def __init__(self, state_dir: Path, project_name: str = "Unknown Project") -> None:
        self.path = state_dir / USAGE_FILE_NAME
        self.project_name = project_name

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> UsageStatistics:
        """Read the statistics, or an empty record if there is no file.

        Raises:
            ConfigValidationError: If the file is corrupt or malformed
        """
        if not self.path.exists():
            return UsageStatistics(project_name=self.project_name)
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigValidationError(
                [f"<root>: {e}"], source=str(self.path), code=ErrorCode.CONFIG_INVALID_JSON
            ) from e
        return decode_record(UsageStatistics, data, source=str(self.path))

    def save(self, statistics: UsageStatistics) -> None:
        write_json_atomic(self.path, statistics.to_json_dict(), indent="\t")

    def record_session(self, record: SessionRecord) -> UsageStatistics:
        """Fold one finished session into the statistics and save them."""
        statistics = self.load()
        lifetime = statistics.lifetime

        statistics.recent_sessions.insert(0, record)
        del statistics.recent_sessions[MAX_RECENT_SESSIONS:]

        lifetime.total_sessions += 1
        lifetime.total_iterations += record.completed_iterations
        lifetime.total_tasks_completed += record.tasks_completed
        lifetime.total_tasks_attempted += record.tasks_attempted
        lifetime.total_duration_ms += record.duration_ms
        lifetime.successful_iterations += record.successful_iterations
        lifetime.failed_iterations += record.failed_iterations

        sessions = lifetime.total_sessions
        lifetime.average_iterations_per_session = lifetime.total_iterations / sessions
        lifetime.average_tasks_per_session = lifetime.total_tasks_completed / sessions
        lifetime.average_session_duration_ms = lifetime.total_duration_ms / sessions
        attempted = lifetime.successful_iterations + lifetime.failed_iterations
        lifetime.overall_success_rate = (
            lifetime.successful_iterations / attempted * 100 if attempted else 0
        )

        day = record.started_at.split("T")[0]
        entry = next((d for d in statistics.daily_usage if d.date == day), None)
        if entry is None:
            entry = DailyUsage(date=day)
            statistics.daily_usage.append(entry)
        entry.sessions_started += 1
        entry.iterations_run += record.completed_iterations
        entry.tasks_completed += record.tasks_completed
        entry.total_duration_ms += record.duration_ms
        statistics.daily_usage.sort(key=lambda d: d.date, reverse=True)
        del statistics.daily_usage[MAX_DAILY_USAGE_DAYS:]

        statistics.last_updated_at = _now_iso()
        self.save(statistics)
        logger.debug(f"Recorded session {record.id} ({record.status}) in usage statistics")
        return statistics

    def get_summary(self) -> UsageSummary:
        statistics = self.load()
        lifetime = statistics.lifetime
        last = statistics.recent_sessions[0] if statistics.recent_sessions else None
        return UsageSummary(
            total_sessions=lifetime.total_sessions,
            total_iterations=lifetime.total_iterations,
            total_tasks_completed=lifetime.total_tasks_completed,
            total_duration_ms=lifetime.total_duration_ms,
            overall_success_rate=lifetime.overall_success_rate,
            average_session_duration_ms=lifetime.average_session_duration_ms,
            average_iterations_per_session=lifetime.average_iterations_per_session,
            last_session_at=last.started_at if last else None,
            streak_days=calculate_streak_days(statistics.daily_usage),
        )

    def get_recent_sessions(self, limit: int = 10) -> list[SessionRecord]:
        return self.load().recent_sessions[:limit]

    def get_daily_usage(self, days: int = 7) -> list[DailyUsage]:
        return self.load().daily_usage[:days]

    def format_for_display(self) -> str:
        summary = self.get_summary()
        lines = [
            "=== Usage Statistics ===",
            "",
            "Lifetime Statistics:",
            f"  Total Sessions: {summary.total_sessions}",
            f"  Total Iterations: {summary.total_iterations}",
            f"  Tasks Completed: {summary.total_tasks_completed}",
            f"  Total Time: {format_duration(summary.total_duration_ms)}",
            f"  Success Rate: {summary.overall_success_rate:.1f}%",
            f"  Avg Session Duration: {format_duration(summary.average_session_duration_ms)}",
            f"  Avg Iterations/Session: {summary.average_iterations_per_session:.1f}",
        ]
        if summary.streak_days:
            lines.append(f"  Current Streak: {_plural(summary.streak_days, 'day')}")
        if summary.last_session_at:
            lines.append(f"  Last Session: {summary.last_session_at}")

        daily = self.get_daily_usage(7)
        if daily:
            lines += ["", "Daily Usage (Last 7 Days):"]
            for day in daily:
                lines.append(
                    f"  {day.date}: {_plural(day.sessions_started, 'session')}, "
                    f"{_plural(day.iterations_run, 'iteration')}, "
                    f"{_plural(day.tasks_completed, 'task')}"
                )

        recent = self.get_recent_sessions(5)
        if recent:
            lines += ["", "Recent Sessions:"]
            for session in recent:
                lines.append(
                    f"  [{session.status}] {session.started_at} - "
                    f"{format_duration(session.duration_ms)}, "
                    f"{session.completed_iterations}/{session.total_iterations} iterations, "
                    f"{session.tasks_completed} tasks"
                )
        return "\n".join(lines)
