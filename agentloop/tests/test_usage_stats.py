"""Tests for lifetime usage statistics."""

import json
from datetime import date
from pathlib import Path

import pytest

from agentloop.errors import ConfigValidationError
from agentloop.usage_stats import (
    MAX_RECENT_SESSIONS,
    DailyUsage,
    SessionRecord,
    UsageStatisticsStore,
    calculate_streak_days,
    format_duration,
)


def make_record(session_id: str = "s1", started_at: str = "2026-03-02T10:00:00+00:00", **fields):
    settings = {
        "id": session_id,
        "started_at": started_at,
        "duration_ms": 60_000,
        "total_iterations": 10,
        "completed_iterations": 4,
        "successful_iterations": 3,
        "failed_iterations": 1,
        "tasks_completed": 2,
        "tasks_attempted": 3,
        "status": "completed",
    }
    settings.update(fields)
    return SessionRecord(**settings)


@pytest.fixture
def store(tmp_path: Path) -> UsageStatisticsStore:
    return UsageStatisticsStore(tmp_path, "Demo")


class TestHelpers:
    """Tests for formatting helpers."""

    def test_format_duration(self):
        assert format_duration(45_000) == "45s"
        assert format_duration(200_000) == "3m 20s"
        assert format_duration(7_500_000) == "2h 5m"

    def test_streak_ending_today(self):
        usage = [DailyUsage(date=d) for d in ("2026-03-03", "2026-03-02", "2026-02-27")]

        assert calculate_streak_days(usage, today=date(2026, 3, 3)) == 2

    def test_streak_ending_yesterday(self):
        usage = [DailyUsage(date="2026-03-02")]

        assert calculate_streak_days(usage, today=date(2026, 3, 3)) == 1

    def test_broken_streak(self):
        usage = [DailyUsage(date="2026-03-01")]

        assert calculate_streak_days(usage, today=date(2026, 3, 3)) == 0
        assert calculate_streak_days([], today=date(2026, 3, 3)) == 0


class TestUsageStatisticsStore:
    """Tests for UsageStatisticsStore."""

    def test_empty(self, store: UsageStatisticsStore):
        statistics = store.load()

        assert statistics.project_name == "Demo"
        assert statistics.lifetime.total_sessions == 0
        assert store.get_summary().last_session_at is None

    def test_record_session_updates_totals(self, store: UsageStatisticsStore):
        store.record_session(make_record("s1"))
        statistics = store.record_session(make_record("s2", completed_iterations=6))

        lifetime = statistics.lifetime
        assert lifetime.total_sessions == 2
        assert lifetime.total_iterations == 10
        assert lifetime.average_iterations_per_session == 5
        assert lifetime.overall_success_rate == 75
        assert [s.id for s in statistics.recent_sessions] == ["s2", "s1"]

    def test_daily_rollup(self, store: UsageStatisticsStore):
        store.record_session(make_record("s1", started_at="2026-03-01T09:00:00+00:00"))
        store.record_session(make_record("s2", started_at="2026-03-02T09:00:00+00:00"))
        store.record_session(make_record("s3", started_at="2026-03-02T18:00:00+00:00"))

        daily = store.get_daily_usage()
        assert [(d.date, d.sessions_started) for d in daily] == [
            ("2026-03-02", 2),
            ("2026-03-01", 1),
        ]

    def test_recent_sessions_capped(self, store: UsageStatisticsStore):
        for i in range(MAX_RECENT_SESSIONS + 3):
            store.record_session(make_record(f"s{i}"))

        recent = store.load().recent_sessions
        assert len(recent) == MAX_RECENT_SESSIONS
        assert recent[0].id == f"s{MAX_RECENT_SESSIONS + 2}"

    def test_saved_with_tabs(self, store: UsageStatisticsStore, tmp_path: Path):
        store.record_session(make_record())

        text = (tmp_path / "usage-statistics.json").read_text()
        assert '\n\t"version": 1' in text
        data = json.loads(text)
        assert data["lifetime"]["totalSessions"] == 1
        assert data["recentSessions"][0]["tasksCompleted"] == 2

    def test_corrupt_file(self, store: UsageStatisticsStore, tmp_path: Path):
        (tmp_path / "usage-statistics.json").write_text("nope")

        with pytest.raises(ConfigValidationError):
            store.load()

    def test_format_for_display(self, store: UsageStatisticsStore):
        store.record_session(make_record())

        text = store.format_for_display()

        assert "Total Sessions: 1" in text
        assert "Success Rate: 75.0%" in text
        assert "2026-03-02: 1 session, 4 iterations, 2 tasks" in text
        assert "[completed] 2026-03-02T10:00:00+00:00 - 1m 0s, 4/10 iterations, 2 tasks" in text
