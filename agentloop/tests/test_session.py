"""Tests for session persistence."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from agentloop.errors import ConfigValidationError, ErrorCode, SessionPersistenceError
from agentloop.session import Session, SessionStore


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path)


class TestSessionStoreBasics:
    """Tests for create/save/load/delete."""

    def test_create(self, store: SessionStore):
        """A new session is running at iteration 0 with empty statistics."""
        session = store.create(10, 2)

        assert session.status == "running"
        assert session.current_iteration == 0
        assert session.total_iterations == 10
        assert session.current_task_index == 2
        assert session.stats.completed_iterations == 0
        assert session.start_time == session.last_update_time

    def test_load_missing_returns_none(self, store: SessionStore):
        assert store.load() is None
        assert not store.exists()

    def test_save_and_load_round_trip(self, store: SessionStore):
        session = store.create(5, 0)
        store.record_iteration_start(session, 1)
        store.record_iteration_end(session, 1, True)

        store.save(session)

        assert store.load() == session

    def test_load_adds_missing_statistics(self, store: SessionStore, tmp_path: Path):
        """A session written without statistics gets a fresh block, saved back."""
        (tmp_path / "session.json").write_text(
            json.dumps({"start_time": 1, "last_update_time": 2, "total_iterations": 4})
        )

        session = store.load()

        assert session.statistics is not None
        assert session.statistics.total_iterations == 4
        on_disk = json.loads((tmp_path / "session.json").read_text())
        assert on_disk["statistics"]["totalIterations"] == 4
        assert on_disk["startTime"] == 1

    def test_load_corrupt_file(self, store: SessionStore, tmp_path: Path):
        (tmp_path / "session.json").write_text("{nope")

        with pytest.raises(ConfigValidationError) as exc_info:
            store.load()

        assert exc_info.value.code == ErrorCode.SESSION_CORRUPTED

    def test_load_wrong_structure(self, store: SessionStore, tmp_path: Path):
        (tmp_path / "session.json").write_text(json.dumps({"status": "running"}))

        with pytest.raises(ConfigValidationError) as exc_info:
            store.load()

        assert exc_info.value.code == ErrorCode.SESSION_CORRUPTED
        assert any("totalIterations" in error for error in exc_info.value.errors)

    def test_save_failure_raises_persistence_error(self, store: SessionStore):
        session = store.create(1, 0)

        with patch("agentloop.session.write_json_atomic", side_effect=OSError("disk full")):
            with pytest.raises(SessionPersistenceError) as exc_info:
                store.save(session)

        assert "disk full" in str(exc_info.value)

    def test_delete(self, store: SessionStore):
        store.save(store.create(1, 0))

        store.delete()
        store.delete()

        assert not store.exists()

    def test_is_resumable(self, store: SessionStore):
        session = store.create(1, 0)

        for status in ("running", "paused", "stopped"):
            store.update_status(session, status)
            assert store.is_resumable(session)

        store.update_status(session, "completed")
        assert not store.is_resumable(session)
        assert not store.is_resumable(None)


class TestIterationTracking:
    """Tests for iteration start/end statistics."""

    def test_update_iteration(self, store: SessionStore):
        session = store.create(10, 0)

        store.update_iteration(session, 3, 2, 120)

        assert session.current_iteration == 3
        assert session.current_task_index == 2
        assert session.elapsed_time_seconds == 120

    def test_start_twice_keeps_one_timing(self, store: SessionStore):
        """Starting the same iteration again restarts its timing."""
        session = store.create(10, 0)

        store.record_iteration_start(session, 1)
        store.record_iteration_start(session, 1)

        assert len(session.stats.iteration_timings) == 1

    def test_end_updates_counters(self, store: SessionStore):
        session = store.create(10, 0)
        store.record_iteration_start(session, 1)
        store.record_iteration_end(session, 1, True)
        store.record_iteration_start(session, 2)
        store.record_iteration_end(session, 2, False)

        stats = session.stats
        assert stats.completed_iterations == 2
        assert stats.successful_iterations == 1
        assert stats.failed_iterations == 1
        assert stats.success_rate == 50
        assert stats.iteration_timings[0].end_time is not None
        assert stats.iteration_timings[0].duration_ms is not None

    def test_end_without_start_records_zero_duration(self, store: SessionStore):
        session = store.create(10, 0)

        store.record_iteration_end(session, 4, True)

        timing = session.stats.iteration_timings[0]
        assert timing.iteration == 4
        assert timing.duration_ms == 0

    def test_duration_uses_clock(self, store: SessionStore):
        """Duration is the difference between end and start timestamps."""
        session = store.create(10, 0)
        with patch("agentloop.session.now_ms", side_effect=[1_000, 3_500]):
            store.record_iteration_start(session, 1)
            store.record_iteration_end(session, 1, True)

        assert session.stats.iteration_timings[0].duration_ms == 2_500
        assert session.stats.total_duration_ms == 2_500
        assert session.stats.average_duration_ms == 2_500


class TestParallelState:
    """Tests for the parallel-mode section of the session."""

    def make_parallel_session(self, store: SessionStore) -> Session:
        session = store.create(10, 0)
        store.enable_parallel_mode(session, 2)
        store.start_parallel_group(session, 0)
        store.start_task_execution(session, "a", "Task A", 0, "a")
        store.start_task_execution(session, "b", "Task B", 1, "b")
        return session

    def test_enable_and_disable(self, store: SessionStore):
        session = store.create(10, 0)

        store.enable_parallel_mode(session, 3)
        assert store.is_parallel_mode(session)
        assert session.parallel_state.max_concurrent_tasks == 3

        store.disable_parallel_mode(session)
        assert not store.is_parallel_mode(session)

    def test_start_task_execution(self, store: SessionStore):
        session = self.make_parallel_session(store)

        assert [e.task_id for e in store.get_active_executions(session)] == ["a", "b"]
        assert store.is_task_executing(session, "a")
        group = store.get_current_parallel_group(session)
        assert [e.task_id for e in group.task_executions] == ["a", "b"]

    def test_complete_and_fail(self, store: SessionStore):
        session = self.make_parallel_session(store)

        store.complete_task_execution(session, "a", True)
        store.fail_task_execution(session, "b", "exploded")

        assert store.get_task_execution(session, "a").status == "completed"
        failed = store.get_task_execution(session, "b")
        assert failed.status == "failed"
        assert failed.last_error == "exploded"
        assert store.get_active_executions(session) == []
        group = store.get_current_parallel_group(session)
        assert {e.task_id: e.status for e in group.task_executions} == {
            "a": "completed",
            "b": "failed",
        }

    def test_terminal_execution_is_not_changed(self, store: SessionStore):
        session = self.make_parallel_session(store)
        store.complete_task_execution(session, "a", True)

        store.fail_task_execution(session, "a", "late failure")

        assert store.get_task_execution(session, "a").status == "completed"

    def test_retry_task_execution(self, store: SessionStore):
        session = self.make_parallel_session(store)
        store.fail_task_execution(session, "a", "boom")

        store.retry_task_execution(session, "a")

        execution = store.get_task_execution(session, "a")
        assert execution.status == "running"
        assert execution.retry_count == 1
        assert execution.last_error is None

    def test_complete_group_drops_finished_executions(self, store: SessionStore):
        session = self.make_parallel_session(store)
        store.complete_task_execution(session, "a", True)

        store.complete_parallel_group(session, 0)

        assert [e.task_id for e in session.parallel_state.active_executions] == ["b"]
        assert session.parallel_state.execution_groups[0].is_complete
        assert store.get_current_parallel_group(session) is None

    def test_parallel_helpers_without_parallel_state(self, store: SessionStore):
        """Parallel operations on a standard session are no-ops."""
        session = store.create(10, 0)

        store.start_parallel_group(session, 0)
        store.start_task_execution(session, "a", "A", 0, "a")

        assert session.parallel_state is None
        assert store.get_active_executions(session) == []
        assert store.get_task_execution(session, "a") is None
        assert store.get_current_parallel_group(session) is None
