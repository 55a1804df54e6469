"""Tests for the process registry."""

import asyncio
from unittest.mock import MagicMock

import pytest

from agentloop.process_registry import DEFAULT_PROCESS_ID, ProcessRegistry


def make_process(pid: int = 1234, returncode: int | None = None) -> MagicMock:
    """Mock asyncio subprocess handle."""
    process = MagicMock()
    process.pid = pid
    process.returncode = returncode
    return process


class TestTracking:
    """Tests for registering and killing processes."""

    def test_set_and_get(self):
        registry = ProcessRegistry()
        process = make_process()

        registry.set_process(DEFAULT_PROCESS_ID, process)

        assert registry.get_process(DEFAULT_PROCESS_ID) is process
        assert registry.is_running()
        assert registry.active_ids() == [DEFAULT_PROCESS_ID]

    def test_exited_process_is_not_running(self):
        registry = ProcessRegistry()
        registry.set_process("a", make_process(returncode=0))

        assert not registry.is_running("a")
        assert registry.active_ids() == []

    def test_replacing_terminates_previous(self):
        """Registering a new process under a live id terminates the old one."""
        registry = ProcessRegistry()
        old = make_process(pid=1)
        new = make_process(pid=2)

        registry.set_process("a", old)
        registry.set_process("a", new)

        old.terminate.assert_called_once()
        assert registry.get_process("a") is new

    def test_unregister(self):
        registry = ProcessRegistry()
        registry.set_process("a", make_process())

        registry.unregister("a")

        assert registry.get_process("a") is None

    def test_kill_without_loop_forces_kill(self):
        """Outside an event loop there is no grace window: SIGKILL follows SIGTERM."""
        registry = ProcessRegistry()
        process = make_process()
        registry.set_process("a", process)

        assert registry.kill("a") is True

        process.terminate.assert_called_once()
        process.kill.assert_called_once()
        assert registry.get_process("a") is None

    def test_kill_unknown_id(self):
        assert ProcessRegistry().kill("missing") is False

    def test_kill_exited_process(self):
        registry = ProcessRegistry()
        process = make_process(returncode=1)
        registry.set_process("a", process)

        assert registry.kill("a") is False
        process.terminate.assert_not_called()

    def test_kill_tolerates_vanished_process(self):
        registry = ProcessRegistry()
        process = make_process()
        process.terminate.side_effect = ProcessLookupError
        registry.set_process("a", process)

        assert registry.kill("a") is False

    @pytest.mark.asyncio
    async def test_kill_inside_loop_schedules_force_kill(self):
        """Inside a loop SIGKILL is deferred to the grace window."""
        registry = ProcessRegistry()
        process = make_process()
        registry.set_process("a", process)

        registry.kill("a")

        process.terminate.assert_called_once()
        process.kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_unregister_cancels_pending_force_kill(self):
        """Once a killed process is released its SIGKILL timer is cancelled."""
        registry = ProcessRegistry()
        process = make_process()
        registry.set_process("a", process)
        registry.kill("a")
        entry_handle = registry._terminating[process.pid].force_kill_handle

        process.returncode = -15
        registry.unregister("a", process)

        assert entry_handle.cancelled()
        assert registry._terminating == {}

    @pytest.mark.asyncio
    async def test_replacing_exited_process_cancels_force_kill(self):
        registry = ProcessRegistry()
        old = make_process(pid=1)
        registry.set_process("a", old)
        registry.kill("a")
        handle = registry._terminating[1].force_kill_handle

        old.returncode = -15
        registry.set_process("a", make_process(pid=2))

        assert handle.cancelled()
        old.kill.assert_not_called()

    @pytest.mark.asyncio
    async def test_replaced_live_process_keeps_force_kill(self):
        registry = ProcessRegistry()
        old = make_process(pid=1)
        registry.set_process("a", old)

        registry.set_process("a", make_process(pid=2))

        handle = registry._terminating[1].force_kill_handle
        assert handle is not None and not handle.cancelled()

    def test_unregister_ignores_newer_process(self):
        registry = ProcessRegistry()
        old, new = make_process(pid=1), make_process(pid=2, returncode=None)
        registry.set_process("a", new)

        registry.unregister("a", old)

        assert registry.get_process("a") is new


class TestAbort:
    """Tests for abort flags and abortable waits."""

    def test_kill_all_sets_global_abort(self):
        registry = ProcessRegistry()
        first, second = make_process(pid=1), make_process(pid=2)
        registry.set_process("a", first)
        registry.set_process("b", second)

        registry.kill_all()

        assert registry.is_aborted("a")
        assert registry.is_aborted("anything")
        first.terminate.assert_called_once()
        second.terminate.assert_called_once()
        assert registry.active_ids() == []

    def test_abort_single_id(self):
        registry = ProcessRegistry()

        registry.abort("a")

        assert registry.is_aborted("a")
        assert not registry.is_aborted("b")

    def test_reset_one_id(self):
        registry = ProcessRegistry()
        registry.abort("a")
        registry.abort("b")

        registry.reset("a")

        assert not registry.is_aborted("a")
        assert registry.is_aborted("b")

    def test_reset_all(self):
        registry = ProcessRegistry()
        registry.abort("a")
        registry.kill_all()

        registry.reset()

        assert not registry.is_aborted("a")
        assert not registry.is_aborted("b")

    @pytest.mark.asyncio
    async def test_wait_for_abort_times_out(self):
        registry = ProcessRegistry()

        assert await registry.wait_for_abort("a", 0.01) is False

    @pytest.mark.asyncio
    async def test_wait_for_abort_wakes_early(self):
        """An abort during the wait ends it immediately."""
        registry = ProcessRegistry()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, registry.abort, "a")

        started = loop.time()
        aborted = await registry.wait_for_abort("a", 5)

        assert aborted is True
        assert loop.time() - started < 1

    @pytest.mark.asyncio
    async def test_wait_after_global_abort_returns_immediately(self):
        registry = ProcessRegistry()
        registry.kill_all()

        assert await registry.wait_for_abort("new-id", 5) is True


class TestRetryCounters:
    """Tests for per-id retry counters."""

    def test_increment_and_reset(self):
        registry = ProcessRegistry()

        assert registry.increment_retry("a") == 1
        assert registry.increment_retry("a") == 2
        assert registry.get_retry_count("b") == 0

        registry.reset_retry("a")
        assert registry.get_retry_count("a") == 0
