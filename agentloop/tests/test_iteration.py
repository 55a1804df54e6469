"""Tests for the iteration controller."""

import asyncio

import pytest

from agentloop.events import ITERATION_COMPLETE, ITERATION_DELAY, ITERATION_START, EventBus
from agentloop.iteration import IterationController


def auto_complete(controller: IterationController, starts: list[int], done_at: int = 0):
    """on_iteration_start handler that finishes each iteration immediately."""

    def on_start(iteration: int) -> None:
        starts.append(iteration)
        controller.mark_iteration_complete(iteration == done_at, has_pending_tasks=True)

    return on_start


class TestLoop:
    """Tests for iteration sequencing."""

    @pytest.mark.asyncio
    async def test_runs_until_max_iterations(self):
        controller = IterationController(total=3, delay_ms=0)
        starts: list[int] = []
        controller.on_iteration_start = auto_complete(controller, starts)

        controller.start()
        state = await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert state == "max_iterations"
        assert starts == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_project_complete_stops_early(self):
        controller = IterationController(total=10, delay_ms=0)
        starts: list[int] = []
        completed: list[bool] = []
        controller.on_iteration_start = auto_complete(controller, starts, done_at=2)
        controller.on_all_complete = lambda: completed.append(True)

        controller.start()
        state = await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert state == "complete"
        assert starts == [1, 2]
        assert completed == [True]

    @pytest.mark.asyncio
    async def test_full_mode_extends_budget(self):
        """With pending tasks, full mode keeps going past the initial total."""
        controller = IterationController(total=2, delay_ms=0, full_mode=True)
        starts: list[int] = []
        controller.on_iteration_start = auto_complete(controller, starts, done_at=5)

        controller.start()
        state = await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert state == "complete"
        assert starts == [1, 2, 3, 4, 5]
        assert controller.total == 5

    @pytest.mark.asyncio
    async def test_max_runtime(self):
        now = [0.0]
        controller = IterationController(
            total=10, delay_ms=0, max_runtime_ms=15_000, clock=lambda: now[0]
        )
        starts: list[int] = []

        def on_start(iteration: int) -> None:
            starts.append(iteration)
            now[0] += 10
            controller.mark_iteration_complete(False, True)

        controller.on_iteration_start = on_start

        controller.start()
        state = await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert state == "max_runtime"
        assert starts == [1, 2]

    @pytest.mark.asyncio
    async def test_start_from_iteration(self):
        controller = IterationController(total=5, delay_ms=0)
        starts: list[int] = []
        controller.on_iteration_start = auto_complete(controller, starts)

        controller.start_from_iteration(4)
        await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert starts == [4, 5]

    @pytest.mark.asyncio
    async def test_restart_current_iteration(self):
        controller = IterationController(total=1, delay_ms=0)
        starts: list[int] = []

        def on_start(iteration: int) -> None:
            starts.append(iteration)
            if len(starts) == 1:
                controller.restart_current_iteration()
            else:
                controller.mark_iteration_complete(False)

        controller.on_iteration_start = on_start

        controller.start()
        state = await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert starts == [1, 1]
        assert state == "max_iterations"


class TestControl:
    """Tests for stop, pause and fail."""

    @pytest.mark.asyncio
    async def test_stop_cancels_delay(self):
        controller = IterationController(total=5, delay_ms=60_000)
        controller.on_iteration_start = lambda n: controller.mark_iteration_complete(False)

        controller.start()
        assert controller.is_delaying

        controller.stop()

        assert controller.state == "stopped"
        assert not controller.is_delaying
        assert await controller.wait_until_finished() == "stopped"

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        controller = IterationController(total=5, delay_ms=60_000)
        controller.on_iteration_start = lambda n: controller.mark_iteration_complete(False)
        controller.start()

        controller.pause()
        assert controller.is_paused
        assert not controller.is_delaying

        controller.resume()
        assert controller.state == "running"
        assert controller.current == 1

        controller.stop()

    @pytest.mark.asyncio
    async def test_fail(self):
        controller = IterationController(total=5, delay_ms=0)
        controller.start()

        controller.fail()

        assert await controller.wait_until_finished() == "error"

    @pytest.mark.asyncio
    async def test_completion_after_finish_ignored(self):
        controller = IterationController(total=5, delay_ms=0)
        controller.start()
        controller.stop()

        controller.mark_iteration_complete(True)

        assert controller.state == "stopped"

    def test_time_remaining(self):
        now = [100.0]
        controller = IterationController(total=1, max_runtime_ms=10_000, clock=lambda: now[0])
        assert controller.time_remaining_ms() is None

        controller.start_time = 100.0
        now[0] = 104.0

        assert controller.time_remaining_ms() == 6_000
        assert controller.elapsed_seconds() == 4


class TestEvents:
    """Tests for iteration events."""

    @pytest.mark.asyncio
    async def test_event_sequence(self):
        events = EventBus()
        seen: list[tuple[str, int]] = []
        for name in (ITERATION_START, ITERATION_COMPLETE, ITERATION_DELAY):
            events.on(name, lambda event, name=name: seen.append((name, event.iteration)))

        controller = IterationController(total=2, delay_ms=0, events=events)
        controller.on_iteration_start = lambda n: controller.mark_iteration_complete(False)
        controller.start()
        await asyncio.wait_for(controller.wait_until_finished(), 5)

        assert seen == [
            (ITERATION_START, 1),
            (ITERATION_COMPLETE, 1),
            (ITERATION_DELAY, 1),
            (ITERATION_START, 2),
            (ITERATION_COMPLETE, 2),
        ]
