"""Iteration loop state machine.

The controller decides when the next iteration starts. It does not run the
agent itself: it calls on_iteration_start(n) and waits for the orchestrator
to report back through mark_iteration_complete(). Between iterations it
sleeps for delay_ms in an asyncio task that pause() and stop() cancel.

States::

    idle -> running <-> paused
    running -> complete | max_iterations | max_runtime | error | stopped
"""

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Literal

from agentloop.events import (
    ITERATION_COMPLETE,
    ITERATION_DELAY,
    ITERATION_START,
    EventBus,
    IterationCompleteEvent,
    IterationDelayEvent,
    IterationStartEvent,
)

logger = logging.getLogger(__name__)

LoopState = Literal[
    "idle", "running", "paused", "complete", "max_iterations", "max_runtime", "error", "stopped"
]

TERMINAL_STATES = ("complete", "max_iterations", "max_runtime", "error", "stopped")


class IterationController:
    """Drives iteration numbering, delays and the runtime budget.

    Args:
        total: Number of iterations allowed
        delay_ms: Pause between iterations
        max_runtime_ms: Wall-clock budget for the loop, 0 for none
        full_mode: Keep adding iterations while tasks remain pending
        events: Bus for iteration:* events
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        total: int,
        delay_ms: int = 2000,
        max_runtime_ms: int = 0,
        full_mode: bool = False,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.total = total
        self.delay_ms = delay_ms
        self.max_runtime_ms = max_runtime_ms
        self.full_mode = full_mode
        self.events = events or EventBus()
        self._clock = clock

        self.state: LoopState = "idle"
        self.current = 0
        self.start_time: float | None = None

        self.on_iteration_start: Callable[[int], None] | None = None
        self.on_iteration_complete: Callable[[int], None] | None = None
        self.on_all_complete: Callable[[], None] | None = None
        self.on_max_iterations: Callable[[], None] | None = None
        self.on_max_runtime: Callable[[], None] | None = None

        self._delay_task: asyncio.Task | None = None
        self._finished = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self.state in ("running", "paused")

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    @property
    def is_delaying(self) -> bool:
        return self._delay_task is not None and not self._delay_task.done()

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self) -> None:
        """Begin at iteration 1."""
        self.start_from_iteration(1)

    def start_from_iteration(self, iteration: int) -> None:
        """Begin at the given iteration number."""
        if self.start_time is None:
            self.start_time = self._clock()
        self._finished.clear()
        self.state = "running"
        self.current = iteration
        self._fire_start(iteration)

    def pause(self) -> None:
        """Cancel a pending delay. The current position is kept."""
        self._cancel_delay()
        if self.state == "running":
            self.state = "paused"

    def resume(self) -> None:
        """Leave the paused state. Does not start the next iteration by itself."""
        if self.state == "paused":
            self.state = "running"

    def stop(self) -> None:
        """Stop the loop on user request."""
        self._cancel_delay()
        if not self.is_finished:
            self._finish("stopped")

    def fail(self) -> None:
        """Stop the loop because of a fatal error."""
        self._cancel_delay()
        self._finish("error")

    def set_total(self, total: int) -> None:
        self.total = total

    def next(self) -> None:
        """Advance to the next iteration, unless a limit has been reached."""
        if self.is_finished:
            return

        if self.current >= self.total:
            self._finish("complete")
            if self.on_all_complete is not None:
                self.on_all_complete()
            return

        if self.is_max_runtime_reached():
            logger.info(f"Max runtime ({self.max_runtime_ms}ms) reached")
            self._finish("max_runtime")
            if self.on_max_runtime is not None:
                self.on_max_runtime()
            return

        self.current += 1
        self._fire_start(self.current)

    def mark_iteration_complete(
        self, is_project_complete: bool, has_pending_tasks: bool | None = None
    ) -> None:
        """Report that the current iteration has finished.

        Args:
            is_project_complete: Every task is done
            has_pending_tasks: Some task is not done; in full mode this
                extends the iteration budget instead of stopping
        """
        if self.is_finished:
            return

        self.events.emit(
            ITERATION_COMPLETE,
            IterationCompleteEvent(iteration=self.current, is_project_complete=is_project_complete),
        )
        if self.on_iteration_complete is not None:
            self.on_iteration_complete(self.current)

        if is_project_complete:
            self._finish("complete")
            if self.on_all_complete is not None:
                self.on_all_complete()
            return

        if self.current >= self.total:
            if self.full_mode and has_pending_tasks:
                self.total += 1
                logger.info(f"Tasks still pending, extending to {self.total} iterations")
            else:
                self._finish("max_iterations")
                if self.on_max_iterations is not None:
                    self.on_max_iterations()
                return

        self._schedule(self.next)

    def restart_current_iteration(self) -> None:
        """Run the current iteration again after the delay, without advancing."""
        if self.is_finished:
            return

        def restart() -> None:
            if not self.is_finished:
                self._fire_start(self.current)

        self._schedule(restart)

    def is_max_runtime_reached(self) -> bool:
        if not self.max_runtime_ms or self.start_time is None:
            return False
        return (self._clock() - self.start_time) * 1000 >= self.max_runtime_ms

    def time_remaining_ms(self) -> int | None:
        """Milliseconds left in the runtime budget, None without a budget."""
        if not self.max_runtime_ms or self.start_time is None:
            return None
        elapsed_ms = (self._clock() - self.start_time) * 1000
        return max(0, int(self.max_runtime_ms - elapsed_ms))

    def elapsed_seconds(self) -> int:
        if self.start_time is None:
            return 0
        return int(self._clock() - self.start_time)

    async def wait_until_finished(self) -> LoopState:
        """Wait until the loop reaches a terminal state."""
        await self._finished.wait()
        return self.state

    def _fire_start(self, iteration: int) -> None:
        self.events.emit(
            ITERATION_START, IterationStartEvent(iteration=iteration, total_iterations=self.total)
        )
        if self.on_iteration_start is not None:
            self.on_iteration_start(iteration)

    def _schedule(self, callback: Callable[[], None]) -> None:
        self._cancel_delay()
        self.events.emit(
            ITERATION_DELAY, IterationDelayEvent(iteration=self.current, delay_ms=self.delay_ms)
        )
        self._delay_task = asyncio.get_running_loop().create_task(self._delay_then(callback))

    async def _delay_then(self, callback: Callable[[], None]) -> None:
        await asyncio.sleep(self.delay_ms / 1000)
        self._delay_task = None
        if self.state == "running":
            callback()

    def _cancel_delay(self) -> None:
        if self._delay_task is not None and not self._delay_task.done():
            self._delay_task.cancel()
        self._delay_task = None

    def _finish(self, state: LoopState) -> None:
        self.state = state
        self._finished.set()
