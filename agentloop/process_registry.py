"""Registry of live agent subprocesses.

Each agent invocation registers its process under an id ("default" in
standard mode, the task id in parallel mode) so that a stop request can find
and terminate it. Processes get SIGTERM first and SIGKILL once the grace
window passes. The registry also holds abort flags and per-id retry counters.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_ID = "default"
FORCE_KILL_TIMEOUT_SECONDS = 5


@dataclass
class ProcessEntry:
    """A tracked subprocess.

    Attributes:
        process: The asyncio subprocess handle
        created_at: Monotonic time of registration
        force_kill_handle: Pending SIGKILL timer once SIGTERM was sent
    """

    process: asyncio.subprocess.Process
    created_at: float = field(default_factory=time.monotonic)
    force_kill_handle: asyncio.TimerHandle | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    def cancel_force_kill(self) -> None:
        if self.force_kill_handle is not None:
            self.force_kill_handle.cancel()
            self.force_kill_handle = None


class ProcessRegistry:
    """Tracks agent subprocesses, abort state and retry counters by id.

    One registry is created per orchestrator and passed to every runner.
    Killed processes stay tracked by pid until they exit or are unregistered,
    so their pending SIGKILL can be cancelled.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ProcessEntry] = {}
        self._terminating: dict[int, ProcessEntry] = {}
        self._retry_counts: dict[str, int] = {}
        self._aborted_ids: set[str] = set()
        self._abort_events: dict[str, asyncio.Event] = {}
        self._global_abort = False

    def set_process(self, process_id: str, process: asyncio.subprocess.Process) -> None:
        """Track a process, terminating any live process already under this id."""
        self._prune_terminating()
        existing = self._entries.pop(process_id, None)
        if existing is not None:
            if existing.process is not process and existing.process.returncode is None:
                logger.warning(
                    f"Replacing live process {existing.pid} for '{process_id}', terminating it"
                )
                self._terminate(existing)
            else:
                existing.cancel_force_kill()
        self._entries[process_id] = ProcessEntry(process=process)

    def unregister(
        self, process_id: str, process: asyncio.subprocess.Process | None = None
    ) -> None:
        """Forget the process under this id and cancel its pending SIGKILL.

        Args:
            process_id: Registry id
            process: When given, only this process is forgotten; a newer
                process registered under the same id stays tracked
        """
        entry = self._entries.get(process_id)
        if entry is not None and (process is None or entry.process is process):
            del self._entries[process_id]
            entry.cancel_force_kill()
        if process is not None:
            terminating = self._terminating.pop(process.pid, None)
            if terminating is not None:
                terminating.cancel_force_kill()

    def get_process(self, process_id: str) -> asyncio.subprocess.Process | None:
        entry = self._entries.get(process_id)
        return entry.process if entry is not None else None

    def is_running(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        entry = self._entries.get(process_id)
        return entry is not None and entry.process.returncode is None

    def active_ids(self) -> list[str]:
        """Ids whose process has not exited yet."""
        return [pid for pid in self._entries if self.is_running(pid)]

    def kill(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        """Terminate the process under this id and drop its entry.

        Returns:
            True if a live process was signalled
        """
        entry = self._entries.pop(process_id, None)
        if entry is None:
            return False
        return self._terminate(entry)

    def kill_all(self) -> None:
        """Abort everything: set the global abort flag and kill every process."""
        self._global_abort = True
        for event in self._abort_events.values():
            event.set()
        for process_id in list(self._entries):
            self.kill(process_id)

    def abort(self, process_id: str = DEFAULT_PROCESS_ID) -> None:
        """Abort one id: flag it and kill its process."""
        self._aborted_ids.add(process_id)
        self._abort_event(process_id).set()
        self.kill(process_id)

    def is_aborted(self, process_id: str = DEFAULT_PROCESS_ID) -> bool:
        return self._global_abort or process_id in self._aborted_ids

    def reset(self, process_id: str | None = None) -> None:
        """Clear abort state for one id, or everything when no id is given."""
        if process_id is None:
            self._global_abort = False
            self._aborted_ids.clear()
            self._abort_events.clear()
            return
        self._aborted_ids.discard(process_id)
        self._abort_events.pop(process_id, None)

    async def wait_for_abort(self, process_id: str, timeout_seconds: float) -> bool:
        """Sleep up to timeout_seconds, waking early on abort.

        Returns:
            True if the id was aborted before or during the wait
        """
        if self.is_aborted(process_id):
            return True
        event = self._abort_event(process_id)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            pass
        return self.is_aborted(process_id)

    def get_retry_count(self, process_id: str = DEFAULT_PROCESS_ID) -> int:
        return self._retry_counts.get(process_id, 0)

    def increment_retry(self, process_id: str = DEFAULT_PROCESS_ID) -> int:
        """Increment and return the retry counter for this id."""
        self._retry_counts[process_id] = self.get_retry_count(process_id) + 1
        return self._retry_counts[process_id]

    def reset_retry(self, process_id: str = DEFAULT_PROCESS_ID) -> None:
        self._retry_counts.pop(process_id, None)

    def _abort_event(self, process_id: str) -> asyncio.Event:
        event = self._abort_events.get(process_id)
        if event is None:
            event = asyncio.Event()
            if self._global_abort:
                event.set()
            self._abort_events[process_id] = event
        return event

    def _terminate(self, entry: ProcessEntry) -> bool:
        """Send SIGTERM and schedule SIGKILL after the grace window."""
        process = entry.process
        if process.returncode is not None:
            return False
        if entry.force_kill_handle is not None:
            return True
        try:
            process.terminate()
        except ProcessLookupError:
            return False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to wait on, skip the grace window
            self._force_kill(entry)
            return True

        entry.force_kill_handle = loop.call_later(
            FORCE_KILL_TIMEOUT_SECONDS, self._force_kill, entry
        )
        self._terminating[entry.pid] = entry
        return True

    def _force_kill(self, entry: ProcessEntry) -> None:
        entry.force_kill_handle = None
        if self._terminating.get(entry.pid) is entry:
            del self._terminating[entry.pid]
        process = entry.process
        if process.returncode is not None:
            return
        logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    def _prune_terminating(self) -> None:
        """Drop killed processes that have exited, cancelling their SIGKILL."""
        for pid, entry in list(self._terminating.items()):
            if entry.process.returncode is not None:
                entry.cancel_force_kill()
                del self._terminating[pid]
