"""PID lock for the state directory.

Only one agentloop process may drive a state directory at a time, since two
would race on the session record and the task list.
"""

import os
from pathlib import Path
from types import TracebackType

LOCK_FILE_NAME = "agentloop.lock"


class SessionLock:
    """PID-based lock on a state directory.

    The lock file holds the holder's PID. A lock left behind by a process
    that no longer exists is taken over.

    Usage:
        with SessionLock(state_dir):
            ...  # run the loop

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path) -> None:
        self.lock_path = state_dir / LOCK_FILE_NAME

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Returns:
            True if acquired, False if held by another running process
        """
        if self.lock_path.exists():
            holder_pid = self.get_holder_pid()
            if (
                holder_pid is not None
                and holder_pid != os.getpid()
                and self._is_process_running(holder_pid)
            ):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock. Safe to call when no lock exists."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID in the lock file, None if there is no lock or it is unreadable."""
        if not self.lock_path.exists():
            return None
        try:
            return int(self.lock_path.read_text().strip())
        except ValueError:
            return None

    def is_locked(self) -> bool:
        holder_pid = self.get_holder_pid()
        return holder_pid is not None and self._is_process_running(holder_pid)

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # signal 0 only checks existence
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists, owned by another user
            return True

    def __enter__(self) -> "SessionLock":
        """Acquire the lock.

        Raises:
            RuntimeError: If the lock is held by another running process
        """
        if not self.acquire():
            raise RuntimeError(f"agentloop already running (PID: {self.get_holder_pid()})")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
