"""Run lock for a state directory.

Provides PID-based locking so only one runner works a given state directory
(and therefore one board and budget) at a time.
"""

import os
from pathlib import Path
from types import TracebackType

from backlog_runner.errors import RunnerError

LOCK_FILE = "runner.lock"


class RunLock:
    """PID-based lock held for the life of a runner session.

    The lock is a file in the state directory containing the PID of the
    runner that owns it. A second runner pointed at the same state directory
    refuses to start while that PID is alive; a lock left behind by a dead
    process is reclaimed.

    Usage:
        with RunLock(state_dir):
            # control loop runs - lock is held
            ...
        # lock file removed

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path) -> None:
        """Initialize the lock for a state directory.

        Args:
            state_dir: Runner state directory; created on acquire if missing
        """
        self.lock_path = state_dir / LOCK_FILE

    def acquire(self) -> bool:
        """Try to acquire the lock.

        A lock already held by this process is re-acquired. A lock whose
        holder is no longer running, or whose content is not a PID, is
        overwritten.

        Returns:
            True if acquired, False if held by another running process
        """
        holder_pid = self.get_holder_pid()
        if holder_pid is not None and holder_pid != os.getpid():
            if self._is_process_running(holder_pid):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock if this process holds it.

        Safe to call when the lock file is missing or owned by another
        runner; neither case touches the file.
        """
        if self.get_holder_pid() == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """Get the PID recorded in the lock file.

        Returns:
            PID as int, or None if the lock file is missing or does not
            contain a valid PID
        """
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _is_process_running(self, pid: int) -> bool:
        """Check whether a process with the given PID exists.

        Args:
            pid: Process ID to check

        Returns:
            True if the process exists (even when owned by another user),
            False otherwise
        """
        try:
            os.kill(pid, 0)  # Signal 0 checks existence only
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return True

    def __enter__(self) -> "RunLock":
        """Acquire the lock on context entry.

        Raises:
            RunnerError: If another running process holds the lock
                (error_code "LOCK-Held")
        """
        if not self.acquire():
            raise RunnerError(
                f"Another runner is using {self.lock_path.parent} "
                f"(PID: {self.get_holder_pid()})",
                error_code="LOCK-Held",
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release the lock on context exit."""
        self.release()
