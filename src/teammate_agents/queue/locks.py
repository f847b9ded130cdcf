"""Per-issue claim locks.

``IssueLock`` is an atomic mkdir lock that several processes can share
through a lock directory. ``LockManager`` hands out one lock per issue and
layers an in-process mutex on top, so threads in one coordinator serialize
without touching the filesystem more than necessary.
"""

import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Dict, Optional

from ..errors import LockTimeout

logger = logging.getLogger(__name__)


class IssueLock:
    """
    Atomic lock on one issue using mkdir.

    - mkdir is atomic on most filesystems
    - Stores PID for stale lock detection
    - Checks if process is still alive before claiming stale locks
    - Waits at most ``timeout`` seconds, then raises ``LockTimeout``
    """

    def __init__(
        self,
        lock_dir: Path,
        issue_id: str,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.lock_dir = Path(lock_dir)
        self.issue_id = issue_id
        self.lock_path = self.lock_dir / f"{_safe_name(issue_id)}.lock"
        self.pid_file = self.lock_path / "pid"
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._acquired = False

    def try_acquire(self) -> bool:
        """Single non-blocking attempt. Returns True if the lock was taken."""
        if self.lock_path.exists():
            if self._is_stale_lock():
                logger.info(f"Removing stale lock for {self.issue_id}")
                self._remove_lock()
            else:
                return False

        try:
            self.lock_path.mkdir(parents=True, exist_ok=False)
            self.pid_file.write_text(str(os.getpid()))
            self._acquired = True
            logger.debug(f"Acquired lock for {self.issue_id} (PID: {os.getpid()})")
            return True
        except FileExistsError:
            logger.debug(f"Lock for {self.issue_id} already exists (race condition)")
            return False

    def acquire(self, timeout: Optional[float] = None) -> None:
        """Block until the lock is held or the timeout expires."""
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while not self.try_acquire():
            if time.monotonic() >= deadline:
                raise LockTimeout(self.issue_id, timeout)
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._acquired and self.lock_path.exists():
            self._remove_lock()
        self._acquired = False

    def _is_stale_lock(self) -> bool:
        """Check if lock is stale (process no longer exists)."""
        if not self.pid_file.exists():
            # Holder may be between mkdir and writing the pid file
            return False

        try:
            pid = int(self.pid_file.read_text().strip())
            os.kill(pid, 0)
            return False
        except ValueError:
            logger.warning(f"Lock for {self.issue_id} has invalid PID (stale)")
            return True
        except ProcessLookupError:
            logger.warning(f"Lock for {self.issue_id} held by dead PID (stale)")
            return True
        except PermissionError:
            # Can't signal the process but it may still be alive
            return False
        except FileNotFoundError:
            return False

    def _remove_lock(self) -> None:
        if self.lock_path.exists():
            try:
                shutil.rmtree(self.lock_path)
            except OSError as e:
                logger.warning(f"Failed to remove lock directory {self.lock_path}: {e}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class _HeldLock:
    """Context manager pairing the in-process mutex with an optional file lock."""

    def __init__(self, manager: "LockManager", issue_id: str, timeout: float):
        self.manager = manager
        self.issue_id = issue_id
        self.timeout = timeout
        self._mutex: Optional[threading.Lock] = None
        self._file_lock: Optional[IssueLock] = None

    def __enter__(self):
        deadline = time.monotonic() + self.timeout
        mutex = self.manager._mutex_for(self.issue_id)
        if not mutex.acquire(timeout=self.timeout):
            raise LockTimeout(self.issue_id, self.timeout)
        self._mutex = mutex
        if self.manager.lock_dir is not None:
            file_lock = IssueLock(
                self.manager.lock_dir,
                self.issue_id,
                timeout=self.timeout,
                poll_interval=self.manager.poll_interval,
            )
            try:
                file_lock.acquire(timeout=max(0.0, deadline - time.monotonic()))
            except LockTimeout:
                mutex.release()
                self._mutex = None
                raise LockTimeout(self.issue_id, self.timeout)
            self._file_lock = file_lock
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._file_lock is not None:
            self._file_lock.release()
            self._file_lock = None
        if self._mutex is not None:
            self._mutex.release()
            self._mutex = None
        return False


class LockManager:
    """Hands out per-issue locks. ``lock_dir=None`` keeps locking in-process."""

    def __init__(
        self,
        lock_dir: Optional[Path] = None,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.lock_dir = Path(lock_dir) if lock_dir is not None else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._mutexes: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _mutex_for(self, issue_id: str) -> threading.Lock:
        with self._guard:
            mutex = self._mutexes.get(issue_id)
            if mutex is None:
                mutex = threading.Lock()
                self._mutexes[issue_id] = mutex
            return mutex

    def lock(self, issue_id: str, timeout: Optional[float] = None) -> _HeldLock:
        return _HeldLock(self, issue_id, self.timeout if timeout is None else timeout)


def _safe_name(identifier: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in identifier)
