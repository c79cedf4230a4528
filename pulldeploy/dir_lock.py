"""
Per-directory locking for PullDeploy.

At most one reconciliation may run against a target directory at a time.
The webhook and the update poller share one registry, so a second trigger
for the same directory waits (up to an optional timeout) for the first to
reach its terminal state.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Union


class DirectoryLock:
    """
    Exclusive lock for one directory.

    Wraps a ``threading.Lock`` and records which thread holds it for
    diagnostics.
    """

    def __init__(self, path: Path):
        """
        Initialize directory lock.

        Args:
            path: Normalized directory path the lock protects
        """
        self.path = path
        self.logger = logging.getLogger('pulldeploy.dir_lock')
        self._lock = threading.Lock()
        self._holder: Optional[str] = None

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Acquire the lock.

        Args:
            timeout: Maximum time to wait (seconds); None waits indefinitely

        Returns:
            True if the lock was acquired, False if the timeout expired
        """
        if timeout is None:
            acquired = self._lock.acquire()
        else:
            acquired = self._lock.acquire(timeout=max(timeout, 0))

        if acquired:
            self._holder = threading.current_thread().name
            self.logger.debug(f"Acquired lock: {self.path}")
        else:
            self.logger.warning(
                f"Failed to acquire lock {self.path} within {timeout}s (held by {self._holder})"
            )
        return acquired

    def release(self) -> None:
        """Release the lock."""
        self._holder = None
        self._lock.release()
        self.logger.debug(f"Released lock: {self.path}")

    def is_locked(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> Optional[str]:
        return self._holder


class DirectoryLockRegistry:
    """Maps normalized directory paths to their locks."""

    def __init__(self):
        self._locks: Dict[Path, DirectoryLock] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def _key(path: Union[str, Path]) -> Path:
        # Resolve without requiring the directory to exist yet
        return Path(path).expanduser().resolve(strict=False)

    def get(self, path: Union[str, Path]) -> DirectoryLock:
        """Return the lock for ``path``, creating it on first use."""
        key = self._key(path)
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = DirectoryLock(key)
                self._locks[key] = lock
            return lock

    @contextmanager
    def lock(self, path: Union[str, Path], timeout: Optional[float] = None) -> Iterator[bool]:
        """
        Context manager holding the lock for ``path``.

        Yields:
            True if the lock is held, False if it could not be acquired in time.
            The lock is released on exit only when it was acquired.
        """
        directory_lock = self.get(path)
        acquired = directory_lock.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                directory_lock.release()


# Global lock registry instance
_lock_registry: Optional[DirectoryLockRegistry] = None
_lock_registry_guard = threading.Lock()


def get_lock_registry() -> DirectoryLockRegistry:
    """Get or create the global directory lock registry."""
    global _lock_registry

    with _lock_registry_guard:
        if _lock_registry is None:
            _lock_registry = DirectoryLockRegistry()
        return _lock_registry
