"""Per-resource and per-node locking.

Two kinds of serialization are needed on a node:

- Per-resource: only one stage/publish/unstage sequence may run for a given
  volume id, and only one loop attach for a given backing file. Different
  keys never block each other. KeyedLockRegistry hands out one lock per
  key, created lazily.
- Per-node: the kernel loop-device table is global, so the bind/unbind step
  itself is held under NodeLock, which combines an in-process lock with an
  fcntl.flock() on a lock file so separate driver processes on the same
  node also serialize. It is held for the bind/unbind call only, never for
  a whole stage or format.

Public API:
    KeyedLockRegistry: Lazily created lock per resource key
    NodeLock: Process- and node-wide exclusive lock
"""

import fcntl
import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class KeyedLockRegistry:
    """Thread-safe lock-per-key coordinator.

    Ensures only one thread works on each key, while allowing parallel work
    on different keys.
    """

    def __init__(self, name: str = "resource"):
        self._name = name
        self._locks: dict[str, threading.Lock] = {}
        self._manager_lock = threading.Lock()

    def lock_for(self, key: str) -> threading.Lock:
        """Get or create the lock for a key."""
        with self._manager_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        """Hold the lock for a key for the duration of the context."""
        lock = self.lock_for(key)
        if not lock.acquire(blocking=False):
            logger.debug(f"Waiting for {self._name} lock: {key}")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._manager_lock:
            return len(self._locks)


class NodeLock:
    """Exclusive lock shared by every driver thread and process on the node.

    Example:
        >>> node_lock = NodeLock(Path("/run/azfilevol/loop.lock"))
        >>> with node_lock.hold("loop attach"):
        ...     device = host.loop_attach(backing_file)
    """

    def __init__(self, lock_file: Path):
        self._lock_file = Path(lock_file)
        self._thread_lock = threading.Lock()

    @property
    def lock_file(self) -> Path:
        return self._lock_file

    @contextmanager
    def hold(self, operation: str = "node operation") -> Generator[None, None, None]:
        """Acquire the node lock, blocking until it is free.

        Raises:
            PermissionError: If the lock file cannot be created or locked
        """
        with self._thread_lock:
            self._lock_file.parent.mkdir(parents=True, exist_ok=True)
            # 'a' creates the file if missing; nothing is written through this handle
            with open(self._lock_file, "a") as file_handle:
                logger.debug(f"Acquiring node lock for {operation}: {self._lock_file}")
                fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    _release_lock(file_handle.fileno())


def _release_lock(fileno: int) -> None:
    try:
        fcntl.flock(fileno, fcntl.LOCK_UN)
    except OSError as e:
        # Closing the handle drops the lock anyway
        logger.debug(f"Error during lock cleanup: {e}")


__all__ = ["KeyedLockRegistry", "NodeLock"]
