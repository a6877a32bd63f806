"""
Process-wide Pipeline Lock

Every mutating entrypoint runs under one exclusive lock with a bounded
wait. Failing to acquire it is fatal for the invocation; there is no
internal retry.
"""

import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional, Union

import structlog

from printbatch.errors import LockTimeoutError

logger = structlog.get_logger(__name__)


class PipelineLock(ABC):
    """Exclusive lock shared by all mutating entrypoints"""

    @abstractmethod
    def acquire(self, timeout: float) -> Any:
        """Return a handle, or raise LockTimeoutError"""

    @abstractmethod
    def release(self, handle: Any) -> None:
        """Release a handle returned by acquire()"""


class ThreadingPipelineLock(PipelineLock):
    """In-process lock for a single worker process"""

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self, timeout: float) -> Any:
        if not self._lock.acquire(timeout=max(timeout, 0)):
            raise LockTimeoutError(timeout)
        return self._lock

    def release(self, handle: Any) -> None:
        handle.release()


class FileLock(PipelineLock):
    """
    Cross-process lock on a lock file using ``fcntl.flock``.

    The non-blocking flock is polled until the timeout elapses.
    """

    def __init__(self, path: Union[str, Path], poll_interval: float = 0.1):
        self.path = Path(path)
        self.poll_interval = poll_interval

    def acquire(self, timeout: float) -> Any:
        import fcntl

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+", encoding="utf-8")
        deadline = time.monotonic() + max(timeout, 0)

        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except OSError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeoutError(timeout, holder=str(self.path))
                time.sleep(self.poll_interval)

        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.flush()
        return handle

    def release(self, handle: Any) -> None:
        import fcntl

        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


@contextmanager
def hold_lock(lock: PipelineLock, timeout: float, operation: Optional[str] = None) -> Generator[None, None, None]:
    """
    Hold the pipeline lock for the duration of the block.

    The lock is released whether the block succeeds or raises.
    """
    handle = lock.acquire(timeout)
    logger.debug("Pipeline lock acquired", operation=operation)
    try:
        yield
    finally:
        lock.release(handle)
        logger.debug("Pipeline lock released", operation=operation)
