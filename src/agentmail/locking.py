"""File locking and process liveness helpers.

Locking model:
- One sidecar lock file per protected file, kept under ``.agentmail/locks/``
- ``FileLock`` maps to ``flock`` on POSIX, so two holders conflict even when
  they live in the same process
- Interactive paths block until the lock is free
- The garbage collector uses a bounded wait and skips the file on timeout
"""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psutil
from filelock import FileLock, Timeout

from .errors import LockTimeoutError

_logger = logging.getLogger(__name__)

# Retry cadence while waiting on a bounded lock
LOCK_POLL_INTERVAL_SECONDS = 0.01


@contextmanager
def exclusive_lock(path: Path, *, timeout: Optional[float] = None) -> Iterator[None]:
    """Hold an exclusive lock on ``path`` for the duration of the block.

    ``timeout=None`` blocks until the lock is acquired. A finite timeout makes
    one immediate attempt, retries until the deadline, then raises
    ``LockTimeoutError``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path))
    started = time.monotonic()
    try:
        lock.acquire(
            timeout=-1 if timeout is None else max(timeout, 0.0),
            poll_interval=LOCK_POLL_INTERVAL_SECONDS,
        )
    except Timeout:
        raise LockTimeoutError(str(path), float(timeout or 0.0)) from None
    waited = time.monotonic() - started
    if waited > 1.0:
        _logger.debug("file_lock.acquired_after_wait", extra={"path": str(path), "waited_seconds": round(waited, 2)})
    try:
        yield
    finally:
        lock.release()


def pid_alive(pid: Optional[int]) -> bool:
    """Check if a process with the given PID is alive."""
    if not pid or pid <= 0:
        return False
    if pid == os.getpid():
        return True
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Process exists but belongs to someone else
        return True
