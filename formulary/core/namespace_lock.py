"""Namespace-scoped exclusive lock — at most one installer per prefix.

Uses a POSIX advisory ``flock`` on ``<prefix>/.formulary.lock``. The lock is
released when the context exits, including on error.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from pathlib import Path
from types import TracebackType

from formulary.core.errors import NamespaceLockedError

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".formulary.lock"


class NamespaceLock:
    """Exclusive, re-entrant-per-instance lock on a namespace prefix.

    Parameters
    ----------
    prefix:
        The namespace root.
    timeout:
        Seconds to wait for a contended lock; ``0`` fails immediately.
    """

    def __init__(self, prefix: Path, *, timeout: float = 0.0, poll_interval: float = 0.05) -> None:
        self._path = Path(prefix) / LOCK_FILENAME
        self._timeout = timeout
        self._poll = poll_interval
        self._fd: int | None = None
        self._depth = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        if self._fd is not None:
            self._depth += 1
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + self._timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise NamespaceLockedError(
                        f"Namespace {self._path.parent} is locked by another installer"
                    ) from None
                time.sleep(self._poll)
        self._fd = fd
        self._depth = 1
        logger.debug("Acquired namespace lock %s", self._path)

    def release(self) -> None:
        if self._fd is None:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        logger.debug("Released namespace lock %s", self._path)

    def __enter__(self) -> NamespaceLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
