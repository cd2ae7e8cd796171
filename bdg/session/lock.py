"""
Advisory inter-process file locks.

The OS releases an ``flock`` when its holder dies, so a crashed daemon or
worker never leaves a lock that blocks the next session. The holder's PID
is written into the lock file for diagnostics and for cleanup's liveness
checks.
"""

import contextlib
import fcntl
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger(__name__)


@dataclass
class FileLock:
    """Exclusive ``flock`` on ``path``.

    Usage:
        >>> lock = FileLock(paths.daemon_lock)
        >>> if not lock.try_acquire():
        ...     raise CommandError("Daemon already running", ...)
        >>> try:
        ...     serve()
        ... finally:
        ...     lock.release()
    """

    path: Path
    write_pid: bool = True
    _fp: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._fp is not None

    def _open(self) -> IO[str]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return open(self.path, "a+", encoding="utf-8")

    def _record_pid(self, fp: IO[str]) -> None:
        if not self.write_pid:
            return
        fp.seek(0)
        fp.truncate(0)
        fp.write(f"{os.getpid()}\n")
        fp.flush()

    def try_acquire(self) -> bool:
        """Take the lock without blocking; False if another process holds it."""
        if self._fp is not None:
            return True

        fp = self._open()
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fp.close()
            logger.debug(f"Lock busy: {self.path}")
            return False

        self._record_pid(fp)
        self._fp = fp
        return True

    def acquire(self) -> None:
        """Block until the lock is available."""
        if self._fp is not None:
            return
        fp = self._open()
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX)
        self._record_pid(fp)
        self._fp = fp

    def release(self, unlink: bool = False) -> None:
        fp = self._fp
        self._fp = None
        if fp is None:
            return
        with contextlib.suppress(OSError):
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
        fp.close()
        if unlink:
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def is_locked(path: Path) -> bool:
    """True if some live process currently holds an flock on ``path``."""
    if not path.exists():
        return False
    trial_lock = FileLock(path, write_pid=False)
    if trial_lock.try_acquire():
        trial_lock.release()
        return False
    return True
