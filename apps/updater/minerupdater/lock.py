"""Advisory lock so only one update run touches the installation at a time."""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO

from .models import LockHeldError

LOGGER = logging.getLogger(__name__)

LOCK_FILE_NAME = "update.lock"


def _read_pid(handle: IO[str]) -> int | None:
    handle.seek(0)
    raw = handle.read().strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


class RunLock:
    """``fcntl.flock`` on a PID file.

    The kernel drops the lock when the holder exits, so a PID left behind by a
    crashed run never blocks the next one; it is simply overwritten.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._handle: IO[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+", encoding="utf-8")  # noqa: SIM115
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            pid = _read_pid(handle)
            handle.close()
            raise LockHeldError(str(self._path), pid) from None
        except OSError:
            handle.close()
            raise

        stale = _read_pid(handle)
        if stale and stale != os.getpid():
            LOGGER.debug("Replacing stale pid %s in %s", stale, self._path)
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
