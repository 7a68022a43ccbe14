"""Periodic sweep driving and the single-flight guard around it."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Protocol

from ..shared.config import SWEEP_INTERVALS

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX
    fcntl = None

logger = logging.getLogger(__name__)


class SingleFlight(Protocol):
    def try_enter(self) -> bool:
        """Take the guard without blocking. False if another run holds it."""

    def leave(self) -> None: ...


class ThreadSingleFlight:
    """Guard shared by the threads of one process."""

    def __init__(self):
        self._lock = threading.Lock()

    def try_enter(self) -> bool:
        return self._lock.acquire(blocking=False)

    def leave(self) -> None:
        self._lock.release()


class FileSingleFlight:
    """Guard shared by every process on the host, backed by ``fcntl.flock``.

    The OS drops the lock when the holder dies, so a crashed worker never
    leaves the sweep blocked.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._fd: int | None = None
        self._local = ThreadSingleFlight()

    @staticmethod
    def is_supported() -> bool:
        return fcntl is not None

    def try_enter(self) -> bool:
        if not self._local.try_enter():
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            self._local.leave()
            if e.errno in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                return False
            raise
        self._fd = fd
        return True

    def leave(self) -> None:
        fd, self._fd = self._fd, None
        if fd is not None:
            with contextlib.suppress(OSError):
                fcntl.flock(fd, fcntl.LOCK_UN)
            with contextlib.suppress(OSError):
                os.close(fd)
        self._local.leave()


def default_single_flight(lock_file: str | Path) -> SingleFlight:
    if FileSingleFlight.is_supported():
        return FileSingleFlight(lock_file)
    logger.warning("fcntl unavailable; sweep overlap is only prevented within this process")
    return ThreadSingleFlight()


class SweepTicker:
    """Daemon thread calling ``job`` every ``interval_minutes``."""

    def __init__(self, job: Callable[[], object], interval_minutes: int, name: str = "locking-sweep"):
        if interval_minutes not in SWEEP_INTERVALS:
            raise ValueError(f"interval must be one of {SWEEP_INTERVALS}, got {interval_minutes}")
        self.job = job
        self.interval = interval_minutes * 60.0
        self.name = name
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("sweep scheduled every %d min", int(self.interval // 60))

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.job()
            except Exception:
                # keep ticking; the next run may succeed
                logger.exception("scheduled sweep failed")
