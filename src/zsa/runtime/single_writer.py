from __future__ import annotations

import fcntl
import os
import threading
import time
from contextlib import contextmanager
from typing import IO, Iterator, Optional

from zsa.errors import StorageError


class SingleWriterLock:
    """
    Serializes writers of a file-backed store.

    Two layers:
      - threading.RLock for threads of this process (re-entrant)
      - fcntl.flock on a lock file for other processes sharing the store

    The flock is taken once, by the outermost holder, and released when that
    holder exits.
    """

    def __init__(self, path: str, *, timeout_s: float = 30.0, poll_s: float = 0.01):
        self.path = path
        self.timeout_s = float(timeout_s)
        self.poll_s = float(poll_s)
        self._mutex = threading.RLock()
        self._depth = 0
        self._fd: Optional[IO[str]] = None

    def _acquire_flock(self) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        fd = open(self.path, "a+")
        deadline = time.monotonic() + self.timeout_s
        sleep_s = self.poll_s
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    fd.close()
                    raise StorageError(
                        "lock_timeout",
                        f"single-writer lock still held after {self.timeout_s}s",
                        {"path": self.path},
                    )
                time.sleep(sleep_s)
                sleep_s = min(0.25, sleep_s * 2)
        self._fd = fd

    def acquire(self) -> None:
        if not self._mutex.acquire(timeout=self.timeout_s):
            raise StorageError("lock_timeout", "in-process writer lock not acquired", {"path": self.path})
        if self._depth == 0:
            try:
                self._acquire_flock()
            except BaseException:
                self._mutex.release()
                raise
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._fd:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                self._fd.close()
                self._fd = None
        self._mutex.release()

    @contextmanager
    def held(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
