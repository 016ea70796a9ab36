from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class CreationInProgress(RuntimeError):
    pass


class CreationLock:
    """Process-wide, in-memory exclusion for backup creation.

    Callers never wait: a second creation is rejected while the first runs.
    A process restart releases the lock implicitly.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self.try_acquire():
            raise CreationInProgress("A backup is already in progress")
        try:
            yield
        finally:
            self.release()
