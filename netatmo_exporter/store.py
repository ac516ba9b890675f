import threading
from contextlib import contextmanager
from typing import Iterator

from .models import DeviceCollection

class RWLock:
    """Many concurrent readers or a single writer. Waiting writers block new readers."""
    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()

class SnapshotStore:
    """
    Holds the last successfully fetched DeviceCollection and the time it was fetched.
    Both fields change together; the collection is replaced, never mutated.
    """
    def __init__(self):
        self._lock = RWLock()
        self._snap: DeviceCollection | None = None
        self._ts: float | None = None

    def write(self, snap: DeviceCollection, ts: float) -> None:
        with self._lock.write_locked():
            self._snap = snap
            self._ts = ts

    def read(self) -> tuple[DeviceCollection | None, float | None]:
        # only the references are copied under the lock
        with self._lock.read_locked():
            return self._snap, self._ts
