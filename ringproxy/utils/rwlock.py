import threading
from collections.abc import Iterator
from contextlib import contextmanager


class RWLock:
    """Readers-writer lock: many concurrent readers or one writer.

    Waiting writers block new readers, so writers are not starved. The lock
    is not reentrant; do not take it again while holding it.
    """

    def __init__(self) -> None:
        self._cond: threading.Condition = threading.Condition(threading.Lock())
        self._readers: int = 0
        self._writer: bool = False
        self._writers_waiting: int = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                _ = self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    _ = self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def reader(self) -> Iterator[None]:
        """Hold the lock shared for the duration of the block"""
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def writer(self) -> Iterator[None]:
        """Hold the lock exclusively for the duration of the block"""
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
