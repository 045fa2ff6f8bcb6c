import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import Overloaded


logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded pool of execution slots shared by concurrent dispatcher calls.

    Each slot stands for one isolated unit that may be alive at a time. The
    counter is guarded by a condition variable so acquire and release are
    atomic across threads; ``acquire`` never waits past its timeout.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError('worker pool capacity must be at least 1')
        self._capacity = capacity
        self._in_use = 0
        self._cond = threading.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._cond:
            return self._in_use

    @property
    def available(self) -> int:
        with self._cond:
            return self._capacity - self._in_use

    def acquire(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + max(0.0, timeout)
        with self._cond:
            while self._in_use >= self._capacity:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(remaining)
            self._in_use += 1
            return True

    def release(self) -> None:
        with self._cond:
            if self._in_use <= 0:
                raise RuntimeError('release() called more times than acquire()')
            self._in_use -= 1
            self._cond.notify()

    @contextmanager
    def slot(self, timeout: float) -> Iterator[None]:
        if not self.acquire(timeout):
            logger.warning('worker pool saturated: %d/%d slots busy after %.1fs', self._capacity, self._capacity, timeout)
            raise Overloaded(
                f'all {self._capacity} execution slots are busy, try again later',
                retry_after_s=max(1, int(timeout)),
            )
        try:
            yield
        finally:
            self.release()
