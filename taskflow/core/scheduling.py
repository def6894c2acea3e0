"""Clock, timer and executor primitives used by the engine and trigger manager."""

import abc
import heapq
import itertools
import threading
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from .logging import get_logger

logger = get_logger(__name__)


class TimerHandle:
    """Handle returned by ``Clock.call_later``; cancelling it prevents the callback."""

    def __init__(self, due: datetime, callback: Callable[[], None]):
        self.due = due
        self._callback = callback
        self._cancelled = False
        self._thread_timer: Optional[threading.Timer] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._thread_timer is not None:
            self._thread_timer.cancel()

    def fire(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Timer callback failed: {str(e)}", exc_info=True)


class Clock(metaclass=abc.ABCMeta):
    """Source of the current time and of one-shot timers."""

    @abc.abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        raise NotImplementedError

    @abc.abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        raise NotImplementedError

    def call_at(self, when: datetime, callback: Callable[[], None]) -> TimerHandle:
        delay = max(0.0, (when - self.now()).total_seconds())
        return self.call_later(delay, callback)

    def shutdown(self) -> None:
        """Cancel outstanding timers (no-op by default)."""
        pass


class SystemClock(Clock):
    """Wall clock backed by ``threading.Timer`` daemon threads."""

    def __init__(self):
        self._handles: List[TimerHandle] = []
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + timedelta(seconds=delay), callback)
        timer = threading.Timer(max(0.0, delay), handle.fire)
        timer.daemon = True
        handle._thread_timer = timer
        with self._lock:
            self._handles = [h for h in self._handles if not h.cancelled]
            self._handles.append(handle)
        timer.start()
        return handle

    def shutdown(self) -> None:
        with self._lock:
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()


class ManualClock(Clock):
    """Deterministic clock whose time only moves through ``advance``.

    Timers due within the advanced span fire in due order, each seeing
    ``now()`` equal to its due time.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._queue: List[Tuple[datetime, int, TimerHandle]] = []
        self._counter = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        with self._lock:
            handle = TimerHandle(self._now + timedelta(seconds=max(0.0, delay)), callback)
            heapq.heappush(self._queue, (handle.due, next(self._counter), handle))
            return handle

    def advance(self, delta: Union[float, timedelta]) -> None:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        with self._lock:
            target = self._now + delta
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    self._now = target
                    return
                due, _, handle = heapq.heappop(self._queue)
                self._now = max(self._now, due)
            handle.fire()

    def set_time(self, when: datetime) -> None:
        self.advance(when - self.now())

    @property
    def pending_timers(self) -> int:
        with self._lock:
            return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def shutdown(self) -> None:
        with self._lock:
            queue, self._queue = self._queue, []
        for _, _, handle in queue:
            handle.cancel()


class InlineExecutor(Executor):
    """Executor that runs submitted callables immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future
