"""
Concurrency primitives for ingestion.

- KeyedLock: per-key mutual exclusion for read-modify-write on one URL
- SingleFlight: at most one run of an operation at a time; concurrent
  callers share the in-flight run or queue behind it
- Debouncer: run an action once after a quiet period, resetting the
  timer on every trigger
- EventChannel: a closable queue of discrete events consumed by one thread
"""

import logging
import queue
import threading
from contextlib import contextmanager
from typing import Any, Callable, Generic, Iterator, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyedLock:
    """
    A lock per key, created on demand and dropped when nobody holds it.

    Two threads holding different keys never block each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        """Number of keys currently held or awaited."""
        with self._guard:
            return len(self._locks)


class _Flight:
    """One execution of a single-flight operation."""

    def __init__(self, seq: int):
        self.seq = seq
        self.done = threading.Event()
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def outcome(self):
        if self.error is not None:
            raise self.error
        return self.result


class SingleFlight(Generic[T]):
    """
    Run an operation with at most one execution in flight.

    A plain run() that finds an execution in flight waits for it and
    returns its result (or raises its error) instead of starting another.
    A run(fresh=True) must observe state from after the call was made, so
    it waits out an in-flight execution that started earlier and then
    starts (or joins) a later one.
    """

    def __init__(self, fn: Callable[[], T]):
        self._fn = fn
        self._lock = threading.Lock()
        self._current: Optional[_Flight] = None
        self._seq = 0  # executions started so far

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._current is not None

    def run(self, *, fresh: bool = False) -> T:
        with self._lock:
            floor = self._seq if fresh else 0

        while True:
            with self._lock:
                flight = self._current
                leader = flight is None
                if leader:
                    self._seq += 1
                    flight = self._current = _Flight(self._seq)
            if leader:
                break
            flight.done.wait()
            if flight.seq > floor:
                return flight.outcome()

        try:
            flight.result = self._fn()
        except BaseException as exc:
            flight.error = exc
        finally:
            with self._lock:
                self._current = None
            flight.done.set()
        return flight.outcome()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no execution is in flight.

        Returns False if timeout elapsed first.
        """
        while True:
            with self._lock:
                flight = self._current
            if flight is None:
                return True
            if not flight.done.wait(timeout):
                return False


class Debouncer:
    """
    Run an action once a quiet period has passed since the last trigger.

    Each trigger() replaces the pending timer rather than stacking a new
    one, so a burst of triggers produces a single run. Errors raised by
    the action are logged; they cannot propagate out of a timer thread.
    """

    def __init__(self, delay: float, action: Callable[[], Any], *, name: str = "debounce"):
        self._delay = delay
        self._action = action
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0
        self._closed = False

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def trigger(self) -> None:
        """Start or restart the quiet-period timer."""
        with self._lock:
            if self._closed:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self._delay, self._fire, args=(self._generation,))
            timer.daemon = True
            timer.name = f"{self._name}-timer"
            self._timer = timer
            timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A cancelled timer can still fire if it was already running
            if generation != self._generation or self._timer is None:
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        try:
            self._action()
        except Exception as e:
            logger.warning("%s action failed: %s", self._name, e)

    def cancel(self) -> bool:
        """Drop a pending run. Returns True if one was pending."""
        with self._lock:
            timer, self._timer = self._timer, None
            self._generation += 1
        if timer is None:
            return False
        timer.cancel()
        return True

    def flush(self) -> bool:
        """Run a pending action now, in the calling thread.

        Returns True if an action was pending and has been run.
        """
        if not self.cancel():
            return False
        self._run()
        return True

    def close(self) -> None:
        """Cancel any pending run and ignore later triggers."""
        with self._lock:
            self._closed = True
        self.cancel()


_CLOSED = object()


class EventChannel(Generic[T]):
    """
    A closable FIFO of events with a single consumer.

    Producers call put(); the consumer iterates the channel, which blocks
    for the next event and ends once close() has been called and the
    queued events are drained.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def put(self, event: T) -> None:
        if self._closed.is_set():
            raise RuntimeError("EventChannel is closed")
        self._queue.put(event)

    def close(self) -> None:
        if not self._closed.is_set():
            self._closed.set()
            self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[T]:
        while True:
            event = self._queue.get()
            if event is _CLOSED:
                return
            yield event

    def consume(self, handler: Callable[[T], Any], *, name: str = "event-channel") -> threading.Thread:
        """Start a daemon thread feeding every event to handler.

        Handler errors are logged and do not stop the consumer.
        """
        def _loop():
            for event in self:
                try:
                    handler(event)
                except Exception as e:
                    logger.warning("%s handler failed for %r: %s", name, event, e)

        thread = threading.Thread(target=_loop, name=name, daemon=True)
        thread.start()
        return thread
