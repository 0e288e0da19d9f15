"""
Operators composing with process streams through Observable.pipe:

    bridge.create("couchdb").pipe(operators.retry())
    bridge.create("wget", args).pipe(operators.timeout(10.0))
"""

import collections.abc
import logging
import threading

from pystdiostream.stdio.errors import StreamTimeoutError, SyntheticError
from pystdiostream.stdio.notification import Observer
from pystdiostream.stdio.observable import (
    Disposable,
    DisposableFn,
    Observable,
    Operator,
    SerialDisposable,
)
from pystdiostream.utils import log_extra

logger = logging.getLogger(__name__)


class _Retry[T]:
    """
    Resubscribes to the source after every failure.  Resubscribing is
    trampolined: a failure reported while the source is still being subscribed
    (a process that is already gone when its hooks are registered) loops here
    instead of recursing.
    """

    _source: Observable[T]
    _observer: Observer[T]
    _attempts: SerialDisposable
    _lock: threading.Lock
    _running: bool = False
    _pending: bool = False
    _attempt: int = 0

    def __init__(self, source: Observable[T], observer: Observer[T]) -> None:
        self._source = source
        self._observer = observer
        self._attempts = SerialDisposable()
        self._lock = threading.Lock()

    def start(self) -> Disposable:
        self._subscribe(first=True)
        return self._attempts

    def _on_error(self, error: BaseException) -> None:
        logger.warning(
            "source failed, resubscribing",
            extra=log_extra(attempt=self._attempt, error=error),
        )
        self._subscribe(first=False)

    def _subscribe(self, first: bool) -> None:
        with self._lock:
            if self._running:
                self._pending = True
                return
            self._running = True

        while True:
            with self._lock:
                self._pending = False
                self._attempt += 1
            if self._attempts.is_disposed:
                break
            try:
                self._attempts.set(
                    self._source.subscribe(
                        self._observer.on_next,
                        self._on_error,
                        self._observer.on_completed,
                    )
                )
            except Exception as ex:
                with self._lock:
                    self._running = False
                if first:
                    raise
                # a start failure would fail again straight away
                logger.error(
                    "resubscribe failed", extra=log_extra(attempt=self._attempt)
                )
                self._observer.on_error(ex)
                return
            first = False
            with self._lock:
                if not self._pending:
                    self._running = False
                    return

        with self._lock:
            self._running = False


def retry[T]() -> Operator[T, T]:
    """
    On failure restart the source from scratch (for a process stream: a new
    process), forever.  Completion and disposal pass through.

    There is no retry limit and no backoff.  A process that keeps failing
    immediately is restarted in a tight loop.
    """

    def _retry(source: Observable[T]) -> Observable[T]:
        def subscribe(observer: Observer[T]) -> Disposable:
            return _Retry(source, observer).start()

        return Observable(subscribe)

    return _retry


class _Timeout[T]:
    _seconds: float
    _observer: Observer[T]
    _upstream: SerialDisposable
    _lock: threading.Lock
    _generation: int = 0
    _timer: threading.Timer | None = None
    _done: bool = False

    def __init__(self, seconds: float, observer: Observer[T]) -> None:
        self._seconds = seconds
        self._observer = observer
        self._upstream = SerialDisposable()
        self._lock = threading.Lock()

    def _arm_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._generation += 1
        self._timer = threading.Timer(
            self._seconds, self._fire, args=(self._generation,)
        )
        self._timer.daemon = True
        self._timer.start()

    def _disarm_locked(self) -> None:
        self._done = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, generation: int) -> None:
        with self._lock:
            if self._done or generation != self._generation:
                return
            self._done = True
            self._timer = None
        logger.info("stream timed out", extra=log_extra(seconds=self._seconds))
        self._upstream.dispose()
        self._observer.on_error(StreamTimeoutError(self._seconds))

    def on_next(self, value: T) -> None:
        with self._lock:
            if self._done:
                return
            self._arm_locked()
        self._observer.on_next(value)

    def on_error(self, error: BaseException) -> None:
        with self._lock:
            if self._done:
                return
            self._disarm_locked()
        self._observer.on_error(error)

    def on_completed(self) -> None:
        with self._lock:
            if self._done:
                return
            self._disarm_locked()
        self._observer.on_completed()

    def subscribe(self, source: Observable[T]) -> Disposable:
        with self._lock:
            self._arm_locked()
        try:
            self._upstream.set(source.subscribe_observer(self))
        except BaseException:
            with self._lock:
                self._disarm_locked()
            raise
        return DisposableFn(self._dispose)

    def _dispose(self) -> None:
        with self._lock:
            self._disarm_locked()
        self._upstream.dispose()


def timeout[T](seconds: float) -> Operator[T, T]:
    """
    Fail with StreamTimeoutError when no item arrives within seconds of the
    subscription or of the previous item.  The source is disposed first, so
    for a process stream the process is ended by its exit method.
    """
    if seconds <= 0:
        raise ValueError(f"timeout must be positive, got {seconds}")

    def _timeout(source: Observable[T]) -> Observable[T]:
        def subscribe(observer: Observer[T]) -> Disposable:
            return _Timeout(seconds, observer).subscribe(source)

        return Observable(subscribe)

    return _timeout


type Predicate[T] = collections.abc.Callable[[T], bool]
type ErrorFactory = collections.abc.Callable[[], BaseException]


class _ThrowIfCount[T]:
    _predicate: Predicate[T]
    _count: int
    _delay: float
    _error_factory: ErrorFactory
    _observer: Observer[T]
    _upstream: SerialDisposable
    _lock: threading.Lock
    _matches: int = 0
    _armed: bool = False
    _timer: threading.Timer | None = None
    _disposed: bool = False

    def __init__(
        self,
        predicate: Predicate[T],
        count: int,
        delay: float,
        error_factory: ErrorFactory,
        observer: Observer[T],
    ) -> None:
        self._predicate = predicate
        self._count = count
        self._delay = delay
        self._error_factory = error_factory
        self._observer = observer
        self._upstream = SerialDisposable()
        self._lock = threading.Lock()

    def on_next(self, value: T) -> None:
        try:
            matched = self._predicate(value)
        except Exception as ex:  # pylint: disable=W0718:broad-exception-caught
            self._upstream.dispose()
            self._observer.on_error(ex)
            return

        with self._lock:
            if matched:
                self._matches += 1
            arm = not self._armed and self._matches >= self._count
            if arm:
                self._armed = True

        self._observer.on_next(value)

        if arm:
            logger.info(
                "match count reached, failing after delay",
                extra=log_extra(count=self._count, delay=self._delay),
            )
            with self._lock:
                # the consumer may have disposed while the item was delivered
                if self._disposed:
                    return
                self._timer = threading.Timer(self._delay, self._fire)
                self._timer.daemon = True
                self._timer.start()

    def _fire(self) -> None:
        self._observer.on_error(self._error_factory())

    def on_error(self, error: BaseException) -> None:
        with self._lock:
            armed = self._armed
        if armed:
            logger.debug("ignored source error after match count reached")
            return
        self._observer.on_error(error)

    def on_completed(self) -> None:
        with self._lock:
            armed = self._armed
        if armed:
            logger.debug("ignored source completion after match count reached")
            return
        self._observer.on_completed()

    def subscribe(self, source: Observable[T]) -> Disposable:
        self._upstream.set(source.subscribe_observer(self))
        return DisposableFn(self._dispose)

    def _dispose(self) -> None:
        with self._lock:
            self._disposed = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self._upstream.dispose()


def throw_if_count[T](
    predicate: Predicate[T],
    count: int,
    delay: float = 0.0,
    error_factory: ErrorFactory = SyntheticError,
) -> Operator[T, T]:
    """
    Pass every item through.  Once count items matched predicate, fail with
    error_factory() delay seconds after the item that reached the count,
    whatever the source does in the meantime.  Before that the source's own
    completion or failure passes through.
    """
    if count < 1:
        raise ValueError(f"count must be at least 1, got {count}")

    def _throw_if_count(source: Observable[T]) -> Observable[T]:
        def subscribe(observer: Observer[T]) -> Disposable:
            return _ThrowIfCount(
                predicate, count, delay, error_factory, observer
            ).subscribe(source)

        return Observable(subscribe)

    return _throw_if_count


def throw_if[T](
    predicate: Predicate[T],
    delay: float = 0.0,
    error_factory: ErrorFactory = SyntheticError,
) -> Operator[T, T]:
    """throw_if_count for the first match"""
    return throw_if_count(predicate, 1, delay, error_factory)
