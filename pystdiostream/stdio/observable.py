"""
Subscription and disposal model.

An Observable wraps a subscribe function.  Subscribing creates a Subscription:
the object that stands between the producer (process pumps, operator timers)
and the consumer's callbacks.  It guarantees

- deliveries are serialized, so the consumer never sees two callbacks at once
- nothing is delivered once the subscription is closing
- exactly one terminal notification (Completed or Failed)
- the producer's teardown runs exactly once: either on explicit dispose or
  right after the terminal notification was delivered

Producers may therefore call on_next/on_error/on_completed from any thread and
may race a terminal notification against dispose without further locking.
"""

import abc
import collections.abc
import logging
import threading
import types
import typing

from pystdiostream.stdio.notification import (
    Completed,
    Data,
    Failed,
    Observer,
    OnCompleted,
    OnError,
    OnNext,
    StreamNotification,
    deliver,
)
from pystdiostream.utils import Once, log_extra

logger = logging.getLogger(__name__)


class Disposable(abc.ABC):
    @abc.abstractmethod
    def dispose(self) -> None:
        """Idempotent.  Must never raise."""

    def __enter__(self) -> typing.Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.dispose()


class DisposableFn(Disposable):
    """Runs fn on the first dispose only"""

    _once: Once

    def __init__(self, fn: collections.abc.Callable[[], None]) -> None:
        self._once = Once(fn)

    @property
    def is_disposed(self) -> bool:
        return self._once.has_run

    def dispose(self) -> None:
        self._once.run()


class _EmptyDisposable(Disposable):
    def dispose(self) -> None:
        pass


EMPTY_DISPOSABLE: Disposable = _EmptyDisposable()


class SerialDisposable(Disposable):
    """
    Holds one replaceable inner disposable.  Replacing the inner disposable
    disposes the previous one; once disposed, any disposable assigned later is
    disposed immediately.
    """

    _lock: threading.Lock
    _current: Disposable | None = None
    _disposed: bool = False

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def set(self, disposable: Disposable) -> None:
        with self._lock:
            if self._disposed:
                stale: Disposable | None = disposable
            else:
                stale, self._current = self._current, disposable
        if stale is not None:
            stale.dispose()

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            current, self._current = self._current, None
        if current is not None:
            current.dispose()


class Subscription[T](Disposable):
    _observer: Observer[T]
    _lock: threading.RLock
    _closing: bool = False
    _upstream: Disposable | None = None
    _upstream_disposed: bool = False

    def __init__(self, observer: Observer[T]) -> None:
        self._observer = observer
        self._lock = threading.RLock()

    @property
    def is_disposed(self) -> bool:
        return self._closing

    def set_upstream(self, upstream: Disposable) -> None:
        """
        Called once subscribe returns.  If the subscription already closed
        (terminal notification during subscribe, or dispose from a callback)
        the upstream is disposed right away.
        """
        with self._lock:
            self._upstream = upstream
        self._dispose_upstream()

    def on_next(self, value: T) -> None:
        self.notify(Data(value))

    def on_error(self, error: BaseException) -> None:
        self.notify(Failed(error))

    def on_completed(self) -> None:
        self.notify(Completed())

    def notify(self, notification: StreamNotification[T]) -> None:
        terminal = isinstance(notification, (Completed, Failed))
        with self._lock:
            if self._closing:
                return
            if terminal:
                self._closing = True
            deliver(self._observer, notification)
        if terminal:
            self._dispose_upstream()

    def dispose(self) -> None:
        with self._lock:
            self._closing = True
        self._dispose_upstream()

    def _dispose_upstream(self) -> None:
        # until subscribe returns there is no upstream yet; set_upstream calls
        # back in here once it is known
        with self._lock:
            if not self._closing or self._upstream is None:
                return
            if self._upstream_disposed:
                return
            self._upstream_disposed = True
            upstream = self._upstream
        upstream.dispose()


class _CallbackObserver[T]:
    _on_next: OnNext[T] | None
    _on_error: OnError | None
    _on_completed: OnCompleted | None

    def __init__(
        self,
        on_next: OnNext[T] | None,
        on_error: OnError | None,
        on_completed: OnCompleted | None,
    ) -> None:
        self._on_next = on_next
        self._on_error = on_error
        self._on_completed = on_completed

    def on_next(self, value: T) -> None:
        if self._on_next is not None:
            self._on_next(value)

    def on_error(self, error: BaseException) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.error("unhandled stream error", extra=log_extra(error=error))

    def on_completed(self) -> None:
        if self._on_completed is not None:
            self._on_completed()


class SubscribeFn[T](typing.Protocol):
    def __call__(self, observer: Observer[T]) -> Disposable:
        """
        Start producing into observer and return the producer's teardown.
        Raising here propagates out of subscribe.
        """


type Operator[T, U] = collections.abc.Callable[[Observable[T]], Observable[U]]


class Observable[T]:
    _subscribe_fn: SubscribeFn[T]

    def __init__(self, subscribe_fn: SubscribeFn[T]) -> None:
        self._subscribe_fn = subscribe_fn

    def subscribe(
        self,
        on_next: OnNext[T] | None = None,
        on_error: OnError | None = None,
        on_completed: OnCompleted | None = None,
    ) -> Disposable:
        return self.subscribe_observer(
            _CallbackObserver(on_next, on_error, on_completed)
        )

    def subscribe_observer(self, observer: Observer[T]) -> Disposable:
        subscription = Subscription(observer)
        subscription.set_upstream(self._subscribe_fn(subscription))
        return subscription

    def pipe(
        self, *operators: Operator[typing.Any, typing.Any]
    ) -> "Observable[typing.Any]":
        result: Observable[typing.Any] = self
        for op in operators:
            result = op(result)
        return result


def from_iterable[T](items: collections.abc.Iterable[T]) -> Observable[T]:
    """Emits every item synchronously on subscribe, then completes"""

    def subscribe(observer: Observer[T]) -> Disposable:
        for item in items:
            observer.on_next(item)
        observer.on_completed()
        return EMPTY_DISPOSABLE

    return Observable(subscribe)


class Subject[T](Observable[T]):
    """
    Both a source and an observer: every value pushed in is multicast to the
    current subscribers.  Used to feed interactive input to a process.
    """

    _lock: threading.Lock
    _observers: list[Observer[T]]
    _terminal: Completed | Failed | None = None

    def __init__(self) -> None:
        super().__init__(self._add_observer)
        self._lock = threading.Lock()
        self._observers = []

    def _add_observer(self, observer: Observer[T]) -> Disposable:
        with self._lock:
            terminal = self._terminal
            if terminal is None:
                self._observers.append(observer)
        if terminal is not None:
            deliver(observer, terminal)
            return EMPTY_DISPOSABLE

        def remove() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return DisposableFn(remove)

    def _snapshot(self) -> list[Observer[T]]:
        with self._lock:
            return list(self._observers)

    def on_next(self, value: T) -> None:
        for observer in self._snapshot():
            observer.on_next(value)

    def on_error(self, error: BaseException) -> None:
        self._finish(Failed(error))

    def on_completed(self) -> None:
        self._finish(Completed())

    def _finish(self, terminal: Completed | Failed) -> None:
        with self._lock:
            if self._terminal is not None:
                return
            self._terminal = terminal
            observers, self._observers = self._observers, []
        for observer in observers:
            deliver(observer, terminal)
