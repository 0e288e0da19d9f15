"""
The notifications a process stream delivers to its consumer.  A subscription
sees zero or more Data notifications followed by exactly one terminal
notification (Completed or Failed).
"""

import collections.abc
import dataclasses
import typing


@dataclasses.dataclass(frozen=True)
class Data[T]:
    value: T

    def __str__(self) -> str:
        return f"(Data: {self.value!r})"


@dataclasses.dataclass(frozen=True)
class Completed:
    def __str__(self) -> str:
        return "(Completed)"


@dataclasses.dataclass(frozen=True)
class Failed:
    error: BaseException

    def __str__(self) -> str:
        return f"(Failed: {self.error!r})"


type StreamNotification[T] = Data[T] | Completed | Failed


def is_terminal(notification: StreamNotification[typing.Any]) -> bool:
    return isinstance(notification, (Completed, Failed))


class Observer[T](typing.Protocol):
    def on_next(self, value: T) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_completed(self) -> None: ...


type OnNext[T] = collections.abc.Callable[[T], None]
type OnError = collections.abc.Callable[[BaseException], None]
type OnCompleted = collections.abc.Callable[[], None]


def deliver[T](observer: Observer[T], notification: StreamNotification[T]) -> None:
    match notification:
        case Data(value):
            observer.on_next(value)
        case Completed():
            observer.on_completed()
        case Failed(error):
            observer.on_error(error)
