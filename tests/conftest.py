import os
import queue
import sys
import threading
import time
import typing

import psutil
import pytest

from pystdiostream import utils
from pystdiostream.stdio.config import ProcessLaunchConfig
from pystdiostream.stdio.notification import (
    Completed,
    Data,
    Failed,
    StreamNotification,
    is_terminal,
)

CHILD = os.path.join(os.path.dirname(__file__), "fixtures", "child.py")


def wait_gone(pid: int, timeout: float = 10.0) -> bool:
    """
    True once pid no longer runs.  Zombies count as gone: orphaned
    grandchildren are only reaped when the container has a real init.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
                return True
        except psutil.NoSuchProcess:
            return True
        time.sleep(0.05)
    return False


@pytest.fixture(autouse=True)
def configure_logging() -> None:
    utils.setup_logging("DEBUG")


def child_config(*child_args: str, **options: typing.Any) -> ProcessLaunchConfig:
    """Launch config running the fixture child with the current interpreter"""
    return ProcessLaunchConfig(
        executable=sys.executable,
        arguments=["-u", CHILD, *child_args],
        **options,
    )


class Recorder:
    """
    Observer recording every notification, in delivery order, from whichever
    thread delivers it.
    """

    notifications: queue.Queue[StreamNotification[str]]
    terminated: threading.Event
    _lock: threading.Lock
    _delivered: list[StreamNotification[str]]

    def __init__(self) -> None:
        self.notifications = queue.Queue()
        self.terminated = threading.Event()
        self._lock = threading.Lock()
        self._delivered = []

    def _record(self, notification: StreamNotification[str]) -> None:
        with self._lock:
            self._delivered.append(notification)
        self.notifications.put(notification)
        if is_terminal(notification):
            self.terminated.set()

    def on_next(self, value: str) -> None:
        self._record(Data(value))

    def on_error(self, error: BaseException) -> None:
        self._record(Failed(error))

    def on_completed(self) -> None:
        self._record(Completed())

    def wait(self, timeout: float = 10.0) -> list[StreamNotification[str]]:
        assert self.terminated.wait(timeout), (
            f"no terminal notification within {timeout}s. seen: {self.delivered}"
        )
        return self.delivered

    def wait_for_data(self, value: str, timeout: float = 10.0) -> None:
        while True:
            notification = self.notifications.get(timeout=timeout)
            if notification == Data(value):
                return
            assert not is_terminal(notification), (
                f"stream ended before {value!r}: {self.delivered}"
            )

    @property
    def delivered(self) -> list[StreamNotification[str]]:
        with self._lock:
            return list(self._delivered)

    @property
    def values(self) -> list[str]:
        return [n.value for n in self.delivered if isinstance(n, Data)]

    @property
    def terminals(self) -> list[StreamNotification[str]]:
        return [n for n in self.delivered if is_terminal(n)]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
