"""
Ends a child process when its subscription is disposed.

One strategy is chosen from the launch config and run once, bounded by the
config's exit timeout.  Termination is advisory once disposal was requested:
every failure is logged and dropped, and the handle is always released.

SEND_CONTROL_SIGNAL delivers a group-scoped signal.  When the child shares our
process group we receive it as well, so while any such send is in flight the
host's handler for that signal swallows it instead of acting on it.
"""

import contextlib
import logging
import signal
import threading
import types
import typing

from pystdiostream.stdio.config import ExitMethod, ProcessLaunchConfig
from pystdiostream.stdio.process import ProcessHandle
from pystdiostream.utils import best_effort, log_extra

logger = logging.getLogger(__name__)

type SignalHandler = (
    typing.Callable[[int, types.FrameType | None], typing.Any] | int | None
)


class ControlSignalGuard:
    """
    Reference counted suppression windows for the host's own handling of the
    signals it sends to its group, one count per signal number.  Concurrent
    senders of the same signal nest: it is suppressed until the last of them
    leaves.

    The signal handler itself never takes the lock.  It runs on the main thread
    between bytecodes, possibly while that thread holds it.
    """

    _lock: threading.Lock
    _senders: dict[int, int]
    _previous_handlers: dict[int, SignalHandler]

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._senders = {}
        self._previous_handlers = {}

    def is_suppressing(self, signal_num: int) -> bool:
        return self._senders.get(signal_num, 0) > 0

    def is_installed(self, signal_num: int) -> bool:
        return signal_num in self._previous_handlers

    def install_host_handler(self, signal_num: int) -> bool:
        """
        Install the suppressing handler for signal_num.  Signal handlers can
        only be set from the main thread; elsewhere this does nothing and
        returns whether a handler is already in place.
        """
        if threading.current_thread() is not threading.main_thread():
            return self.is_installed(signal_num)
        with self._lock:
            if signal_num in self._previous_handlers:
                return True
            self._previous_handlers[signal_num] = signal.signal(
                signal_num, self._handle
            )
        logger.debug(
            "installed control signal guard", extra=log_extra(signal_num=signal_num)
        )
        return True

    def uninstall_host_handler(self, signal_num: int | None = None) -> None:
        """Restore the previous handler of signal_num, or of every signal"""
        if threading.current_thread() is not threading.main_thread():
            return
        with self._lock:
            if signal_num is None:
                nums = list(self._previous_handlers)
            else:
                nums = [signal_num] if signal_num in self._previous_handlers else []
            for num in nums:
                previous = self._previous_handlers.pop(num)
                if previous is None:
                    # installed outside of python
                    previous = signal.SIG_DFL
                signal.signal(num, previous)

    def _handle(self, sig_num: int, frame: types.FrameType | None) -> None:
        if self.is_suppressing(sig_num):
            logger.info(
                "ignored control signal sent to child",
                extra=log_extra(signal_num=sig_num),
            )
            return
        previous = self._previous_handlers.get(sig_num)
        if previous is None:
            previous = signal.SIG_DFL
        if callable(previous):
            previous(sig_num, frame)
        elif previous == signal.SIG_IGN:
            return
        elif sig_num == signal.SIGINT:
            signal.default_int_handler(sig_num, frame)
        else:
            # default action: for the control signals that ends the process
            self._previous_handlers.pop(sig_num, None)
            signal.signal(sig_num, signal.SIG_DFL)
            signal.raise_signal(sig_num)

    @contextlib.contextmanager
    def sending(self, signal_num: int) -> typing.Iterator[None]:
        with self._lock:
            self._senders[signal_num] = self._senders.get(signal_num, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                self._senders[signal_num] -= 1


control_signal_guard = ControlSignalGuard()


def terminate(handle: ProcessHandle, config: ProcessLaunchConfig) -> None:
    """Run the configured exit method once, then release the handle"""
    method = config.exit_method
    timeout = config.exit_timeout
    logger.info(
        "terminating process",
        extra=log_extra(pid=handle.pid, exit_method=method.value),
    )
    # SEND_CONTROL_SIGNAL waits for the exit itself before falling back
    waited = method is ExitMethod.SEND_CONTROL_SIGNAL
    try:
        match method:
            case ExitMethod.INPUT_CLOSE:
                handle.close_stdin()
            case ExitMethod.CLOSE:
                handle.release()
            case ExitMethod.CLOSE_MAIN_WINDOW:
                handle.request_close()
            case ExitMethod.KILL:
                handle.kill_tree(timeout)
            case ExitMethod.SEND_CONTROL_SIGNAL:
                _send_control_signal(handle, config)
            case ExitMethod.SEND_QUIT_COMMAND:
                _send_quit_command(handle, config)
        if not waited and not handle.wait_for_exit(timeout):
            logger.info(
                "process still running after exit timeout",
                extra=log_extra(pid=handle.pid, exit_method=method.value),
            )
    except Exception as ex:  # pylint: disable=W0718:broad-exception-caught
        logger.debug(
            "termination failed",
            extra=log_extra(pid=handle.pid, exit_method=method.value, error=ex),
        )
    finally:
        with best_effort("release handle", pid=handle.pid):
            handle.release()


def _send_control_signal(handle: ProcessHandle, config: ProcessLaunchConfig) -> None:
    host_signal = config.control_signal.host_signal()
    if not config.new_process_group and not control_signal_guard.is_installed(
        host_signal
    ):
        logger.warning(
            "no control signal guard installed, the host receives the signal too",
            extra=log_extra(pid=handle.pid, control_signal=config.control_signal),
        )
    with control_signal_guard.sending(host_signal):
        handle.send_group_signal(config.control_signal.os_signal())
        exited = handle.wait_for_exit(config.exit_timeout)
    if not exited:
        logger.info(
            "process ignored control signal, closing",
            extra=log_extra(pid=handle.pid, control_signal=config.control_signal),
        )
        handle.release()


def _send_quit_command(handle: ProcessHandle, config: ProcessLaunchConfig) -> None:
    assert config.quit_command is not None
    command = config.quit_command
    if config.write_newlines:
        command += "\n"
    handle.write(command)
