"""
Event-to-stream bridge: one subscription = one started child process, whose
stdout and stderr lines become Data notifications and whose exit becomes the
terminal notification.

    stream = bridge.create("wget", "-q --show-progress https://example.com/x")
    with stream.pipe(operators.timeout(10.0)).subscribe(print, on_error):
        ...

Subscribing starts the process.  Start failures raise out of subscribe.
Disposing runs the configured exit method, unless the process already exited.
"""

import collections.abc
import dataclasses
import logging

from pystdiostream.stdio import termination
from pystdiostream.stdio.config import ExitMethod, ProcessLaunchConfig
from pystdiostream.stdio.errors import ProcessTerminationError
from pystdiostream.stdio.input_feed import feed_input
from pystdiostream.stdio.notification import Observer
from pystdiostream.stdio.observable import (
    EMPTY_DISPOSABLE,
    Disposable,
    DisposableFn,
    Observable,
)
from pystdiostream.stdio.process import Channel, ProcessHandle, kill_others
from pystdiostream.utils import best_effort, log_extra

logger = logging.getLogger(__name__)


def create(
    executable: str,
    arguments: str | collections.abc.Sequence[str] = (),
    config: ProcessLaunchConfig | None = None,
) -> Observable[str]:
    """
    Stream of the output lines of executable.  config supplies every other
    launch option; its own executable and arguments are replaced.
    """
    if config is None:
        return create_from_config(ProcessLaunchConfig(executable, arguments))
    return create_from_config(
        dataclasses.replace(config, executable=executable, arguments=arguments)
    )


def _redirected_channels(config: ProcessLaunchConfig) -> list[Channel]:
    channels: list[Channel] = []
    if config.redirect_output:
        channels.append("stdout")
    if config.redirect_error:
        channels.append("stderr")
    return channels


def create_from_config(config: ProcessLaunchConfig) -> Observable[str]:
    def subscribe(observer: Observer[str]) -> Disposable:
        if (
            config.exit_method is ExitMethod.SEND_CONTROL_SIGNAL
            and not config.new_process_group
        ):
            # the child shares our group, so we receive what we send it
            termination.control_signal_guard.install_host_handler(
                config.control_signal.host_signal()
            )

        if config.kill_other_processes:
            kill_others(config.executable)

        handle = ProcessHandle.start(config)
        try:
            subscription = from_process(handle, config).subscribe_observer(observer)
        except BaseException:
            with best_effort("kill after failed subscribe", pid=handle.pid):
                handle.kill_tree(config.exit_timeout)
            handle.release()
            raise

        # hooks are in place, now let the lines flow
        for channel in _redirected_channels(config):
            handle.begin_read(channel)

        def dispose() -> None:
            logger.debug("disposing process stream", extra=log_extra(pid=handle.pid))
            with best_effort("cancel read", pid=handle.pid):
                handle.cancel_read()
            with best_effort("dispose hooks", pid=handle.pid):
                subscription.dispose()
            if handle.is_running():
                with best_effort("terminate", pid=handle.pid):
                    termination.terminate(handle, config)
            with best_effort("release handle", pid=handle.pid):
                handle.release()

        return DisposableFn(dispose)

    return Observable(subscribe)


def from_process(
    handle: ProcessHandle, config: ProcessLaunchConfig
) -> Observable[str]:
    """
    Stream of an already started process.  Disposing only unhooks the stream
    (and its input feed); ending the process is up to the owner of handle.
    """

    def subscribe(observer: Observer[str]) -> Disposable:
        def on_exited(h: ProcessHandle) -> None:
            if h.exit_code in config.exit_codes:
                logger.info(
                    "process stream completed",
                    extra=log_extra(pid=h.pid, exit_code=h.exit_code),
                )
                observer.on_completed()
            else:
                error = ProcessTerminationError(h.exit_code, h.exit_time)
                logger.info(
                    "process stream failed",
                    extra=log_extra(pid=h.pid, error=error),
                )
                observer.on_error(error)

        def on_line(line: str | None) -> None:
            # None marks the end of one channel, the exit hook ends the stream
            if line is not None:
                observer.on_next(line)

        handle.add_exited_hook(on_exited)
        if handle.has_exited:
            handle.remove_exited_hook(on_exited)
            on_exited(handle)
            return EMPTY_DISPOSABLE

        channels = _redirected_channels(config)
        for channel in channels:
            handle.add_line_hook(channel, on_line)

        input_subscription = EMPTY_DISPOSABLE
        if config.input is not None:
            input_subscription = feed_input(
                config.input, handle, config.write_newlines
            )

        def unhook() -> None:
            with best_effort("dispose input feed", pid=handle.pid):
                input_subscription.dispose()
            for channel in channels:
                handle.remove_line_hook(channel, on_line)
            handle.remove_exited_hook(on_exited)

        return DisposableFn(unhook)

    return Observable(subscribe)
