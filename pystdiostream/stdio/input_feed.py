import logging

from pystdiostream.stdio.observable import Disposable, Observable
from pystdiostream.stdio.process import ProcessHandle
from pystdiostream.utils import log_extra

logger = logging.getLogger(__name__)


class InputFeed:
    """
    Writes every item of an input stream to the child's stdin as it arrives.

    Write failures (the child closed its stdin, or exited) end the feed but are
    not reported on the output stream; the process exit is what the consumer
    sees.
    """

    _handle: ProcessHandle
    _write_newlines: bool
    _broken: bool = False

    def __init__(self, handle: ProcessHandle, write_newlines: bool) -> None:
        self._handle = handle
        self._write_newlines = write_newlines

    def on_next(self, line: str) -> None:
        if self._broken:
            return
        try:
            self._handle.write(line + "\n" if self._write_newlines else line)
        except (OSError, ValueError) as ex:
            self._broken = True
            logger.warning(
                "input write failed, dropping remaining input",
                extra=log_extra(pid=self._handle.pid, error=ex),
            )

    def on_error(self, error: BaseException) -> None:
        logger.info(
            "input stream failed",
            extra=log_extra(pid=self._handle.pid, error=error),
        )

    def on_completed(self) -> None:
        logger.debug("input stream completed", extra=log_extra(pid=self._handle.pid))


def feed_input(
    source: Observable[str], handle: ProcessHandle, write_newlines: bool
) -> Disposable:
    return source.subscribe_observer(InputFeed(handle, write_newlines))
