"""
Errors delivered through the Failed notification of a process stream.  None of
these are ever raised from subscribe; they end a subscription exactly once.
"""

import datetime
import typing


class ProcessStreamError(Exception):
    pass


class ProcessTerminationError(ProcessStreamError):
    """The process exited with a code outside the accepted exit codes"""

    exit_code: int
    exit_time: datetime.datetime

    def __init__(self, exit_code: int, exit_time: datetime.datetime) -> None:
        super().__init__(f"process exited with code {exit_code} at {exit_time}")
        self.exit_code = exit_code
        self.exit_time = exit_time

    def obj_json_default(self) -> typing.Any:
        return {"exit_code": self.exit_code, "exit_time": self.exit_time}


class StreamTimeoutError(ProcessStreamError, TimeoutError):
    """No notification arrived within the timeout window"""

    seconds: float

    def __init__(self, seconds: float) -> None:
        super().__init__(f"no notification within {seconds}s")
        self.seconds = seconds

    def obj_json_default(self) -> typing.Any:
        return {"timeout_seconds": self.seconds}


class SyntheticError(ProcessStreamError):
    """Default error raised by throw_if and throw_if_count"""
