import collections.abc
import dataclasses
import enum
import os
import shlex
import signal
import sys
import typing

if typing.TYPE_CHECKING:
    from pystdiostream.stdio.observable import Observable

IS_WINDOWS = sys.platform == "win32"


class ExitMethod(enum.Enum):
    """How the process is ended when the consumer disposes its subscription"""

    INPUT_CLOSE = "input_close"
    CLOSE = "close"
    CLOSE_MAIN_WINDOW = "close_main_window"
    KILL = "kill"
    SEND_CONTROL_SIGNAL = "send_control_signal"
    SEND_QUIT_COMMAND = "send_quit_command"


class ControlSignal(enum.IntEnum):
    """Console control events, numbered as the Windows console numbers them"""

    CTRL_C = 0
    CTRL_BREAK = 1
    CTRL_CLOSE = 2
    CTRL_LOGOFF = 5
    CTRL_SHUTDOWN = 6

    def os_signal(self) -> int:
        """The signal number delivered to the process group on this platform"""
        if IS_WINDOWS:
            if self is ControlSignal.CTRL_C:
                return signal.CTRL_C_EVENT
            return signal.CTRL_BREAK_EVENT
        match self:
            case ControlSignal.CTRL_C:
                return signal.SIGINT
            case ControlSignal.CTRL_BREAK:
                return signal.SIGQUIT
            case ControlSignal.CTRL_CLOSE | ControlSignal.CTRL_LOGOFF:
                return signal.SIGHUP
            case ControlSignal.CTRL_SHUTDOWN:
                return signal.SIGTERM
        raise ValueError(f"unknown control signal: {self}")

    def host_signal(self) -> int:
        """
        The signal our own process receives when it shares the child's group.
        Console events arrive as SIGINT or SIGBREAK on Windows.
        """
        if IS_WINDOWS:
            if self is ControlSignal.CTRL_C:
                return signal.SIGINT
            return signal.SIGBREAK
        return self.os_signal()


class WorkingDirectoryMode(enum.Enum):
    EXPLICIT = "explicit"
    EXECUTABLE_DIRECTORY = "executable_directory"
    INHERITED = "inherited"


DEFAULT_EXIT_TIMEOUT_MS = 3000


@dataclasses.dataclass(frozen=True)
class ProcessLaunchConfig:
    """
    Immutable description of how to start a child process and how to end it.

    arguments is either one string, split with POSIX shell rules, or an
    already split sequence.  An explicit working_directory wins over
    use_executable_directory; with neither the child inherits ours.
    """

    executable: str
    arguments: str | collections.abc.Sequence[str] = ()
    working_directory: str | None = None
    use_executable_directory: bool = False
    redirect_output: bool = True
    redirect_error: bool = True
    input: "Observable[str] | None" = None
    write_newlines: bool = False
    exit_method: ExitMethod = ExitMethod.KILL
    exit_timeout_ms: int = DEFAULT_EXIT_TIMEOUT_MS
    control_signal: ControlSignal = ControlSignal.CTRL_C
    kill_other_processes: bool = False
    exit_codes: frozenset[int] = frozenset({0})
    quit_command: str | None = None
    new_process_group: bool = False
    encoding: str = "utf-8"

    def __post_init__(self) -> None:
        if not self.executable:
            raise ValueError("executable required")
        if self.exit_timeout_ms <= 0:
            raise ValueError(
                f"exit_timeout_ms must be positive, got {self.exit_timeout_ms}"
            )
        if not isinstance(self.exit_codes, frozenset):
            object.__setattr__(self, "exit_codes", frozenset(self.exit_codes))
        if self.exit_method is ExitMethod.SEND_QUIT_COMMAND and (
            self.quit_command is None
        ):
            raise ValueError("exit_method SEND_QUIT_COMMAND requires quit_command")

    @property
    def exit_timeout(self) -> float:
        """exit_timeout_ms in seconds"""
        return self.exit_timeout_ms / 1000.0

    def argv(self) -> list[str]:
        if isinstance(self.arguments, str):
            args = shlex.split(self.arguments, posix=not IS_WINDOWS)
        else:
            args = list(self.arguments)
        return [self.executable, *args]

    @property
    def working_directory_mode(self) -> WorkingDirectoryMode:
        if self.working_directory:
            return WorkingDirectoryMode.EXPLICIT
        if self.use_executable_directory:
            return WorkingDirectoryMode.EXECUTABLE_DIRECTORY
        return WorkingDirectoryMode.INHERITED

    def resolved_working_directory(self) -> str | None:
        match self.working_directory_mode:
            case WorkingDirectoryMode.EXPLICIT:
                return self.working_directory
            case WorkingDirectoryMode.EXECUTABLE_DIRECTORY:
                return os.path.dirname(os.path.abspath(self.executable))
            case WorkingDirectoryMode.INHERITED:
                return None

    def with_exit_code(self, exit_code: int) -> "ProcessLaunchConfig":
        """Copy accepting exactly one exit code"""
        return dataclasses.replace(self, exit_codes=frozenset({exit_code}))

    @classmethod
    def from_mapping(
        cls, options: collections.abc.Mapping[str, typing.Any]
    ) -> "ProcessLaunchConfig":
        """
        Build a config from plain option values, e.g. parsed from a settings
        file.  Enum options accept members, values or member names.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ValueError(f"unknown process options: {sorted(unknown)}")

        kwargs = dict(options)
        if "exit_method" in kwargs:
            kwargs["exit_method"] = _parse_enum(ExitMethod, kwargs["exit_method"])
        if "control_signal" in kwargs:
            kwargs["control_signal"] = _parse_enum(
                ControlSignal, kwargs["control_signal"]
            )
        if "exit_codes" in kwargs:
            kwargs["exit_codes"] = frozenset(int(c) for c in kwargs["exit_codes"])
        return cls(**kwargs)

    def obj_json_default(self) -> typing.Any:
        """Overrides json serialization for logging"""
        return {
            "argv": self.argv(),
            "working_directory": self.resolved_working_directory(),
            "exit_method": self.exit_method.value,
            "exit_timeout_ms": self.exit_timeout_ms,
            "exit_codes": sorted(self.exit_codes),
        }


def _parse_enum[E: enum.Enum](enum_type: type[E], value: typing.Any) -> E:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        pass
    if isinstance(value, str):
        try:
            return enum_type[value.upper()]
        except KeyError:
            pass
    raise ValueError(f"invalid {enum_type.__name__}: {value!r}")
