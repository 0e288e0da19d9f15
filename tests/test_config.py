import os
import signal

import pytest

from pystdiostream.stdio.config import (
    IS_WINDOWS,
    ControlSignal,
    ExitMethod,
    ProcessLaunchConfig,
    WorkingDirectoryMode,
)


def test_defaults() -> None:
    config = ProcessLaunchConfig(executable="prog")

    assert config.argv() == ["prog"]
    assert config.redirect_output and config.redirect_error
    assert config.exit_method is ExitMethod.KILL
    assert config.exit_timeout == 3.0
    assert config.control_signal is ControlSignal.CTRL_C
    assert config.exit_codes == frozenset({0})
    assert config.working_directory_mode is WorkingDirectoryMode.INHERITED
    assert config.resolved_working_directory() is None


@pytest.mark.parametrize(
    "arguments,expected",
    [
        ("-q 'a b' c", ["prog", "-q", "a b", "c"]),
        (["-q", "a b"], ["prog", "-q", "a b"]),
        ("", ["prog"]),
    ],
)
def test_argv(arguments, expected: list[str]) -> None:
    if IS_WINDOWS and isinstance(arguments, str) and "'" in arguments:
        pytest.skip("POSIX quoting")
    assert ProcessLaunchConfig("prog", arguments).argv() == expected


def test_working_directory_modes(tmp_path) -> None:
    executable = str(tmp_path / "bin" / "prog")

    explicit = ProcessLaunchConfig(
        executable, working_directory="/srv", use_executable_directory=True
    )
    assert explicit.working_directory_mode is WorkingDirectoryMode.EXPLICIT
    assert explicit.resolved_working_directory() == "/srv"

    beside = ProcessLaunchConfig(executable, use_executable_directory=True)
    assert beside.working_directory_mode is WorkingDirectoryMode.EXECUTABLE_DIRECTORY
    assert beside.resolved_working_directory() == str(tmp_path / "bin")


def test_validation() -> None:
    with pytest.raises(ValueError):
        ProcessLaunchConfig(executable="")
    with pytest.raises(ValueError):
        ProcessLaunchConfig(executable="prog", exit_timeout_ms=0)
    with pytest.raises(ValueError):
        ProcessLaunchConfig(
            executable="prog", exit_method=ExitMethod.SEND_QUIT_COMMAND
        )


def test_exit_codes_are_frozen() -> None:
    config = ProcessLaunchConfig(executable="prog", exit_codes=[0, 2])  # type: ignore[arg-type]

    assert config.exit_codes == frozenset({0, 2})
    assert config.with_exit_code(7).exit_codes == frozenset({7})
    assert config.exit_codes == frozenset({0, 2})


def test_from_mapping() -> None:
    config = ProcessLaunchConfig.from_mapping(
        {
            "executable": "couchdb",
            "arguments": "-b",
            "exit_method": "send_control_signal",
            "control_signal": "ctrl_break",
            "exit_timeout_ms": 500,
            "exit_codes": ["0", "1"],
        }
    )

    assert config.argv() == ["couchdb", "-b"]
    assert config.exit_method is ExitMethod.SEND_CONTROL_SIGNAL
    assert config.control_signal is ControlSignal.CTRL_BREAK
    assert config.exit_timeout == 0.5
    assert config.exit_codes == frozenset({0, 1})


def test_from_mapping_accepts_enum_values() -> None:
    config = ProcessLaunchConfig.from_mapping(
        {"executable": "prog", "exit_method": "KILL", "control_signal": 1}
    )

    assert config.exit_method is ExitMethod.KILL
    assert config.control_signal is ControlSignal.CTRL_BREAK


@pytest.mark.parametrize(
    "options",
    [
        {"executable": "prog", "restart": True},
        {"executable": "prog", "exit_method": "explode"},
    ],
)
def test_from_mapping_rejects_bad_options(options: dict) -> None:
    with pytest.raises(ValueError):
        ProcessLaunchConfig.from_mapping(options)


@pytest.mark.skipif(IS_WINDOWS, reason="POSIX signal mapping")
@pytest.mark.parametrize(
    "control_signal,expected",
    [
        (ControlSignal.CTRL_C, signal.SIGINT),
        (ControlSignal.CTRL_BREAK, signal.SIGQUIT),
        (ControlSignal.CTRL_CLOSE, signal.SIGHUP),
        (ControlSignal.CTRL_LOGOFF, signal.SIGHUP),
        (ControlSignal.CTRL_SHUTDOWN, signal.SIGTERM),
    ],
)
def test_control_signal_mapping(control_signal: ControlSignal, expected: int) -> None:
    assert control_signal.os_signal() == expected
    assert control_signal.host_signal() == expected


def test_log_serialization(tmp_path) -> None:
    config = ProcessLaunchConfig(
        os.path.join(str(tmp_path), "prog"), ["a"], use_executable_directory=True
    )

    assert config.obj_json_default() == {
        "argv": [os.path.join(str(tmp_path), "prog"), "a"],
        "working_directory": str(tmp_path),
        "exit_method": "kill",
        "exit_timeout_ms": 3000,
        "exit_codes": [0],
    }
