import datetime
import os
import signal
import subprocess
import sys
import threading
import time

import pytest

from conftest import CHILD, Recorder, child_config, wait_gone
from pystdiostream.stdio import bridge, termination
from pystdiostream.stdio.config import ControlSignal, ExitMethod, ProcessLaunchConfig
from pystdiostream.stdio.errors import ProcessTerminationError
from pystdiostream.stdio.notification import Completed, Data, Failed
from pystdiostream.stdio.observable import Subject, from_iterable
from pystdiostream.stdio.process import ProcessHandle

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
HOST = os.path.join(ROOT, "tests", "fixtures", "host.py")


def _wait_for_pid(recorder: Recorder, prefix: str = "pid") -> int:
    """Pid printed by the child as a '<prefix> <pid>' line"""
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        for value in recorder.values:
            if value.startswith(f"{prefix} "):
                return int(value.split()[1])
        time.sleep(0.02)
    raise AssertionError(f"no {prefix} line in {recorder.delivered}")


def test_exit_code_zero_completes_once(recorder: Recorder) -> None:
    stream = bridge.create_from_config(child_config("--stdout", "1", "--stdout", "2"))
    stream.subscribe_observer(recorder)

    delivered = recorder.wait()
    assert recorder.values == ["1", "2"]
    assert recorder.terminals == [Completed()]
    # terminal notification is last
    assert delivered[-1] == Completed()


@pytest.mark.parametrize("exit_code", [1, 3, 42])
def test_rejected_exit_code_fails_once(recorder: Recorder, exit_code: int) -> None:
    before = datetime.datetime.now()
    stream = bridge.create_from_config(
        child_config("--stdout", "x", "--exit-code", str(exit_code))
    )
    stream.subscribe_observer(recorder)

    delivered = recorder.wait()
    assert recorder.values == ["x"]
    assert len(recorder.terminals) == 1
    terminal = delivered[-1]
    assert isinstance(terminal, Failed)
    assert isinstance(terminal.error, ProcessTerminationError)
    assert terminal.error.exit_code == exit_code
    assert before <= terminal.error.exit_time <= datetime.datetime.now()


def test_accepted_exit_codes_complete(recorder: Recorder) -> None:
    config = child_config("--exit-code", "3", exit_codes=frozenset({0, 3}))
    bridge.create_from_config(config).subscribe_observer(recorder)

    recorder.wait()
    assert recorder.terminals == [Completed()]


def test_create_replaces_executable_and_arguments(recorder: Recorder) -> None:
    base = child_config(exit_codes=frozenset({7}))
    stream = bridge.create(sys.executable, ["-u", CHILD, "--exit-code", "7"], base)
    stream.subscribe_observer(recorder)

    recorder.wait()
    assert recorder.terminals == [Completed()]


def test_stdout_and_stderr_keep_their_own_order(recorder: Recorder) -> None:
    config = child_config(
        "--stdout", "1", "--stdout", "2", "--stdout", "3",
        "--stderr", "a", "--stderr", "b", "--stderr", "c",
    )
    bridge.create_from_config(config).subscribe_observer(recorder)

    recorder.wait()
    values = recorder.values
    assert sorted(values) == ["1", "2", "3", "a", "b", "c"]
    assert [v for v in values if v.isdigit()] == ["1", "2", "3"]
    assert [v for v in values if v.isalpha()] == ["a", "b", "c"]
    assert recorder.terminals == [Completed()]


def test_unredirected_stderr_is_not_streamed(recorder: Recorder) -> None:
    config = child_config(
        "--stdout", "out", "--stderr", "err", redirect_error=False
    )
    bridge.create_from_config(config).subscribe_observer(recorder)

    recorder.wait()
    assert recorder.values == ["out"]


def test_explicit_working_directory(recorder: Recorder, tmp_path) -> None:
    config = child_config("--print-cwd", working_directory=str(tmp_path))
    bridge.create_from_config(config).subscribe_observer(recorder)

    recorder.wait()
    assert recorder.values == [f"cwd {os.path.realpath(tmp_path)}"]


def test_start_failure_raises_from_subscribe(recorder: Recorder, tmp_path) -> None:
    stream = bridge.create(str(tmp_path / "does-not-exist"))

    with pytest.raises(FileNotFoundError):
        stream.subscribe_observer(recorder)
    assert recorder.delivered == []


def test_dispose_kills_process_and_silences_stream(recorder: Recorder) -> None:
    config = child_config("--print-pid", "--sleep", "60")
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    pid = _wait_for_pid(recorder)

    subscription.dispose()

    assert wait_gone(pid)
    time.sleep(0.2)
    assert recorder.terminals == []


def test_kill_takes_descendants(recorder: Recorder) -> None:
    config = child_config("--spawn-sleeper", "--stdout", "ready", "--sleep", "60")
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    recorder.wait_for_data("ready")

    sleeper = _wait_for_pid(recorder, "sleeper")
    subscription.dispose()

    assert wait_gone(sleeper)


def test_input_close_ends_cooperative_child(recorder: Recorder) -> None:
    config = child_config(
        "--print-pid", "--echo-stdin", exit_method=ExitMethod.INPUT_CLOSE
    )
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    pid = _wait_for_pid(recorder)

    subscription.dispose()

    assert wait_gone(pid)


def test_quit_command_ends_cooperative_child(recorder: Recorder) -> None:
    config = child_config(
        "--print-pid",
        "--quit-command", "quit",
        exit_method=ExitMethod.SEND_QUIT_COMMAND,
        quit_command="quit",
    )
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    pid = _wait_for_pid(recorder)

    subscription.dispose()

    assert wait_gone(pid)


@posix_only
def test_control_signal_ends_child_in_own_group(recorder: Recorder) -> None:
    config = child_config(
        "--print-pid",
        "--interrupt-exit-code", "5",
        "--sleep", "60",
        exit_method=ExitMethod.SEND_CONTROL_SIGNAL,
        new_process_group=True,
    )
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    pid = _wait_for_pid(recorder)

    started = time.monotonic()
    subscription.dispose()

    assert wait_gone(pid)
    # the child exits on the signal, long before the exit timeout
    assert time.monotonic() - started < config.exit_timeout
    # a child in its own group cannot signal us, nothing to guard
    assert not termination.control_signal_guard.is_installed(signal.SIGINT)


@posix_only
@pytest.mark.parametrize("control_signal", list(ControlSignal))
def test_control_signal_to_shared_group_spares_host(
    control_signal: ControlSignal, tmp_path
) -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (ROOT, env.get("PYTHONPATH")) if p
    )
    result = subprocess.run(
        [sys.executable, "-u", HOST, control_signal.name],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
        start_new_session=True,
    )

    assert result.returncode == 0, result.stderr
    running, survived = result.stdout.splitlines()
    assert running == "child running False"
    # the child ended on the signal rather than on the fallback
    assert float(survived.removeprefix("host survived ")) < 3.0


def test_input_lines_reach_child(recorder: Recorder) -> None:
    lines = Subject[str]()
    config = child_config(
        "--echo-stdin",
        input=lines,
        write_newlines=True,
        exit_method=ExitMethod.INPUT_CLOSE,
    )
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)

    lines.on_next("hello")
    recorder.wait_for_data("echo hello")
    lines.on_next("world")
    recorder.wait_for_data("echo world")

    subscription.dispose()
    assert recorder.values == ["echo hello", "echo world"]


def test_input_without_newlines_is_written_verbatim(recorder: Recorder) -> None:
    config = child_config(
        "--echo-stdin",
        input=from_iterable(["a", "b\n", "c\n"]),
        exit_method=ExitMethod.INPUT_CLOSE,
    )
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)

    recorder.wait_for_data("echo c")
    subscription.dispose()
    assert recorder.values == ["echo ab", "echo c"]


def test_dispose_is_idempotent(recorder: Recorder, monkeypatch) -> None:
    calls: list[int] = []
    real_terminate = termination.terminate

    def counting_terminate(handle: ProcessHandle, config: ProcessLaunchConfig) -> None:
        calls.append(handle.pid)
        real_terminate(handle, config)

    monkeypatch.setattr(termination, "terminate", counting_terminate)

    config = child_config("--print-pid", "--sleep", "60")
    subscription = bridge.create_from_config(config).subscribe_observer(recorder)
    pid = _wait_for_pid(recorder)

    threads = [threading.Thread(target=subscription.dispose) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    subscription.dispose()

    assert calls == [pid]
    assert wait_gone(pid)


def test_natural_exit_skips_termination(recorder: Recorder, monkeypatch) -> None:
    calls: list[int] = []
    monkeypatch.setattr(
        termination, "terminate", lambda handle, config: calls.append(handle.pid)
    )

    subscription = bridge.create_from_config(child_config()).subscribe_observer(
        recorder
    )
    recorder.wait()
    subscription.dispose()

    assert calls == []


def test_dispose_from_inside_callback(recorder: Recorder) -> None:
    config = child_config("--print-pid", "--stdout", "stop", "--sleep", "60")
    holder: list = []
    stopped = threading.Event()

    def on_next(line: str) -> None:
        recorder.on_next(line)
        if line == "stop":
            holder[0].dispose()
            stopped.set()

    holder.append(
        bridge.create_from_config(config).subscribe(
            on_next, recorder.on_error, recorder.on_completed
        )
    )

    assert stopped.wait(10)
    assert wait_gone(_wait_for_pid(recorder))
    assert recorder.terminals == []


def test_from_process_after_exit_synthesizes_terminal(recorder: Recorder) -> None:
    config = child_config(
        "--exit-code", "4", redirect_output=False, redirect_error=False
    )
    handle = ProcessHandle.start(config)
    assert handle.wait_for_exit_reported(10)

    bridge.from_process(handle, config).subscribe_observer(recorder)

    # delivered during subscribe, no waiting involved
    assert len(recorder.delivered) == 1
    terminal = recorder.delivered[0]
    assert isinstance(terminal, Failed)
    assert terminal.error.exit_code == 4
    handle.release()


def test_from_process_streams_running_process(recorder: Recorder) -> None:
    config = child_config("--stdout", "a", "--stdout", "b")
    handle = ProcessHandle.start(config)

    bridge.from_process(handle, config).subscribe_observer(recorder)
    handle.begin_read("stdout")
    handle.begin_read("stderr")

    recorder.wait()
    assert recorder.delivered == [Data("a"), Data("b"), Completed()]
    handle.release()
