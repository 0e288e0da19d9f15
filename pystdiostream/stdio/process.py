"""
ProcessHandle owns one started child process and turns its OS events into
hooks:

- an exited hook, raised once on the watcher thread
- an output hook and an error hook, raised on the pump thread of the stream
  for every line, and once more with None when the stream reaches its end

Exit is reported (has_exited, exit_code, exit_time, exited hooks) only after
the OS process has ended and every pump that was begun has drained its pipe.
Because of that the exited hook is always the last hook a handle raises.
"""

import collections.abc
import datetime
import logging
import os
import shutil
import subprocess
import threading
import typing

import psutil

from pystdiostream.stdio.config import IS_WINDOWS, ProcessLaunchConfig
from pystdiostream.utils import best_effort, log_extra

logger = logging.getLogger(__name__)

type ExitedHook = collections.abc.Callable[[ProcessHandle], None]
type LineHook = collections.abc.Callable[[str | None], None]
type Channel = typing.Literal["stdout", "stderr"]


class _Pump:
    """Line reader for one redirected stream"""

    channel: Channel
    stream: typing.IO[str]
    thread: threading.Thread | None = None
    cancelled: bool = False

    def __init__(self, channel: Channel, stream: typing.IO[str]) -> None:
        self.channel = channel
        self.stream = stream

    @property
    def settled(self) -> bool:
        """begun (and so will drain) or cancelled before ever starting"""
        return self.thread is not None or self.cancelled


class ProcessHandle:
    _popen: subprocess.Popen[str]
    _encoding: str

    _lock: threading.Condition
    _exited_hooks: list[ExitedHook]
    _line_hooks: dict[Channel, list[LineHook]]
    _pumps: dict[Channel, _Pump]

    _process_exited: threading.Event
    _exit_reported: threading.Event
    _exit_time: datetime.datetime | None = None
    _released: bool = False
    _watcher: threading.Thread

    def __init__(self, popen: subprocess.Popen[str]) -> None:
        self._popen = popen
        self._lock = threading.Condition()
        self._exited_hooks = []
        self._line_hooks = {"stdout": [], "stderr": []}
        self._pumps = {}
        if popen.stdout is not None:
            self._pumps["stdout"] = _Pump("stdout", popen.stdout)
        if popen.stderr is not None:
            self._pumps["stderr"] = _Pump("stderr", popen.stderr)
        self._process_exited = threading.Event()
        self._exit_reported = threading.Event()
        self._watcher = threading.Thread(
            target=self._watch, name=f"process-watcher-{popen.pid}", daemon=True
        )
        self._watcher.start()

    @classmethod
    def start(cls, config: ProcessLaunchConfig) -> "ProcessHandle":
        """
        Start the process described by config.  OS errors (missing executable,
        permission denied, bad working directory) propagate to the caller.
        """
        kwargs: dict[str, typing.Any] = {}
        if config.new_process_group:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs["start_new_session"] = True

        argv = config.argv()
        popen = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE if config.redirect_output else None,
            stderr=subprocess.PIPE if config.redirect_error else None,
            cwd=config.resolved_working_directory(),
            text=True,
            encoding=config.encoding,
            errors="replace",
            bufsize=1,
            **kwargs,
        )
        handle = cls(popen)
        logger.info("started process", extra=log_extra(handle=handle, argv=argv))
        return handle

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def has_exited(self) -> bool:
        return self._exit_reported.is_set()

    @property
    def exit_code(self) -> int:
        if not self.has_exited:
            raise ValueError(f"process {self.pid} has not exited")
        returncode = self._popen.returncode
        assert returncode is not None
        return returncode

    @property
    def exit_time(self) -> datetime.datetime:
        if not self.has_exited or self._exit_time is None:
            raise ValueError(f"process {self.pid} has not exited")
        return self._exit_time

    def is_running(self) -> bool:
        """Raw OS liveness, independent of whether exit was reported yet"""
        return not self._process_exited.is_set() and self._popen.poll() is None

    def wait_for_exit(self, timeout: float | None = None) -> bool:
        """Wait for the OS process to end.  Returns False on timeout"""
        return self._process_exited.wait(timeout)

    def wait_for_exit_reported(self, timeout: float | None = None) -> bool:
        return self._exit_reported.wait(timeout)

    @property
    def is_released(self) -> bool:
        return self._released

    # -- hooks ---------------------------------------------------------------

    def add_exited_hook(self, hook: ExitedHook) -> None:
        with self._lock:
            self._exited_hooks.append(hook)

    def remove_exited_hook(self, hook: ExitedHook) -> None:
        with self._lock:
            if hook in self._exited_hooks:
                self._exited_hooks.remove(hook)

    def add_line_hook(self, channel: Channel, hook: LineHook) -> None:
        with self._lock:
            self._line_hooks[channel].append(hook)

    def remove_line_hook(self, channel: Channel, hook: LineHook) -> None:
        with self._lock:
            if hook in self._line_hooks[channel]:
                self._line_hooks[channel].remove(hook)

    # -- read pumps ----------------------------------------------------------

    def begin_read(self, channel: Channel) -> None:
        """Start delivering lines of a redirected stream to its line hooks"""
        with self._lock:
            pump = self._pumps.get(channel)
            if pump is None:
                raise ValueError(f"{channel} is not redirected")
            if pump.thread is not None:
                raise ValueError(f"{channel} already being read")
            pump.thread = threading.Thread(
                target=self._pump,
                args=(pump,),
                name=f"process-{channel}-{self.pid}",
                daemon=True,
            )
            self._lock.notify_all()
        pump.thread.start()

    def cancel_read(self, channel: Channel | None = None) -> None:
        """
        Stop delivering lines.  A running pump keeps draining the pipe so the
        child never blocks on a full pipe, it just drops what it reads.
        """
        with self._lock:
            for name, pump in self._pumps.items():
                if channel is None or name == channel:
                    pump.cancelled = True
            self._lock.notify_all()

    def _pump(self, pump: _Pump) -> None:
        try:
            for line in iter(pump.stream.readline, ""):
                if not pump.cancelled:
                    self._raise_line(pump.channel, line.rstrip("\r\n"))
        except (OSError, ValueError) as ex:
            # stream closed underneath us during release
            logger.debug(
                "read pump stopped",
                extra=log_extra(pid=self.pid, channel=pump.channel, error=ex),
            )
        finally:
            with best_effort("close pipe", pid=self.pid, channel=pump.channel):
                pump.stream.close()
            if not pump.cancelled:
                self._raise_line(pump.channel, None)

    def _raise_line(self, channel: Channel, line: str | None) -> None:
        with self._lock:
            hooks = list(self._line_hooks[channel])
        for hook in hooks:
            try:
                hook(line)
            except Exception:  # pylint: disable=W0718:broad-exception-caught
                logger.exception(
                    "exception in line hook",
                    extra=log_extra(pid=self.pid, channel=channel),
                )

    # -- exit ----------------------------------------------------------------

    def _watch(self) -> None:
        try:
            self._popen.wait()
            self._exit_time = datetime.datetime.now()
            self._process_exited.set()
            logger.info(
                "process exited",
                extra=log_extra(pid=self.pid, exit_code=self._popen.returncode),
            )

            with self._lock:
                self._lock.wait_for(
                    lambda: self._released
                    or all(p.settled for p in self._pumps.values())
                )
                threads = [p.thread for p in self._pumps.values() if p.thread]
            for t in threads:
                t.join()

            self._exit_reported.set()
            with self._lock:
                hooks = list(self._exited_hooks)
            for hook in hooks:
                try:
                    hook(self)
                except Exception:  # pylint: disable=W0718:broad-exception-caught
                    logger.exception(
                        "exception in exited hook", extra=log_extra(pid=self.pid)
                    )
        except Exception as ex:
            logger.error("exception in process watcher", exc_info=ex)
            raise

    # -- raw I/O and termination primitives -----------------------------------

    def write(self, text: str) -> None:
        stdin = self._popen.stdin
        if stdin is None:
            raise ValueError(f"stdin of process {self.pid} is not redirected")
        stdin.write(text)
        stdin.flush()

    def close_stdin(self) -> None:
        if self._popen.stdin is not None and not self._popen.stdin.closed:
            self._popen.stdin.close()

    def request_close(self) -> None:
        """
        Ask the process to close the way a window manager would.  There is no
        main window to find for console processes on Windows, so it does
        nothing there.
        """
        if IS_WINDOWS:
            logger.debug("no main window to close", extra=log_extra(pid=self.pid))
            return
        self._popen.terminate()

    def kill_tree(self, timeout: float) -> None:
        """Kill the process and all its descendants"""
        try:
            descendants = psutil.Process(self.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            descendants = []
        for p in descendants:
            try:
                p.kill()
            except psutil.NoSuchProcess:
                pass
        # the child itself is only ever reaped by the watcher, otherwise its
        # exit status would be lost
        if self.is_running():
            self._popen.kill()
        psutil.wait_procs(descendants, timeout=timeout)
        self.wait_for_exit(timeout)

    def send_group_signal(self, signal_num: int) -> None:
        """Deliver signal_num to every process in the child's process group"""
        if IS_WINDOWS:
            # console control events are sent to a process group id
            os.kill(self.pid, signal_num)
            return
        os.killpg(os.getpgid(self.pid), signal_num)

    def release(self) -> None:
        """
        Give up the handle without forcing termination: close stdin and stop
        waiting for pumps that were never begun.  The watcher keeps reaping the
        process so it never lingers as a zombie.
        """
        with self._lock:
            if self._released:
                return
            self._released = True
            self._lock.notify_all()
        self.close_stdin()
        logger.debug("released process handle", extra=log_extra(pid=self.pid))

    def __str__(self) -> str:
        return f"(ProcessHandle: pid={self.pid})"

    def obj_json_default(self) -> typing.Any:
        """Overrides json serialization for logging"""
        return {"pid": self.pid, "args": self._popen.args}


def _executable_identity(executable: str) -> tuple[str, str | None]:
    """
    Process name and real path of executable.  A bare name is looked up on
    PATH like the OS would when starting it; when it is not found there only
    the name is known.
    """
    name = os.path.splitext(os.path.basename(executable))[0]
    path: str | None = executable
    if not os.path.dirname(executable):
        path = shutil.which(executable)
    if path is None:
        return name, None
    return name, os.path.normcase(os.path.realpath(path))


def kill_others(executable: str, timeout: float = 5.0) -> None:
    """
    Kill every other running process started from the same executable,
    waiting for each to exit.  Processes match on name and, when the
    executable could be resolved, on their real executable path.  Best effort:
    processes that vanish or that we may not inspect are skipped.
    """
    name, target = _executable_identity(executable)
    me = os.getpid()
    victims: list[psutil.Process] = []
    for p in psutil.process_iter(["pid", "ppid", "name", "exe"]):
        try:
            if p.info["pid"] == me:
                continue
            if os.path.splitext(p.info["name"] or "")[0] != name:
                continue
            exe = p.info["exe"]
            if target is not None and (
                not exe or os.path.normcase(os.path.realpath(exe)) != target
            ):
                continue
            p.kill()
            # our own children are reaped by their handle's watcher
            if p.info["ppid"] != me:
                victims.append(p)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    if victims:
        logger.info(
            "killed other processes",
            extra=log_extra(
                executable=target or name, pids=[p.pid for p in victims]
            ),
        )
        psutil.wait_procs(victims, timeout=timeout)
