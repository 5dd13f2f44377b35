"""
Process supervisor for the launched server.

Starts one child process, captures stdout/stderr line by line on background
threads, classifies each line and hands the result to a registered sink.
Status transitions (running, exited) are reported to a registered observer.
"""

import itertools
import logging
import os
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import Callable, Optional

import psutil

from .classifier import classify
from .errors import (
    AlreadyRunning,
    ExecutableNotFound,
    InvalidWorkingDirectory,
    SpawnFailed,
    TerminationError,
)
from .models import (
    Channel,
    LaunchSpec,
    ProcessHandle,
    RawLine,
    RenderedEvent,
    SupervisorStatus,
)

logger = logging.getLogger(__name__)

LineSink = Callable[[RawLine, RenderedEvent], None]
StatusObserver = Callable[[SupervisorStatus], None]

# Forces UTF-8 output from Python-based servers regardless of host locale
UTF8_ENVIRONMENT = {
    "PYTHONIOENCODING": "utf-8",
    "PYTHONUTF8": "1",
}

DEFAULT_TERMINATE_TIMEOUT = 10.0
CAPTURE_DRAIN_TIMEOUT = 5.0


def build_environment(overrides: dict[str, str]) -> dict[str, str]:
    """Inherited environment plus UTF-8 settings plus overrides (overrides win)."""
    env = os.environ.copy()
    env.update(UTF8_ENVIRONMENT)
    env.update(overrides)
    return env


def resolve_executable(command: str, working_dir: str) -> str:
    """Find the executable for a command name or path."""
    if not command or not command.strip():
        raise ExecutableNotFound(command)

    resolved = shutil.which(command)
    if resolved is None and os.path.dirname(command) and not os.path.isabs(command):
        # Relative paths are relative to the child's working directory
        resolved = shutil.which(os.path.join(working_dir, command))
    if resolved is None:
        raise ExecutableNotFound(command)
    return os.path.abspath(resolved)


def kill_process_tree(pid: int):
    """Forcibly kill a process and all of its descendants."""
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    for proc in [parent, *children]:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            raise TerminationError(f"Permission denied killing PID {proc.pid}") from e

    if os.name != "nt":
        # Sweep anything left in the child's process group
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass


class ProcessSupervisor:
    """Supervises a single child process."""

    def __init__(
        self,
        sink: Optional[LineSink] = None,
        observer: Optional[StatusObserver] = None,
        default_working_directory: Optional[str] = None,
    ):
        self._sink = sink
        self._observer = observer
        self._default_working_directory = default_working_directory or str(Path.home())

        # _lifecycle_lock serializes start/terminate; _lock guards the fields below
        self._lifecycle_lock = threading.Lock()
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._handle: Optional[ProcessHandle] = None
        self._status = SupervisorStatus.not_started()
        self._stop_event: Optional[threading.Event] = None
        self._exited = threading.Event()
        self._exited.set()
        self._handle_ids = itertools.count(1)

    def set_sink(self, sink: Optional[LineSink]):
        """Set the consumer for classified output: sink(raw_line, event)."""
        self._sink = sink

    def set_observer(self, observer: Optional[StatusObserver]):
        """Set the consumer for status changes: observer(status)."""
        self._observer = observer

    def status(self) -> SupervisorStatus:
        with self._lock:
            return self._status

    def handle(self) -> Optional[ProcessHandle]:
        """The live process handle, or None."""
        with self._lock:
            return self._handle

    def start(self, spec: LaunchSpec) -> ProcessHandle:
        """Spawn the child and begin capturing its output.

        Raises a LaunchError subclass if the process cannot be started; the
        supervisor state is left unchanged in that case.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._handle is not None:
                    raise AlreadyRunning(self._handle.pid)

            working_dir = spec.working_directory.strip() or self._default_working_directory
            if not os.path.isdir(working_dir):
                raise InvalidWorkingDirectory(working_dir)

            argv = spec.argv()
            executable = resolve_executable(argv[0], working_dir)

            kwargs = {}
            if os.name == "nt":
                kwargs["creationflags"] = (
                    subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
                )
            else:
                kwargs["start_new_session"] = True  # Create new process group

            try:
                process = subprocess.Popen(
                    [executable, *argv[1:]],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=working_dir,
                    env=build_environment(spec.environment_overrides),
                    **kwargs,
                )
            except FileNotFoundError as e:
                raise ExecutableNotFound(spec.command) from e
            except OSError as e:
                raise SpawnFailed(str(e)) from e

            handle = ProcessHandle(id=next(self._handle_ids), pid=process.pid)
            stop_event = threading.Event()
            status = SupervisorStatus.running(process.pid)

            with self._lock:
                self._process = process
                self._handle = handle
                self._stop_event = stop_event
                self._status = status
                self._exited = threading.Event()

            logger.info(f"Started {' '.join(argv)} with PID {process.pid} in {working_dir}")
            self._notify(status)

            capture_threads = [
                threading.Thread(
                    target=self._capture_output,
                    args=(process.stdout, Channel.STDOUT, stop_event),
                    name=f"capture-stdout-{process.pid}",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._capture_output,
                    args=(process.stderr, Channel.STDERR, stop_event),
                    name=f"capture-stderr-{process.pid}",
                    daemon=True,
                ),
            ]
            for thread in capture_threads:
                thread.start()

            threading.Thread(
                target=self._watch_exit,
                args=(handle, process, capture_threads),
                name=f"exit-watcher-{process.pid}",
                daemon=True,
            ).start()

            return handle

    def terminate(self, timeout: float = DEFAULT_TERMINATE_TIMEOUT):
        """Forcibly end the child. No-op if nothing is running."""
        with self._lifecycle_lock:
            with self._lock:
                process = self._process
                handle = self._handle
                stop_event = self._stop_event
                exited = self._exited

            if process is None:
                return

            if process.poll() is not None:
                # Exited on its own; the PID may already be reaped
                self._mark_exited(handle, process.returncode)
                exited.wait(timeout)
                return

            stop_event.set()
            logger.info(f"Terminating process {process.pid}")
            try:
                kill_process_tree(process.pid)
            except TerminationError:
                stop_event.clear()
                raise

            try:
                exit_code = process.wait(timeout=timeout)
            except subprocess.TimeoutExpired as e:
                stop_event.clear()
                raise TerminationError(
                    f"Process {process.pid} did not exit within {timeout}s"
                ) from e

            self._mark_exited(handle, exit_code)
            # The exit watcher may be the one reporting the exit
            exited.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> SupervisorStatus:
        """Block until the current process has exited (or timeout) and return the status."""
        with self._lock:
            exited = self._exited
        exited.wait(timeout)
        return self.status()

    def _watch_exit(self, handle: ProcessHandle, process: subprocess.Popen, threads):
        exit_code = process.wait()
        # Let observers see all captured output before the exit
        for thread in threads:
            thread.join(timeout=CAPTURE_DRAIN_TIMEOUT)
        self._mark_exited(handle, exit_code)

    def _mark_exited(self, handle: ProcessHandle, exit_code: Optional[int]):
        with self._lock:
            if self._handle is not handle:
                return
            self._process = None
            self._handle = None
            self._stop_event = None
            self._status = SupervisorStatus.exited(exit_code)
            status = self._status
            exited = self._exited

        if exit_code == 0:
            logger.info(f"Process {handle.pid} exited with code {exit_code}")
        else:
            logger.warning(f"Process {handle.pid} exited with code {exit_code}")
        self._notify(status)
        exited.set()

    def _notify(self, status: SupervisorStatus):
        observer = self._observer
        if observer is None:
            return
        try:
            observer(status)
        except Exception as e:
            logger.error(f"Status observer failed: {e}")

    def _capture_output(self, stream, channel: Channel, stop_event: threading.Event):
        """Read one channel line by line until end of stream."""
        sequence = 0
        try:
            for raw in iter(stream.readline, b""):
                if stop_event.is_set() and not raw.endswith(b"\n"):
                    # Fragment cut off by termination
                    break

                text = raw.decode("utf-8", errors="surrogateescape").rstrip("\r\n")
                if not text:
                    continue

                line = RawLine(channel=channel, text=text, sequence=sequence)
                sequence += 1
                self._deliver(line)

        except (OSError, ValueError) as e:
            # Read failures end this channel only
            logger.debug(f"Capture of {channel.value} ended: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _deliver(self, line: RawLine):
        event = classify(line)
        sink = self._sink
        if sink is None:
            return
        try:
            sink(line, event)
        except Exception as e:
            logger.error(f"Error delivering {line.channel.value} line {line.sequence}: {e}")
