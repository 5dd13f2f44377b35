"""Shared fixtures for launcher tests."""

import shlex
import sys
import threading

import pytest

from webui_launcher.models import LaunchSpec
from webui_launcher.process import ProcessSupervisor


def python_spec(code: str, **kwargs) -> LaunchSpec:
    """A launch spec running a Python snippet with the current interpreter."""
    return LaunchSpec(command=sys.executable, arguments=f"-u -c {shlex.quote(code)}", **kwargs)


class Recorder:
    """Collects sink and observer callbacks from supervisor threads."""

    def __init__(self):
        self.lines = []
        self.statuses = []
        self._lock = threading.Lock()

    def sink(self, line, event):
        with self._lock:
            self.lines.append((line, event))

    def observer(self, status):
        with self._lock:
            self.statuses.append(status)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def supervisor(recorder, tmp_path):
    supervisor = ProcessSupervisor(
        sink=recorder.sink,
        observer=recorder.observer,
        default_working_directory=str(tmp_path),
    )
    yield supervisor
    supervisor.terminate()
