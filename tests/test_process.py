"""Tests for the process supervisor, using real child processes."""

import os
import sys
import threading
from unittest.mock import patch

import psutil
import pytest

from conftest import python_spec
from webui_launcher.classifier import UNICODE_ERROR_MESSAGE
from webui_launcher.errors import (
    AlreadyRunning,
    ExecutableNotFound,
    InvalidWorkingDirectory,
    SpawnFailed,
    TerminationError,
)
from webui_launcher.models import (
    Channel,
    LaunchSpec,
    PlainError,
    PlainText,
    StructuredLog,
    SupervisorState,
    SupervisorStatus,
)
from webui_launcher.process import build_environment, resolve_executable

SLEEP_FOREVER = "import time; time.sleep(60)"
WAIT = 15


def join_capture_threads(pid: int):
    for thread in threading.enumerate():
        if thread.name.endswith(f"-{pid}"):
            thread.join(timeout=WAIT)


def is_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class TestBuildEnvironment:
    def test_utf8_variables_are_injected(self):
        env = build_environment({})
        assert env["PYTHONIOENCODING"] == "utf-8"
        assert env["PYTHONUTF8"] == "1"

    @patch.dict("os.environ", {"LAUNCHER_TEST_VAR": "inherited"}, clear=False)
    def test_overrides_win_over_inherited(self):
        env = build_environment({"LAUNCHER_TEST_VAR": "override"})
        assert env["LAUNCHER_TEST_VAR"] == "override"

    @patch.dict("os.environ", {"LAUNCHER_TEST_VAR": "inherited"}, clear=False)
    def test_inherited_variables_are_kept(self):
        assert build_environment({})["LAUNCHER_TEST_VAR"] == "inherited"


class TestResolveExecutable:
    def test_finds_absolute_path(self, tmp_path):
        assert resolve_executable(sys.executable, str(tmp_path)) == os.path.abspath(sys.executable)

    def test_missing_command(self, tmp_path):
        with pytest.raises(ExecutableNotFound):
            resolve_executable("definitely-not-a-real-command-xyz", str(tmp_path))

    def test_blank_command(self, tmp_path):
        with pytest.raises(ExecutableNotFound):
            resolve_executable("  ", str(tmp_path))


class TestLaunchSpec:
    def test_argv_splits_arguments(self):
        spec = LaunchSpec(command="open-webui", arguments="serve --port 8080")
        assert spec.argv() == ["open-webui", "serve", "--port", "8080"]

    def test_argv_without_arguments(self):
        assert LaunchSpec(command="open-webui").argv() == ["open-webui"]


class TestStartErrors:
    def test_missing_executable(self, supervisor):
        with pytest.raises(ExecutableNotFound):
            supervisor.start(LaunchSpec(command="definitely-not-a-real-command-xyz"))

        assert supervisor.status() == SupervisorStatus.not_started()
        assert supervisor.handle() is None

    def test_invalid_working_directory(self, supervisor, tmp_path):
        spec = python_spec("print(1)", working_directory=str(tmp_path / "missing"))
        with pytest.raises(InvalidWorkingDirectory):
            supervisor.start(spec)

        assert supervisor.status().state is SupervisorState.NOT_STARTED

    def test_spawn_failure(self, supervisor):
        with patch("subprocess.Popen", side_effect=PermissionError("denied")):
            with pytest.raises(SpawnFailed) as exc_info:
                supervisor.start(python_spec("print(1)"))

        assert "denied" in exc_info.value.reason
        assert supervisor.status().state is SupervisorState.NOT_STARTED

    def test_no_notification_on_failure(self, supervisor, recorder):
        with pytest.raises(ExecutableNotFound):
            supervisor.start(LaunchSpec(command="definitely-not-a-real-command-xyz"))

        assert recorder.statuses == []


class TestOutputCapture:
    def test_single_line_and_clean_exit(self, supervisor, recorder):
        handle = supervisor.start(python_spec("print('hello')"))

        status = supervisor.wait(timeout=WAIT)

        assert status == SupervisorStatus.exited(0)
        assert len(recorder.lines) == 1
        line, event = recorder.lines[0]
        assert line.channel is Channel.STDOUT
        assert line.text == "hello"
        assert line.sequence == 0
        assert event == PlainText("hello")
        assert recorder.statuses == [SupervisorStatus.running(handle.pid), SupervisorStatus.exited(0)]

    def test_sequence_numbers_are_per_channel(self, supervisor, recorder):
        code = (
            "import sys\n"
            "for i in range(5):\n"
            "    print(f'out {i}')\n"
            "    print(f'err {i}', file=sys.stderr)\n"
        )
        supervisor.start(python_spec(code))
        supervisor.wait(timeout=WAIT)

        for channel in Channel:
            lines = [line for line, _ in recorder.lines if line.channel is channel]
            assert [line.sequence for line in lines] == [0, 1, 2, 3, 4]
            prefix = "out" if channel is Channel.STDOUT else "err"
            assert [line.text for line in lines] == [f"{prefix} {i}" for i in range(5)]

    def test_blank_lines_are_skipped(self, supervisor, recorder):
        supervisor.start(python_spec("print('a'); print(''); print('b')"))
        supervisor.wait(timeout=WAIT)

        assert [(line.text, line.sequence) for line, _ in recorder.lines] == [("a", 0), ("b", 1)]

    def test_lines_are_classified(self, supervisor, recorder):
        code = (
            "import sys\n"
            "print('2025-09-17 01:56:34.800 | INFO | Server started')\n"
            "print('UnicodeEncodeError: charmap', file=sys.stderr)\n"
            "print('Traceback (most recent call last):', file=sys.stderr)\n"
            "print('\\u2588\\u2588 Open WebUI')\n"
        )
        supervisor.start(python_spec(code))
        supervisor.wait(timeout=WAIT)

        events = {line.text: event for line, event in recorder.lines}
        assert events["2025-09-17 01:56:34.800 | INFO | Server started"] == StructuredLog(
            "2025-09-17 01:56:34.800", "INFO", "Server started"
        )
        assert events["UnicodeEncodeError: charmap"] == PlainError(UNICODE_ERROR_MESSAGE)
        assert events["██ Open WebUI"] == PlainText("## Open WebUI")
        assert len(recorder.lines) == 4

    def test_undecodable_output_is_replaced(self, supervisor, recorder):
        supervisor.start(python_spec("import sys; sys.stdout.buffer.write(b'bad \\xff byte\\n')"))
        supervisor.wait(timeout=WAIT)

        assert [event for _, event in recorder.lines] == [
            PlainText("[OpenWebUI output contains special characters]")
        ]

    def test_final_line_without_newline_is_delivered(self, supervisor, recorder):
        supervisor.start(python_spec("import sys; sys.stdout.write('last words')"))
        supervisor.wait(timeout=WAIT)

        assert [line.text for line, _ in recorder.lines] == ["last words"]

    def test_failing_sink_does_not_stop_capture(self, supervisor, recorder):
        calls = []

        def flaky_sink(line, event):
            calls.append(line.text)
            if line.sequence == 0:
                raise RuntimeError("sink broke")

        supervisor.set_sink(flaky_sink)
        supervisor.start(python_spec("print('one'); print('two')"))
        supervisor.wait(timeout=WAIT)

        assert calls == ["one", "two"]


class TestEnvironment:
    def test_child_gets_utf8_settings_and_overrides(self, supervisor, recorder):
        code = "import os; print(os.environ['PYTHONIOENCODING'], os.environ['LAUNCHER_EXTRA'])"
        supervisor.start(python_spec(code, environment_overrides={"LAUNCHER_EXTRA": "yes"}))
        supervisor.wait(timeout=WAIT)

        assert [line.text for line, _ in recorder.lines] == ["utf-8 yes"]

    def test_default_working_directory(self, supervisor, recorder, tmp_path):
        supervisor.start(python_spec("import os; print(os.getcwd())"))
        supervisor.wait(timeout=WAIT)

        assert os.path.samefile(recorder.lines[0][0].text, tmp_path)

    def test_explicit_working_directory(self, supervisor, recorder, tmp_path):
        workdir = tmp_path / "work"
        workdir.mkdir()
        supervisor.start(python_spec("import os; print(os.getcwd())", working_directory=str(workdir)))
        supervisor.wait(timeout=WAIT)

        assert os.path.samefile(recorder.lines[0][0].text, workdir)


class TestLifecycle:
    def test_exit_code_is_reported(self, supervisor):
        supervisor.start(python_spec("raise SystemExit(3)"))

        assert supervisor.wait(timeout=WAIT) == SupervisorStatus.exited(3)

    def test_status_while_running(self, supervisor):
        handle = supervisor.start(python_spec(SLEEP_FOREVER))

        status = supervisor.status()
        assert status.is_running
        assert status.pid == handle.pid
        assert supervisor.handle() == handle

    def test_second_start_is_rejected(self, supervisor):
        handle = supervisor.start(python_spec(SLEEP_FOREVER))

        with pytest.raises(AlreadyRunning) as exc_info:
            supervisor.start(python_spec(SLEEP_FOREVER))

        assert exc_info.value.pid == handle.pid
        assert supervisor.handle() == handle

    def test_restart_after_exit_gets_new_handle(self, supervisor, recorder):
        first = supervisor.start(python_spec("print('first')"))
        supervisor.wait(timeout=WAIT)
        second = supervisor.start(python_spec("print('second')"))
        supervisor.wait(timeout=WAIT)

        assert second.id != first.id
        assert [(line.text, line.sequence) for line, _ in recorder.lines] == [
            ("first", 0),
            ("second", 0),
        ]


class TestTerminate:
    def test_terminate_without_start_is_noop(self, supervisor, recorder):
        supervisor.terminate()

        assert supervisor.status() == SupervisorStatus.not_started()
        assert recorder.statuses == []

    def test_terminate_running_process(self, supervisor, recorder):
        handle = supervisor.start(python_spec(SLEEP_FOREVER))

        supervisor.terminate()

        status = supervisor.status()
        assert status.state is SupervisorState.EXITED
        assert status.exit_code is not None
        assert supervisor.handle() is None
        assert recorder.statuses[0] == SupervisorStatus.running(handle.pid)
        assert recorder.statuses[-1] == status
        assert len(recorder.statuses) == 2

    def test_terminate_twice_is_noop(self, supervisor, recorder):
        supervisor.start(python_spec(SLEEP_FOREVER))
        supervisor.terminate()
        status = supervisor.status()

        supervisor.terminate()

        assert supervisor.status() == status
        assert len(recorder.statuses) == 2

    def test_terminate_drops_partial_line(self, supervisor, recorder):
        code = "import sys, time; sys.stdout.write('partial'); sys.stdout.flush(); time.sleep(60)"
        handle = supervisor.start(python_spec(code))

        supervisor.terminate()
        join_capture_threads(handle.pid)

        assert supervisor.status().state is SupervisorState.EXITED
        assert recorder.lines == []

    def test_terminate_kills_child_processes(self, supervisor, recorder):
        code = (
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print(child.pid, flush=True)\n"
            "time.sleep(60)\n"
        )
        handle = supervisor.start(python_spec(code))
        for _ in range(100):
            if recorder.lines:
                break
            threading.Event().wait(0.1)
        child_pid = int(recorder.lines[0][0].text)

        supervisor.terminate()
        join_capture_threads(handle.pid)

        assert is_gone(child_pid)

    def test_failed_kill_keeps_process_running(self, supervisor):
        supervisor.start(python_spec(SLEEP_FOREVER))

        with patch(
            "webui_launcher.process.kill_process_tree",
            side_effect=TerminationError("denied"),
        ):
            with pytest.raises(TerminationError):
                supervisor.terminate()

        assert supervisor.status().is_running

        supervisor.terminate()
        assert supervisor.status().state is SupervisorState.EXITED

    def test_failed_kill_keeps_capturing_partial_line(self, supervisor, recorder):
        supervisor.start(python_spec("import sys, time; time.sleep(1); sys.stdout.write('tail')"))

        with patch(
            "webui_launcher.process.kill_process_tree",
            side_effect=TerminationError("denied"),
        ):
            with pytest.raises(TerminationError):
                supervisor.terminate()

        assert supervisor.wait(timeout=WAIT) == SupervisorStatus.exited(0)
        assert [line.text for line, _ in recorder.lines] == ["tail"]

    def test_terminate_after_natural_exit_skips_kill(self, supervisor, recorder):
        # The grandchild holds stdout open so the capture threads outlive the child
        code = (
            "import subprocess, sys\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(3)'])\n"
            "print(child.pid, flush=True)\n"
        )
        handle = supervisor.start(python_spec(code))
        for _ in range(100):
            if recorder.lines and not psutil.pid_exists(handle.pid):
                break
            threading.Event().wait(0.1)
        threading.Event().wait(0.2)
        grandchild_pid = int(recorder.lines[0][0].text)
        assert supervisor.status().is_running

        with patch("webui_launcher.process.kill_process_tree") as mock_kill:
            supervisor.terminate()

        mock_kill.assert_not_called()
        assert supervisor.status() == SupervisorStatus.exited(0)
        assert recorder.statuses[-1] == SupervisorStatus.exited(0)
        assert len(recorder.statuses) == 2
        try:
            psutil.Process(grandchild_pid).kill()
        except psutil.NoSuchProcess:
            pass

    def test_wait_without_start_returns_immediately(self, supervisor):
        assert supervisor.wait(timeout=0) == SupervisorStatus.not_started()
