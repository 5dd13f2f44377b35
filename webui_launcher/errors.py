"""Exceptions raised by the process supervisor."""


class LauncherError(Exception):
    """Base class for launcher errors."""


class LaunchError(LauncherError):
    """The child process could not be started."""


class ExecutableNotFound(LaunchError):
    def __init__(self, command: str):
        super().__init__(f"Executable not found: {command}")
        self.command = command


class InvalidWorkingDirectory(LaunchError):
    def __init__(self, path: str):
        super().__init__(f"Working directory does not exist: {path}")
        self.path = path


class SpawnFailed(LaunchError):
    def __init__(self, reason: str):
        super().__init__(f"Failed to spawn process: {reason}")
        self.reason = reason


class AlreadyRunning(LaunchError):
    def __init__(self, pid: int):
        super().__init__(f"A process is already running (PID {pid})")
        self.pid = pid


class TerminationError(LauncherError):
    """The child process could not be killed. Safe to retry."""
