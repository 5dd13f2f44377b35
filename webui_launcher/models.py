"""
Data model for the launcher core.

Launch parameters, captured output lines, classification results and the
supervisor status. All values are immutable once created.
"""

import os
import shlex
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class Channel(Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class LaunchSpec:
    """What to run and where."""

    command: str
    arguments: str = ""
    working_directory: str = ""
    environment_overrides: dict[str, str] = field(default_factory=dict)

    def argv(self) -> list[str]:
        """Command plus its arguments split shell-style."""
        args = shlex.split(self.arguments, posix=os.name != "nt") if self.arguments else []
        return [self.command, *args]


@dataclass(frozen=True)
class ProcessHandle:
    """Identifies one spawned child. Ids are never reused by a supervisor."""

    id: int
    pid: int
    started_at: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class RawLine:
    channel: Channel
    text: str
    sequence: int


# Rendered events


@dataclass(frozen=True)
class Suppressed:
    pass


@dataclass(frozen=True)
class PlainError:
    message: str


@dataclass(frozen=True)
class StructuredLog:
    timestamp: str
    level: str
    message: str


@dataclass(frozen=True)
class PlainText:
    text: str


RenderedEvent = Union[Suppressed, PlainError, StructuredLog, PlainText]


class SupervisorState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


@dataclass(frozen=True)
class SupervisorStatus:
    """Snapshot of the supervisor. exit_code is only set once EXITED."""

    state: SupervisorState = SupervisorState.NOT_STARTED
    exit_code: Optional[int] = None
    pid: Optional[int] = None

    @classmethod
    def not_started(cls) -> "SupervisorStatus":
        return cls()

    @classmethod
    def running(cls, pid: int) -> "SupervisorStatus":
        return cls(state=SupervisorState.RUNNING, pid=pid)

    @classmethod
    def exited(cls, exit_code: Optional[int]) -> "SupervisorStatus":
        return cls(state=SupervisorState.EXITED, exit_code=exit_code)

    @property
    def is_running(self) -> bool:
        return self.state is SupervisorState.RUNNING

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "running": self.is_running,
            "exit_code": self.exit_code,
            "pid": self.pid,
        }
