"""
Output console for the dashboard.

Converts classified output into display entries with color hints, keeps a
bounded history and fans new entries out to live dashboard subscribers.
The buffer is the supervisor's sink and status observer, so its callbacks
run on capture threads and must never block them.
"""

import asyncio
import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .classifier import UNICODE_ERROR_MESSAGE
from .models import (
    PlainError,
    PlainText,
    RawLine,
    RenderedEvent,
    StructuredLog,
    Suppressed,
    SupervisorStatus,
)

logger = logging.getLogger(__name__)

LEVEL_COLORS = {
    "INFO": "lightblue",
    "ERROR": "red",
    "CRITICAL": "darkred",
    "WARNING": "orange",
    "WARN": "orange",
    "DEBUG": "lightgreen",
    "TRACE": "magenta",
}
DEFAULT_COLOR = "white"
TIMESTAMP_COLOR = "gray"
MESSAGE_COLOR = "lightgray"
ERROR_MESSAGE_COLOR = "lightcoral"

SUBSCRIBER_QUEUE_SIZE = 1000


def level_color(level: str) -> str:
    return LEVEL_COLORS.get(level.upper(), DEFAULT_COLOR)


@dataclass
class OutputEntry:
    """One line shown in the dashboard output pane."""

    id: int
    kind: str  # "log", "error", "text" or "notice"
    text: str
    color: str
    channel: Optional[str] = None
    timestamp: Optional[str] = None
    level: Optional[str] = None
    level_color: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "text": self.text,
            "color": self.color,
            "channel": self.channel,
            "timestamp": self.timestamp,
            "level": self.level,
            "level_color": self.level_color,
            "created_at": self.created_at.isoformat(),
        }


def render(entry_id: int, line: RawLine, event: RenderedEvent) -> Optional[OutputEntry]:
    """Turn a classified line into a display entry. Suppressed lines give None."""
    channel = line.channel.value
    if isinstance(event, Suppressed):
        return None
    if isinstance(event, StructuredLog):
        is_error = event.level in ("ERROR", "CRITICAL")
        return OutputEntry(
            id=entry_id,
            kind="log",
            text=event.message,
            color=ERROR_MESSAGE_COLOR if is_error else MESSAGE_COLOR,
            channel=channel,
            timestamp=event.timestamp,
            level=event.level,
            level_color=level_color(event.level),
        )
    if isinstance(event, PlainError):
        color = "red" if event.message == UNICODE_ERROR_MESSAGE else ERROR_MESSAGE_COLOR
        return OutputEntry(id=entry_id, kind="error", text=event.message, color=color, channel=channel)
    if isinstance(event, PlainText):
        return OutputEntry(id=entry_id, kind="text", text=event.text, color=MESSAGE_COLOR, channel=channel)
    raise TypeError(f"Unknown event type: {type(event).__name__}")


class OutputBuffer:
    """Thread-safe output history with live subscribers."""

    def __init__(self, max_entries: int = 2000):
        self._entries: deque[OutputEntry] = deque(maxlen=max_entries)
        self._subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def on_line(self, line: RawLine, event: RenderedEvent):
        """Supervisor sink: record a classified output line."""
        entry = render(next(self._ids), line, event)
        if entry is not None:
            self._publish("entry", entry.to_dict(), entry)

    def on_status(self, status: SupervisorStatus):
        """Supervisor observer: forward a status change to subscribers."""
        self._publish("status", status.to_dict())

    def notice(self, text: str, color: str = DEFAULT_COLOR):
        """Record a message from the launcher itself."""
        entry = OutputEntry(id=next(self._ids), kind="notice", text=text, color=color)
        self._publish("entry", entry.to_dict(), entry)

    def recent(self, limit: Optional[int] = None) -> list[OutputEntry]:
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear(self):
        with self._lock:
            self._entries.clear()

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber on the running event loop."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        with self._lock:
            self._subscribers.append((asyncio.get_running_loop(), queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        with self._lock:
            self._subscribers = [(loop, q) for loop, q in self._subscribers if q is not queue]

    def _publish(self, kind: str, payload: dict, entry: Optional[OutputEntry] = None):
        with self._lock:
            if entry is not None:
                self._entries.append(entry)
            subscribers = list(self._subscribers)

        message = {"type": kind, "data": payload}
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(_offer, queue, message)
            except RuntimeError:
                # Loop already closed
                self.unsubscribe(queue)


def _offer(queue: asyncio.Queue, message: dict):
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        logger.debug("Dropping output for slow subscriber")
