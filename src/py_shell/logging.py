"""Runtime audit log.

The logger records structured entries for everything the runtime does
on the host's behalf: which processes were spawned where, how they
exited, which directories were entered, which variables were exported,
and why a pipeline was aborted.

One ``Logger`` belongs to a ``ShellRuntime`` and is shared by every
context it creates, so the log reads as a single timeline:

- **LogLevel**: how serious an event is (DEBUG < INFO < WARNING < ERROR).
- **LogEntry**: one record, tagged with its source and OS pid.
- **Logger**: the shared timeline, queried with ``filter``.

Design choices:
    - **IntEnum for levels** so a threshold is a plain ``>=``.
    - **Immutable records** so a query result can be handed out freely.
    - **A lock around the entry list** since pipeline stages log from
      their own threads.
"""

import threading
from dataclasses import dataclass
from enum import IntEnum


class LogLevel(IntEnum):
    """How serious a logged event is."""

    DEBUG = 0
    INFO = 1
    WARNING = 2
    ERROR = 3


@dataclass(frozen=True)
class LogEntry:
    """One event in the audit log.

    Attributes:
        level: How serious the event is.
        message: What happened, e.g. ``"spawned ls -l in /tmp"``.
        source: Which part of the runtime logged it ("process",
            "pipeline", "context" or "runtime").
        pid: The OS process the event concerns, if any.

    """

    level: LogLevel
    message: str
    source: str
    pid: int | None = None

    def __str__(self) -> str:
        """Render as ``[LEVEL] source: message (pid=N)``."""
        text = f"[{self.level.name}] {self.source}: {self.message}"
        return text if self.pid is None else f"{text} (pid={self.pid})"


class Logger:
    """Shared, thread-safe timeline of runtime events."""

    def __init__(self, *, min_level: LogLevel = LogLevel.DEBUG) -> None:
        """Create a logger with no entries.

        Args:
            min_level: Threshold below which events are not recorded.

        """
        self._min_level = min_level
        self._lock = threading.Lock()
        self._timeline: list[LogEntry] = []

    @property
    def entries(self) -> list[LogEntry]:
        """Return a snapshot of the timeline, oldest first."""
        with self._lock:
            return self._timeline.copy()

    def log(self, level: LogLevel, message: str, *, source: str, pid: int | None = None) -> None:
        """Record an event unless it is below the threshold."""
        if level >= self._min_level:
            with self._lock:
                self._timeline.append(LogEntry(level, message, source, pid))

    def filter(
        self,
        *,
        min_level: LogLevel | None = None,
        source: str | None = None,
        pid: int | None = None,
    ) -> list[LogEntry]:
        """Query the timeline.

        Every criterion that is given must match.

        Args:
            min_level: Keep entries at this level or above.
            source: Keep entries logged by this part of the runtime.
            pid: Keep entries about this OS process.

        Returns:
            The matching entries, oldest first.

        """
        return [
            entry
            for entry in self.entries
            if (min_level is None or entry.level >= min_level)
            and (source is None or entry.source == source)
            and (pid is None or entry.pid == pid)
        ]

    def clear(self) -> None:
        """Forget every recorded event."""
        with self._lock:
            self._timeline.clear()

    def __len__(self) -> int:
        """Return how many events are recorded."""
        with self._lock:
            return len(self._timeline)
