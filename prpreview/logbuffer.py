"""Bounded, append-only log sequence with snapshot reads."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from datetime import datetime, timezone
from threading import Lock

from prpreview.models import LogEntry


def log_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class LogBuffer:
    """Append-only log lines capped at ``max_lines`` with oldest-first eviction.

    Readers take a copy under a short lock, so a slow reader never holds up
    the drain loop that appends.
    """

    def __init__(self, max_lines: int, entries: Iterable[LogEntry] = ()) -> None:
        self._entries: deque[LogEntry] = deque(entries, maxlen=max(1, max_lines))
        self._lock = Lock()
        self._evicted = 0

    def append(self, text: str, timestamp: str | None = None) -> LogEntry:
        entry = LogEntry(timestamp=timestamp or log_timestamp(), text=text)
        with self._lock:
            if len(self._entries) == self._entries.maxlen:
                self._evicted += 1
            self._entries.append(entry)
        return entry

    def snapshot(self) -> list[LogEntry]:
        with self._lock:
            return list(self._entries)

    def lines(self) -> list[str]:
        return [entry.render() for entry in self.snapshot()]

    @property
    def evicted(self) -> int:
        """Number of lines dropped to respect the cap."""
        return self._evicted

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
