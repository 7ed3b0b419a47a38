"""Bounded in-memory log of recent S3 calls.

Entries are kept most recent first and the oldest ones fall off once
the capacity is reached. Nothing is persisted.
"""

import enum
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone


class CallResult(str, enum.Enum):
    """Outcome of a logged call."""

    OK = "OK"
    REJECTED = "REJECTED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class CallLogEntry:
    """One logged call.

    Attributes:
        tod: When the call finished (UTC).
        function: The HTTP method.
        description: What was called, usually the request path.
        result: The outcome.
        duration_ms: How long the call took.
    """

    tod: datetime
    function: str
    description: str
    result: CallResult
    duration_ms: float


class CallLog:
    """Thread-safe, bounded, most-recent-first call log."""

    def __init__(self, capacity: int = 250) -> None:
        self.capacity = capacity
        self._entries: deque[CallLogEntry] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def log(
        self, function: str, description: str, result: CallResult, duration_ms: float
    ) -> CallLogEntry:
        entry = CallLogEntry(
            tod=datetime.now(timezone.utc),
            function=function,
            description=description,
            result=CallResult(result),
            duration_ms=round(duration_ms, 2),
        )
        with self._lock:
            self._entries.appendleft(entry)
        return entry

    def get_entries(self, start: int = 0, count: int = 50) -> list[CallLogEntry]:
        """Return ``count`` entries starting at ``start`` (0 is the newest)."""
        with self._lock:
            snapshot = list(self._entries)
        return snapshot[start : start + count]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
