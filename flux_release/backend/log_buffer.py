"""Bounded buffer of the log lines emitted while running a backend action.

Runs of identical lines, as produced while waiting on workloads to become
ready, take a single slot and are rendered as the first and last occurrence.
"""

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
import datetime
from typing import Any

__all__ = [
    "LogBuffer",
]

DEFAULT_SIZE = 10


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class _LogLine:
    ts: datetime.datetime
    msg: str
    last_ts: datetime.datetime | None = None
    duplicates: int = 0

    def __str__(self) -> str:
        first = f"{self.ts.isoformat()} {self.msg}"
        if self.duplicates == 0 or self.last_ts is None:
            return first
        last = f"{self.last_ts.isoformat()} {self.msg}"
        if self.duplicates == 1:
            return f"{first}\n{last}"
        omitted = self.duplicates - 1
        noun = "line" if omitted == 1 else "lines"
        return f"{first}\n{last} ({omitted} duplicate {noun} omitted)"


class LogBuffer:
    """Keeps the last lines logged by an action.

    Every line is also passed through to the wrapped log function.
    """

    def __init__(
        self,
        log: Callable[..., None] | None = None,
        size: int = DEFAULT_SIZE,
        now: Callable[[], datetime.datetime] = _now,
    ) -> None:
        """Initialize LogBuffer."""
        self._log = log
        self._size = size if size > 0 else DEFAULT_SIZE
        self._now = now
        self._lines: deque[_LogLine] = deque(maxlen=self._size)

    def log(self, fmt: str, *args: Any) -> None:
        """Record a log line."""
        msg = fmt % args if args else fmt
        if self._lines and self._lines[-1].msg == msg:
            prev = self._lines[-1]
            prev.last_ts = self._now()
            prev.duplicates += 1
        else:
            self._lines.append(_LogLine(ts=self._now(), msg=msg))
        if self._log is not None:
            self._log(fmt, *args)

    @property
    def size(self) -> int:
        """Capacity of the buffer."""
        return self._size

    def __len__(self) -> int:
        return len(self._lines)

    def reset(self) -> None:
        """Drop all buffered lines."""
        self._lines.clear()

    def __str__(self) -> str:
        return "\n".join(str(line) for line in self._lines)
