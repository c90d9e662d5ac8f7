"""In-memory buffer of recent log records.

``LogBuffer`` is a ``logging.Handler`` that keeps the last ``capacity``
records so the API can show what the service has been doing without
shipping logs anywhere. It is attached to the package logger by
``room_timeline.main``; the timeline engine itself knows nothing about it.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Deque, List

from .models import LogEntry


class LogBuffer(logging.Handler):
    """Logging handler retaining the most recent records in memory."""

    def __init__(self, capacity: int = 100, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._entries: Deque[LogEntry] = deque(maxlen=max(capacity, 1))
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"),
                level=record.levelname,
                message=record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self) -> List[LogEntry]:
        """Return a copy of the buffered records, oldest first."""
        with self._entries_lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()
