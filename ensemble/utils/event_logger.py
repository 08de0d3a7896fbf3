import itertools
import os
import threading
import time
from collections import deque


class EventLogger:
    """Journal of ensemble lifecycle events (creation, start, kills, close).

    Entries always go to a bounded in-memory buffer holding the newest
    ``max_events`` lines, so a test can assert on what the ensemble did
    without touching the filesystem. With ``log_path`` each entry is also
    appended to that file, creating parent directories as needed.

    ``close`` only releases the file: the buffer stays readable and later
    entries are still recorded in memory. That lets an ensemble log its final
    "closed" event and still be inspected afterwards.
    """

    def __init__(self, log_path: str | None = None, *, max_events: int = 1000) -> None:
        self.log_path = log_path
        self._lock = threading.Lock()
        self._events = deque(maxlen=max_events)
        self._fp = self._open(log_path) if log_path else None

    @staticmethod
    def _open(log_path: str):
        parent = os.path.dirname(log_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        return open(log_path, "a", encoding="utf-8")

    @staticmethod
    def _stamp(message: str) -> str:
        return f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] {message}"

    def log(self, message: str) -> str:
        """Record ``message`` and return the stamped entry."""
        entry = self._stamp(message)
        with self._lock:
            self._events.append(entry)
            if self._fp is not None:
                print(entry, file=self._fp, flush=True)
        return entry

    def close(self) -> None:
        """Release the journal file; safe to call more than once."""
        with self._lock:
            fp, self._fp = self._fp, None
        if fp is not None:
            fp.close()

    def get_events(self, offset: int = 0, limit: int | None = None) -> list[str]:
        """Return buffered entries, oldest first.

        A negative ``offset`` counts as zero; ``limit=None`` means no limit.
        """
        start = max(offset, 0)
        stop = None if limit is None else start + limit
        with self._lock:
            return list(itertools.islice(self._events, start, stop))
