"""Per-caller debounce for generation requests: a bounded map whose entries expire."""

import os
import threading
import time
from collections import OrderedDict
from typing import Callable

DEFAULT_WINDOW_SECONDS = 30.0
DEFAULT_MAX_ENTRIES = 10_000


class Debouncer:
    """
    Remembers when each key last went through. A key seen again inside the
    window is refused; entries older than the window are dropped, and once
    max_entries is reached the oldest key is evicted.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.window_seconds = max(float(window_seconds), 0.0)
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def check(self, key: str) -> float | None:
        """
        Return None and record key when it may proceed, otherwise the seconds
        left until it may.
        """
        with self._lock:
            now = self._clock()
            self._expire(now)
            last = self._seen.get(key)
            if last is not None:
                return self.window_seconds - (now - last)
            self._seen[key] = now
            while len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return None

    def _expire(self, now: float) -> None:
        # entries are in insertion order, so the oldest are at the front
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.window_seconds:
                break
            del self._seen[key]

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


def _window_from_env() -> float:
    try:
        return float(os.environ.get("GENERATION_DEBOUNCE_SECONDS", str(DEFAULT_WINDOW_SECONDS)))
    except ValueError:
        return DEFAULT_WINDOW_SECONDS


generation_debouncer = Debouncer(window_seconds=_window_from_env())
