from __future__ import annotations

import threading
import time
from typing import Callable


def _now_ms() -> int:
    return int(time.time() * 1000)


class MonotonicClock:
    """Millisecond clock whose readings strictly increase within the process.

    Visibility cutoffs compare with ``>``, so a send that follows a clear in
    the same millisecond must still read a later timestamp.
    """

    def __init__(self, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._last_ms = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            reading = max(int(self._now()), self._last_ms + 1)
            self._last_ms = reading
            return reading
