"""Short-lived in-process dedup of provider webhook deliveries.

Providers re-deliver the same event within seconds. Keys are
``"{EVENT}:{key id}"``; an entry lives for TTL_SECONDS. Per-process only,
the database unique keys are the durable guard.
"""

import threading
import time

TTL_SECONDS = 10.0


class RecentEvents:
    """Thread-safe TTL set."""

    def __init__(self, ttl: float = TTL_SECONDS) -> None:
        self._ttl = ttl
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, at in self._seen.items() if now - at >= self._ttl]
        for key in expired:
            del self._seen[key]

    def seen(self, key: str | None) -> bool:
        """Return True if ``key`` was seen within the TTL, else remember it.

        A None key is never a duplicate.
        """
        if not key:
            return False
        now = time.monotonic()
        with self._lock:
            self._purge(now)
            if key in self._seen:
                return True
            self._seen[key] = now
            return False

    def forget(self, key: str | None) -> None:
        """Drop ``key`` so a redelivery is processed again."""
        if not key:
            return
        with self._lock:
            self._seen.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


recent_events = RecentEvents()
