from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock


class SlidingWindowThrottle:
    """Per-key request counter over a sliding time window."""

    def __init__(self, *, max_requests: int, window: timedelta) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        self._lock = Lock()
        self._max_requests = max_requests
        self._window = window
        self._requests: dict[str, list[datetime]] = {}
        self._last_sweep: datetime | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
            self._last_sweep = None

    def allow(self, key: str, *, now: datetime | None = None) -> bool:
        """Record one request for ``key`` and report whether it fits the window."""
        with self._lock:
            current = now or datetime.now(timezone.utc)
            cutoff = current - self._window
            self._sweep(current, cutoff)
            recent = [ts for ts in self._requests.get(key, []) if ts > cutoff]
            if len(recent) >= self._max_requests:
                self._requests[key] = recent
                return False
            recent.append(current)
            self._requests[key] = recent
            return True

    def _sweep(self, current: datetime, cutoff: datetime) -> None:
        # At most once per window: drop keys whose newest request has expired.
        if self._last_sweep is not None and current - self._last_sweep < self._window:
            return
        self._last_sweep = current
        stale = [key for key, stamps in self._requests.items() if not stamps or stamps[-1] <= cutoff]
        for key in stale:
            self._requests.pop(key)
