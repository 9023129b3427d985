"""In-memory rate limiter for the login and refresh endpoints."""
from collections import defaultdict
from datetime import datetime, timedelta
import threading

from app.services import clock


class RateLimiter:
    """
    Sliding-window limiter keyed by client identifier (usually the IP).

    Allows at most max_attempts requests within window_seconds. Identifiers
    with no attempts left in the window are dropped, at most once per window.
    """

    def __init__(self, max_attempts: int = 10, window_seconds: int = 900):
        self._attempts: dict[str, list[datetime]] = defaultdict(list)
        self._max_attempts = max_attempts
        self._window = timedelta(seconds=window_seconds)
        self._lock = threading.Lock()
        self._last_sweep = clock.utcnow()

    def check_and_increment(self, identifier: str) -> tuple[bool, int]:
        """
        Check if identifier is rate limited and count this request.

        Returns:
            Tuple of (is_allowed, attempts_remaining)
        """
        now = clock.utcnow()
        with self._lock:
            if now - self._last_sweep >= self._window:
                self._sweep(now)

            self._attempts[identifier] = [t for t in self._attempts[identifier] if now - t < self._window]

            if len(self._attempts[identifier]) >= self._max_attempts:
                return False, 0

            self._attempts[identifier].append(now)
            return True, self._max_attempts - len(self._attempts[identifier])

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._attempts.pop(identifier, None)

    def _sweep(self, now: datetime) -> None:
        stale = [key for key, times in self._attempts.items() if not times or now - times[-1] >= self._window]
        for key in stale:
            del self._attempts[key]
        self._last_sweep = now

    def __len__(self) -> int:
        return len(self._attempts)
