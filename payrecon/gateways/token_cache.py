import threading
import time
from typing import Callable


class TokenCache:
    """Short-lived auth token owned by one adapter instance.

    Safe to lose: an expired or missing token is simply fetched again.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> str | None:
        with self._lock:
            if self._token is not None and self._clock() < self._expires_at:
                return self._token
            return None

    def set(self, token: str) -> None:
        with self._lock:
            self._token = token
            self._expires_at = self._clock() + self.ttl_seconds

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0

    def get_or_fetch(self, fetch: Callable[[], str]) -> str:
        token = self.get()
        if token is None:
            token = fetch()
            self.set(token)
        return token
