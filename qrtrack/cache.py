"""Short-TTL byte caches. A miss is never an error; infrastructure failures surface as StoreUnavailableError."""

import threading
import time

import redis

from qrtrack.errors import StoreUnavailableError
from qrtrack.logging import get_logger

log = get_logger("cache")


class MemoryCache:
    """Process-local TTL cache. Thread-safe; expired keys are dropped lazily."""

    def __init__(self, clock=time.monotonic, max_entries: int = 10_000):
        self._clock = clock
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[float, bytes]] = {}

    def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int):
        with self._lock:
            now = self._clock()
            if len(self._entries) >= self._max_entries and key not in self._entries:
                self._evict(now)
            self._entries[key] = (now + ttl_seconds, bytes(value))

    def _evict(self, now: float):
        expired = [k for k, (exp, _) in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self._max_entries:
            # Drop the entry closest to expiry
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]


class RedisCache:
    """Redis-backed cache; keys are namespaced under `prefix`."""

    def __init__(self, client: redis.Redis, prefix: str = "qrtrack:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "qrtrack:") -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=False), prefix=prefix)

    def get(self, key: str) -> bytes | None:
        try:
            return self.client.get(self.prefix + key)
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Cache read failed: {e}") from e

    def set(self, key: str, value: bytes, ttl_seconds: int):
        try:
            self.client.setex(self.prefix + key, ttl_seconds, value)
        except redis.RedisError as e:
            raise StoreUnavailableError(f"Cache write failed: {e}") from e
