# Advisory read-through cache with TTL and explicit invalidation.
#
# Entries are never authoritative: writers invalidate the keys they touch and
# anything older than ttl_sec is reloaded from the store.
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple


class TTLCache:
    """Small in-process cache owned by whoever constructs it (no module-level state)."""

    def __init__(self, ttl_sec: float, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        # key -> token of the load in flight; invalidation drops the token
        self._loading: Dict[str, object] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        ts, value = entry
        if (self._clock() - ts) >= self.ttl_sec:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any) -> bool:
        """Store value. False when the cache is full of live entries and nothing was stored."""
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_expired()
            if len(self._entries) >= self.max_entries:
                return False
        self._entries[key] = (self._clock(), value)
        return True

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        self._loading.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._entries if k.startswith(prefix)]:
            self._entries.pop(key, None)
        for key in [k for k in self._loading if k.startswith(prefix)]:
            self._loading.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._loading.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (ts, _) in self._entries.items() if (now - ts) >= self.ttl_sec]:
            self._entries.pop(key, None)

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value or await loader() and cache its result.

        A value loaded while the key was invalidated is returned but not cached.
        """
        value = self.get(key)
        if value is not None:
            return value
        token = object()
        self._loading[key] = token
        try:
            value = await loader()
            if value is not None and self._loading.get(key) is token:
                self.set(key, value)
        finally:
            if self._loading.get(key) is token:
                del self._loading[key]
        return value
