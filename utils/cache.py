"""In-memory TTL cache for catalog listings.

The catalog tree is read-only to the budget tools, so listing results can be
reused for a few minutes.  Keys are tuples such as
``("sub_items", line_item_id)``.
"""

import threading
import time
from typing import Any, Callable, Hashable


class TTLCache:
    """Thread-safe cache whose entries expire ``ttl_seconds`` after insertion.

    At most ``maxsize`` entries are kept; inserting into a full cache evicts
    the entry closest to expiry.

    Usage::

        cache = TTLCache(maxsize=256, ttl_seconds=300)
        rows = cache.get_or_compute(("major_groups", "CONST"),
                                    lambda: list_major_groups(conn, "CONST"))
    """

    def __init__(self, maxsize: int = 256, ttl_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._maxsize = maxsize
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _lookup(self, key: Hashable) -> tuple[bool, Any]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return False, None
        return True, value

    def get(self, key: Hashable, default: Any = None) -> Any:
        """Return the live value for *key*, else *default*."""
        with self._lock:
            found, value = self._lookup(key)
            if found:
                self._hits += 1
                return value
            self._misses += 1
            return default

    def set(self, key: Hashable, value: Any) -> None:
        """Store *value* under *key*, evicting the soonest-expiring entry if full."""
        with self._lock:
            self._store(key, value)

    def _store(self, key: Hashable, value: Any) -> None:
        if self._ttl <= 0:
            return
        if key not in self._entries and len(self._entries) >= self._maxsize:
            victim = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[victim]
        self._entries[key] = (value, self._clock() + self._ttl)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """Return the cached value or call *compute* and cache its result.

        ``compute`` runs outside the lock; two concurrent misses may both
        compute, and the later result wins.
        """
        with self._lock:
            found, value = self._lookup(key)
            if found:
                self._hits += 1
                return value
            self._misses += 1
        value = compute()
        with self._lock:
            self._store(key, value)
        return value

    def stats(self) -> dict[str, int]:
        """Return ``hits``, ``misses`` and live ``size``."""
        with self._lock:
            now = self._clock()
            for k in [k for k, (_, exp) in self._entries.items() if now >= exp]:
                del self._entries[k]
            return {"hits": self._hits, "misses": self._misses,
                    "size": len(self._entries)}
