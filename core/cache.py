"""
In-process TTL cache
Entries carry their own expiry timestamp; expired entries are dropped lazily on read
or in bulk via cleanup_expired(). Single-process only.
"""
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional


class TTLCache:
    """Key -> value map with per-entry expiry and optional size bound (oldest evicted first)."""

    def __init__(self, default_ttl: float = 300, max_size: Optional[int] = None, name: str = "cache"):
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.name = name
        self._store: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def set(self, key: str, data: Any, ttl: Optional[float] = None):
        """Store data under key for ttl seconds (default_ttl when omitted)."""
        ttl = self.default_ttl if ttl is None else ttl
        now = time.time()
        with self._lock:
            if key in self._store:
                del self._store[key]
            elif self.max_size and len(self._store) >= self.max_size:
                self._store.popitem(last=False)
            self._store[key] = {'data': data, 'timestamp': now, 'expires_at': now + ttl}

    def get(self, key: str) -> Optional[Any]:
        """Return cached data, or None if missing or expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if time.time() > entry['expires_at']:
                del self._store[key]
                return None
            return entry['data']

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._store.clear()

    def clear_by_prefix(self, prefix: str) -> int:
        return self.clear_matching(lambda key: key.startswith(prefix))

    def clear_matching(self, predicate: Callable[[str], bool]) -> int:
        """Drop every key for which predicate(key) is true. Returns the count removed."""
        with self._lock:
            doomed = [key for key in self._store if predicate(key)]
            for key in doomed:
                del self._store[key]
            return len(doomed)

    def cleanup_expired(self) -> int:
        """Drop all expired entries. Returns the count removed."""
        now = time.time()
        with self._lock:
            expired = [key for key, entry in self._store.items() if now > entry['expires_at']]
            for key in expired:
                del self._store[key]
            return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = time.time()
        with self._lock:
            total = len(self._store)
            valid = sum(1 for entry in self._store.values() if now <= entry['expires_at'])
        return {
            'name': self.name,
            'total_entries': total,
            'valid_entries': valid,
            'expired_entries': total - valid,
            'ttl_seconds': self.default_ttl,
            'max_size': self.max_size,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def keys(self):
        with self._lock:
            return list(self._store.keys())
