"""
Report cache
Short-lived store for provider data reused across report generation (e.g. FMP
financials fetched for several metrics at once).
"""
from typing import Any, Dict, Optional
from core.cache import TTLCache

CACHE_TTL_SECONDS = 5 * 60

_cache = TTLCache(default_ttl=CACHE_TTL_SECONDS, name="report")


def get_cached(key: str) -> Optional[Any]:
    return _cache.get(key)


def set_cached(key: str, data: Any):
    _cache.set(key, data)


def clear_cache(key: str):
    _cache.delete(key)


def clear_all_cache():
    _cache.clear()


def get_cache_stats() -> Dict[str, Any]:
    return _cache.stats()


def cleanup_expired_entries() -> int:
    return _cache.cleanup_expired()
