"""Small in-memory TTL cache for flag snapshots - could swap to Redis later if needed"""
import threading
from typing import Optional
from cachetools import TTLCache
from abplatform.config import settings
from abplatform.schemas import FlagSnapshot


# key: (flag name, environment). Holds frozen snapshots, never ORM rows,
# so entries are safe to share between sessions and threads.
flag_cache = TTLCache(
    maxsize=settings.flag_cache_max_size,
    ttl=settings.flag_cache_ttl
)

# TTLCache is not thread-safe on its own
_lock = threading.Lock()


def get_flag(name: str, environment: str) -> Optional[FlagSnapshot]:
    """Get cached flag snapshot if exists"""
    with _lock:
        return flag_cache.get((name, environment))


def set_flag(snapshot: FlagSnapshot):
    """Cache a flag snapshot"""
    with _lock:
        flag_cache[(snapshot.name, snapshot.environment)] = snapshot


def clear_flag(name: str, environment: str):
    """Drop a cached flag (call after every change to it)"""
    with _lock:
        flag_cache.pop((name, environment), None)


def clear_all():
    with _lock:
        flag_cache.clear()
