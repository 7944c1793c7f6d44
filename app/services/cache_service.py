# app/services/cache_service.py
# In-process TTL cache with pattern and domain-aware invalidation.
# One instance is built at startup and shared by the webhook pipeline and the read endpoints.

import asyncio
import copy
import fnmatch
import logging
import time
from typing import Any, Dict, List, Optional

from ..models.user import is_admin

logger = logging.getLogger(__name__)

_MISSING = object()

class CacheStore:
    """
    TTL key/value store.

    Values are not copied on set/get unless ``use_clones`` is enabled, so
    callers must treat returned values as read-only snapshots.
    """

    def __init__(
        self,
        default_ttl: int = 300,
        check_period: int = 320,
        max_keys: int = 10000,
        use_clones: bool = False,
    ):
        self.default_ttl = default_ttl
        self.check_period = check_period
        self.max_keys = max_keys
        self.use_clones = use_clones

        self._store: Dict[str, tuple] = {}  # key -> (value, expires_at or None)
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Basic operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store a value; ttl of 0 means no expiry. Returns False when the store is full."""
        ttl = self.default_ttl if ttl is None else ttl
        if key not in self._store and len(self._store) >= self.max_keys:
            self.sweep()
            if len(self._store) >= self.max_keys:
                logger.warning(f"Cache full ({self.max_keys} keys), not caching {key}")
                return False

        expires_at = time.monotonic() + ttl if ttl > 0 else None
        stored = copy.deepcopy(value) if self.use_clones else value
        self._store[key] = (stored, expires_at)
        logger.debug(f"CACHE SET: {key} (TTL: {ttl}s)")
        return True

    def get(self, key: str, default: Any = None) -> Any:
        value = self._get(key)
        if value is _MISSING:
            self._misses += 1
            logger.debug(f"CACHE MISS: {key}")
            return default
        self._hits += 1
        logger.debug(f"CACHE HIT: {key}")
        return copy.deepcopy(value) if self.use_clones else value

    def has(self, key: str) -> bool:
        return self._get(key) is not _MISSING

    def delete(self, *keys: str) -> int:
        """Delete keys, returning how many were present"""
        deleted = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                deleted += 1
        return deleted

    def keys(self) -> List[str]:
        """Live (non-expired) keys"""
        now = time.monotonic()
        return [k for k, (_, exp) in list(self._store.items()) if exp is None or exp > now]

    def flush_all(self) -> None:
        self._store.clear()
        self._hits = 0
        self._misses = 0
        logger.info("🗑️ ALL CACHE CLEARED")

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "keys": len(self.keys()),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups * 100, 2) if lookups else 0.0,
            "max_keys": self.max_keys,
        }

    def _get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return _MISSING
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._store.pop(key, None)
            return _MISSING
        return value

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Remove expired entries, returning how many were dropped"""
        now = time.monotonic()
        expired = [k for k, (_, exp) in list(self._store.items()) if exp is not None and exp <= now]
        for key in expired:
            self._store.pop(key, None)
        return len(expired)

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.check_period)
            removed = self.sweep()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired keys")

    def start_sweeper(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_by_pattern(self, pattern: str) -> int:
        """Delete every live key matching a glob pattern (``*`` wildcard)"""
        matching = [key for key in self.keys() if fnmatch.fnmatchcase(key, pattern)]
        return self.delete(*matching)

    def smart_invalidate(self, data_type: str, user_id: Optional[Any] = None) -> int:
        """
        Invalidate one logical domain (calls, entries, users, all).
        With a user id only that user's partition and the admin-wide ``all``
        partition of the domain are dropped.
        """
        if data_type == "all":
            count = len(self._store)
            self.flush_all()
            return count

        patterns = domain_patterns(data_type, user_id)
        if not patterns:
            logger.warning(f"Unknown cache domain '{data_type}', nothing invalidated")
            return 0

        removed = 0
        for pattern in patterns:
            removed += self.invalidate_by_pattern(pattern)
        logger.debug(f"SMART INVALIDATE: {data_type} ({'user' if user_id else 'all'}) removed {removed} keys")
        return removed

# ============================================================================
# KEY CONVENTIONS
# ============================================================================

ALL_SCOPE = "all"

DOMAIN_PREFIXES = {
    "calls": ["call_history", "call_stats", "active_calls"],
    "entries": ["entries", "entry_counts"],
}

def domain_patterns(data_type: str, user_id: Optional[Any] = None) -> List[str]:
    """Glob patterns covering one domain, optionally scoped to one owner"""
    if data_type == "users":
        return [f"user_role_{user_id}"] if user_id else ["user_role_*"]

    prefixes = DOMAIN_PREFIXES.get(data_type)
    if prefixes is None:
        return []

    if not user_id:
        patterns = [f"{prefix}_*" for prefix in prefixes]
        if data_type == "calls":
            patterns.append("call_details_*")
        return patterns

    patterns = []
    for prefix in prefixes:
        for scope in (str(user_id), ALL_SCOPE):
            patterns.append(f"{prefix}_{scope}")
            patterns.append(f"{prefix}_{scope}_*")
    return patterns

def cache_scope(user: dict) -> str:
    """Partition a viewer's cached views: admins share the ``all`` partition"""
    return ALL_SCOPE if is_admin(user) else str(user.get("_id"))

def call_details_key(call_log_id: Any) -> str:
    return f"call_details_{call_log_id}"
