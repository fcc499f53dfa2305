from typing import Dict, Any, Optional
from collections import OrderedDict
import asyncio
from datetime import datetime, timedelta, timezone


class CacheMemoryStore:
    """In-memory keyed store with TTL expiry and a hard entry cap (least recently used evicted)"""

    def __init__(self, max_entries: int = 1000, default_ttl: int = 3600):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.evictions = 0
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Set a value in cache with TTL"""

        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl if ttl is not None else self.default_ttl)

            self.cache[key] = {
                "value": value,
                "expires_at": expires_at
            }
            self.cache.move_to_end(key)

            while len(self.cache) > self.max_entries:
                self.cache.popitem(last=False)
                self.evictions += 1

    async def get(self, key: str, default: Any = None) -> Any:
        """Get value from cache if not expired"""

        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return default

            if datetime.now(timezone.utc) > entry["expires_at"]:
                del self.cache[key]
                return default

            self.cache.move_to_end(key)
            return entry["value"]

    async def delete(self, key: str) -> bool:
        """Delete a key from cache"""

        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [
                key for key, entry in self.cache.items()
                if now > entry["expires_at"]
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        async with self._lock:
            now = datetime.now(timezone.utc)
            active_count = sum(
                1 for entry in self.cache.values()
                if now <= entry["expires_at"]
            )

            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count,
                "evictions": self.evictions,
                "max_entries": self.max_entries
            }
