"""
In-memory cache store - implements ICacheStore
"""
from typing import Any, Dict, List, Optional

from backtest.domain.interfaces import ICacheStore
from backtest.domain.models import CacheEntry


def _entry_size(entry: CacheEntry) -> int:
    return int(entry.series.memory_usage(deep=True).sum())


class MemoryCacheStore(ICacheStore):
    """Size-bounded in-memory store; evicts the least recently accessed entry"""

    def __init__(self, max_size_mb: int = 100):
        self.max_size_mb = max_size_mb
        self._entries: Dict[str, CacheEntry] = {}
        self._size_bytes = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def put(self, entry: CacheEntry) -> None:
        if entry.key in self._entries:
            await self.delete(entry.key)

        size = _entry_size(entry)
        while self._entries and self._size_bytes + size > self.max_size_mb * 1024 * 1024:
            await self._evict_oldest()

        self._entries[entry.key] = entry
        self._size_bytes += size

    async def touch(self, key: str, accessed_at: float) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            entry.last_accessed_at = accessed_at

    async def delete(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= _entry_size(entry)

    async def keys(self) -> List[str]:
        return list(self._entries)

    async def sweep_expired(self, cutoff: float) -> int:
        expired = [k for k, e in self._entries.items() if e.last_accessed_at < cutoff]
        for key in expired:
            await self.delete(key)
        return len(expired)

    async def stats(self) -> Dict[str, Any]:
        return {
            'backend': 'memory',
            'entries': len(self._entries),
            'bars': sum(e.bar_count for e in self._entries.values()),
            'size_bytes': self._size_bytes,
        }

    async def _evict_oldest(self) -> None:
        if not self._entries:
            return
        key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        await self.delete(key)
