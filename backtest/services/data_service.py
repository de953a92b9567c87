"""
Data service - keyed historical price cache with synthesis on miss
"""
import hashlib
import time
from typing import Any, Callable, Dict, Optional

import numpy as np
import pandas as pd

from backtest.data_provider import SyntheticDataProvider, Timestamp, to_epoch_seconds
from backtest.domain.interfaces import ICacheStore
from backtest.domain.models import PRICE_COLUMNS, CacheEntry
from backtest.domain.schemas import normalize_timeframe
from backtest.errors import DataError, ErrorCode
from utils.logger_utils import get_logger
import config

logger = get_logger("data_service")


def clean_price_series(series: pd.DataFrame) -> pd.DataFrame:
    """
    Drop malformed bars and return a copy sorted by timestamp.

    A bar is kept only when every field is finite, volume is positive and
    high/low enclose open and close. Raises DataError if nothing survives.
    """
    if series is None or len(series) == 0:
        raise DataError("Price series is empty", error_code=ErrorCode.EMPTY_SERIES)

    missing = [c for c in PRICE_COLUMNS if c not in series.columns]
    if missing:
        raise DataError(f"Price series is missing columns: {missing}")

    df = series[PRICE_COLUMNS].astype(float)
    values = df.to_numpy()
    finite = np.isfinite(values).all(axis=1)
    valid = (
        finite
        & (df['high'] >= df['low']).to_numpy()
        & (df['high'] >= df[['open', 'close']].max(axis=1)).to_numpy()
        & (df['low'] <= df[['open', 'close']].min(axis=1)).to_numpy()
        & (df['volume'] > 0).to_numpy()
    )

    cleaned = df[valid]
    cleaned = cleaned[~cleaned.index.duplicated(keep='last')].sort_index()

    dropped = len(series) - len(cleaned)
    if dropped:
        logger.warning(f"Dropped {dropped} malformed bar(s) out of {len(series)}")

    if cleaned.empty:
        raise DataError("No valid price bars after cleaning", error_code=ErrorCode.EMPTY_SERIES)

    return cleaned


class HistoricalDataCache:
    """Keyed price-series cache in front of a store and a synthetic provider"""

    def __init__(
        self,
        store: ICacheStore,
        provider: Optional[SyntheticDataProvider] = None,
        soft_ttl: float = config.CACHE_SOFT_TTL_HOURS * 3600,
        hard_ttl: float = config.CACHE_HARD_TTL_DAYS * 86400,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            store: storage backend
            provider: generator used on a miss
            soft_ttl: seconds after creation an entry is considered stale
            hard_ttl: seconds without access after which an entry is evicted
            clock: time source (epoch seconds)
        """
        self.store = store
        self.provider = provider or SyntheticDataProvider()
        self.soft_ttl = soft_ttl
        self.hard_ttl = hard_ttl
        self.clock = clock

    @staticmethod
    def make_key(symbol: str, timeframe: str, start: Timestamp, end: Timestamp) -> str:
        return (
            f"kline:{symbol}:{normalize_timeframe(timeframe)}:"
            f"{to_epoch_seconds(start)}:{to_epoch_seconds(end)}:{config.CACHE_KEY_VERSION}"
        )

    @staticmethod
    def content_hash(series: pd.DataFrame) -> str:
        """sha256 over timestamp/close/volume of the first and last 10 bars"""
        sample = pd.concat([series.head(10), series.tail(10)])
        parts = [
            f"{int(pd.Timestamp(ts).value // 10 ** 6)}_{row.close}_{row.volume}"
            for ts, row in zip(sample.index, sample.itertuples(index=False))
        ]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Entry for `key`, or None when absent or past the hard TTL"""
        entry = await self.store.get(key)
        if entry is None:
            return None

        now = self.clock()
        if now - entry.last_accessed_at > self.hard_ttl:
            await self.store.delete(key)
            logger.info(f"Evicted expired cache entry {key}")
            return None

        await self.store.touch(key, now)
        return CacheEntry(
            key=entry.key,
            series=entry.series.copy(),
            symbol=entry.symbol,
            timeframe=entry.timeframe,
            created_at=entry.created_at,
            last_accessed_at=now,
            content_hash=entry.content_hash,
        )

    async def put(self, key: str, series: pd.DataFrame, symbol: str, timeframe: str) -> CacheEntry:
        now = self.clock()
        entry = CacheEntry(
            key=key,
            series=series.copy(),
            symbol=symbol,
            timeframe=normalize_timeframe(timeframe),
            created_at=now,
            last_accessed_at=now,
            content_hash=self.content_hash(series),
        )
        await self.store.put(entry)
        return entry

    async def sweep_expired(self) -> int:
        removed = await self.store.sweep_expired(self.clock() - self.hard_ttl)
        if removed:
            logger.info(f"Swept {removed} expired cache entr{'y' if removed == 1 else 'ies'}")
        return removed

    async def load(self, symbol: str, timeframe: str, start: Timestamp, end: Timestamp) -> pd.DataFrame:
        """
        Series for the request: a fresh cached copy, otherwise a synthesized one
        (which is then cached). Store failures fall back to synthesis without caching.
        """
        key = self.make_key(symbol, timeframe, start, end)

        try:
            entry = await self.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}, synthesizing without cache: {e}")
            return self.provider.fetch_klines(symbol, timeframe, start, end)

        if entry is not None and self.clock() - entry.created_at <= self.soft_ttl:
            logger.info(f"Cache hit {key} ({entry.bar_count} bars)")
            return entry.series

        series = self.provider.fetch_klines(symbol, timeframe, start, end)
        try:
            await self.put(key, series, symbol, timeframe)
            logger.info(f"Cached {len(series)} synthesized bars under {key}")
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
        return series

    async def stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        stats.update(soft_ttl=self.soft_ttl, hard_ttl=self.hard_ttl)
        return stats


def create_cache_store(backend: Optional[str] = None) -> ICacheStore:
    """Store for the configured backend"""
    backend = backend or config.CACHE_BACKEND
    if backend == 'sqlite':
        from backtest.adapters.cache.sqlite_cache import SQLiteCacheStore
        return SQLiteCacheStore(config.CACHE_DB_PATH)
    if backend == 'memory':
        from backtest.adapters.cache.memory_cache import MemoryCacheStore
        return MemoryCacheStore(config.CACHE_MAX_SIZE_MB)
    raise ValueError(f"Unknown cache backend: {backend}")
