"""
Historical data cache tests
"""
import numpy as np
import pandas as pd
import pytest

from backtest.adapters.cache.memory_cache import MemoryCacheStore
from backtest.adapters.cache.sqlite_cache import SQLiteCacheStore, compress_klines, decompress_klines
from backtest.data_provider import SyntheticDataProvider, to_epoch_seconds
from backtest.errors import DataError, ErrorCode
from backtest.services.data_service import HistoricalDataCache, clean_price_series
from conftest import make_klines, run


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class CountingProvider(SyntheticDataProvider):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def fetch_klines(self, symbol, timeframe, start_ts, end_ts):
        self.calls += 1
        return super().fetch_klines(symbol, timeframe, start_ts, end_ts)


class BrokenStore(MemoryCacheStore):
    async def get(self, key):
        raise OSError("disk unavailable")


class ReadOnlyStore(MemoryCacheStore):
    async def put(self, entry):
        raise OSError("read-only")


START = pd.Timestamp("2024-01-01")
END = pd.Timestamp("2024-01-05")


# ==================== Cleaning ====================

class TestCleanPriceSeries:

    def test_drops_malformed_bars(self):
        df = make_klines([100, 101, 102, 103, 104])
        df.iloc[1, df.columns.get_loc('high')] = 50.0       # high below close
        df.iloc[2, df.columns.get_loc('volume')] = 0.0      # no volume
        df.iloc[3, df.columns.get_loc('close')] = np.nan

        cleaned = clean_price_series(df)

        assert len(cleaned) == 2
        assert list(cleaned.index) == [df.index[0], df.index[4]]

    def test_sorts_and_keeps_last_duplicate(self):
        df = make_klines([100, 101, 102])
        dup = df.iloc[[0]].copy()
        dup['close'] = 100.05
        df = pd.concat([df.iloc[[2]], df.iloc[[1]], df.iloc[[0]], dup])

        cleaned = clean_price_series(df)

        assert cleaned.index.is_monotonic_increasing
        assert len(cleaned) == 3
        assert cleaned['close'].iloc[0] == dup['close'].iloc[0]

    def test_empty_series_raises(self):
        with pytest.raises(DataError) as exc:
            clean_price_series(make_klines([100.0]).iloc[0:0])
        assert exc.value.error_code == ErrorCode.EMPTY_SERIES

    def test_all_invalid_raises(self):
        df = make_klines([100, 101])
        df['volume'] = -1.0
        with pytest.raises(DataError):
            clean_price_series(df)

    def test_missing_columns_raise(self):
        with pytest.raises(DataError):
            clean_price_series(make_klines([100, 101]).drop(columns=['volume']))


# ==================== Provider ====================

class TestSyntheticDataProvider:

    def test_same_request_gives_same_bars(self):
        provider = SyntheticDataProvider()
        a = provider.fetch_klines("BTC/USDT", "1h", START, END)
        b = provider.fetch_klines("BTC/USDT", "1h", START, END)
        pd.testing.assert_frame_equal(a, b)

    def test_bars_are_valid_ohlcv(self):
        df = SyntheticDataProvider().fetch_klines("ETH/USDT", "15m", START, END)

        assert len(df) == 4 * 24 * 4 + 1
        assert (df['high'] >= df[['open', 'close']].max(axis=1)).all()
        assert (df['low'] <= df[['open', 'close']].min(axis=1)).all()
        assert (df['low'] > 0).all()
        assert (df['volume'] >= 100000).all()
        assert df.index.name == 'timestamp'

    def test_bar_count_is_capped(self):
        df = SyntheticDataProvider(max_bars=50).fetch_klines("BTC/USDT", "1m", START, END)
        assert len(df) == 50

    def test_epoch_seconds_accepts_datetimes(self):
        assert to_epoch_seconds(pd.Timestamp("1970-01-02")) == 86400
        assert to_epoch_seconds(86400.7) == 86400


# ==================== Cache ====================

class TestHistoricalDataCache:

    def test_key_format(self):
        key = HistoricalDataCache.make_key("BTC/USDT", "1H", 0, 3600)
        assert key == "kline:BTC/USDT:1h:0:3600:v2"

    def test_put_then_get_preserves_content(self, sample_kline_data):
        cache = HistoricalDataCache(MemoryCacheStore(), clock=FakeClock())

        async def scenario():
            stored = await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            loaded = await cache.get("k")
            return stored, loaded

        stored, loaded = run(scenario())

        assert loaded.content_hash == stored.content_hash
        assert loaded.content_hash == HistoricalDataCache.content_hash(sample_kline_data)
        pd.testing.assert_frame_equal(loaded.series, sample_kline_data)

    def test_returned_series_is_a_copy(self, sample_kline_data):
        cache = HistoricalDataCache(MemoryCacheStore(), clock=FakeClock())

        async def scenario():
            await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            first = await cache.get("k")
            first.series['close'] = 0.0
            return await cache.get("k")

        second = run(scenario())
        assert (second.series['close'] > 0).all()

    def test_entry_is_evicted_after_hard_ttl(self, sample_kline_data):
        clock = FakeClock()
        store = MemoryCacheStore()
        cache = HistoricalDataCache(store, hard_ttl=100, clock=clock)

        async def scenario():
            await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            clock.now += 50
            hit = await cache.get("k")
            clock.now += 101
            miss = await cache.get("k")
            return hit, miss, await store.keys()

        hit, miss, keys = run(scenario())

        assert hit is not None
        assert miss is None
        assert keys == []

    def test_access_refreshes_hard_ttl(self, sample_kline_data):
        clock = FakeClock()
        cache = HistoricalDataCache(MemoryCacheStore(), hard_ttl=100, clock=clock)

        async def scenario():
            await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            for _ in range(3):
                clock.now += 80
                assert await cache.get("k") is not None
            return True

        assert run(scenario())

    def test_sweep_removes_only_expired(self, sample_kline_data):
        clock = FakeClock()
        store = MemoryCacheStore()
        cache = HistoricalDataCache(store, hard_ttl=100, clock=clock)

        async def scenario():
            await cache.put("old", sample_kline_data, "BTC/USDT", "1h")
            clock.now += 150
            await cache.put("new", sample_kline_data, "BTC/USDT", "1h")
            removed = await cache.sweep_expired()
            return removed, await store.keys()

        removed, keys = run(scenario())

        assert removed == 1
        assert keys == ["new"]

    def test_load_synthesizes_once_then_hits(self):
        provider = CountingProvider()
        cache = HistoricalDataCache(MemoryCacheStore(), provider=provider, clock=FakeClock())

        async def scenario():
            first = await cache.load("BTC/USDT", "1h", START, END)
            second = await cache.load("BTC/USDT", "1h", START, END)
            return first, second

        first, second = run(scenario())

        assert provider.calls == 1
        pd.testing.assert_frame_equal(first, second)

    def test_stale_entry_is_resynthesized(self):
        clock = FakeClock()
        provider = CountingProvider()
        cache = HistoricalDataCache(
            MemoryCacheStore(), provider=provider, soft_ttl=10, hard_ttl=1000, clock=clock
        )

        async def scenario():
            await cache.load("BTC/USDT", "1h", START, END)
            clock.now += 20
            await cache.load("BTC/USDT", "1h", START, END)

        run(scenario())
        assert provider.calls == 2

    def test_read_failure_falls_back_to_synthesis(self):
        cache = HistoricalDataCache(BrokenStore(), clock=FakeClock())
        series = run(cache.load("BTC/USDT", "1h", START, END))
        assert len(series) == 4 * 24 + 1

    def test_write_failure_still_returns_series(self):
        store = ReadOnlyStore()
        cache = HistoricalDataCache(store, clock=FakeClock())

        async def scenario():
            series = await cache.load("BTC/USDT", "1h", START, END)
            return series, await store.keys()

        series, keys = run(scenario())
        assert not series.empty
        assert keys == []

    def test_stats_report_entries_and_bars(self, sample_kline_data):
        cache = HistoricalDataCache(MemoryCacheStore(), clock=FakeClock())

        async def scenario():
            await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            return await cache.stats()

        stats = run(scenario())
        assert stats['entries'] == 1
        assert stats['bars'] == len(sample_kline_data)


class TestMemoryCacheStore:

    def test_evicts_least_recently_accessed_when_full(self, sample_kline_data):
        store = MemoryCacheStore(max_size_mb=0)
        cache = HistoricalDataCache(store, clock=FakeClock())

        async def scenario():
            await cache.put("a", sample_kline_data, "BTC/USDT", "1h")
            await cache.put("b", sample_kline_data, "BTC/USDT", "1h")
            return await store.keys()

        assert run(scenario()) == ["b"]


class TestSQLiteCacheStore:

    def test_compression_preserves_bars(self, sample_kline_data):
        restored = decompress_klines(compress_klines(sample_kline_data))
        assert list(restored.index) == list(sample_kline_data.index)
        assert restored['close'].tolist() == sample_kline_data['close'].tolist()
        assert restored['volume'].tolist() == sample_kline_data['volume'].tolist()

    def test_entries_survive_a_new_store_instance(self, tmp_path, sample_kline_data):
        db_path = str(tmp_path / "cache.db")
        clock = FakeClock()

        async def write():
            cache = HistoricalDataCache(SQLiteCacheStore(db_path), clock=clock)
            return await cache.put("k", sample_kline_data, "BTC/USDT", "1h")

        async def read():
            cache = HistoricalDataCache(SQLiteCacheStore(db_path), clock=clock)
            return await cache.get("k"), await cache.stats()

        stored = run(write())
        loaded, stats = run(read())

        assert loaded.content_hash == stored.content_hash
        assert loaded.timeframe == "1h"
        assert stats['entries'] == 1
        assert stats['bars'] == len(sample_kline_data)

    def test_sweep_expired(self, tmp_path, sample_kline_data):
        clock = FakeClock()
        store = SQLiteCacheStore(str(tmp_path / "cache.db"))
        cache = HistoricalDataCache(store, hard_ttl=100, clock=clock)

        async def scenario():
            await cache.put("k", sample_kline_data, "BTC/USDT", "1h")
            clock.now += 500
            removed = await cache.sweep_expired()
            return removed, await store.keys()

        assert run(scenario()) == (1, [])
