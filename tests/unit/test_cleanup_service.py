"""
Cache cleanup service tests
"""
import asyncio

from backtest.adapters.cache.memory_cache import MemoryCacheStore
from backtest.services.cleanup_service import CacheCleanupService
from backtest.services.data_service import HistoricalDataCache
from conftest import run


class FailingSweepCache:
    async def sweep_expired(self):
        raise OSError("locked")


def test_run_once_counts_removed_entries(sample_kline_data):
    now = [1000.0]
    cache = HistoricalDataCache(MemoryCacheStore(), hard_ttl=10, clock=lambda: now[0])
    service = CacheCleanupService(cache, interval=60)

    async def scenario():
        await cache.put("a", sample_kline_data, "BTC/USDT", "1h")
        await cache.put("b", sample_kline_data, "BTC/USDT", "1h")
        now[0] += 20
        return await service.run_once()

    assert run(scenario()) == 2
    assert service.stats == {'sweeps': 1, 'removed': 2, 'errors': 0}


def test_background_loop_survives_sweep_errors():
    service = CacheCleanupService(FailingSweepCache(), interval=0.01)

    async def scenario():
        service.start()
        assert service.running
        await asyncio.sleep(0.05)
        return await service.stop()

    stats = run(scenario())

    assert stats['errors'] >= 1
    assert stats['sweeps'] == 0
    assert not service.running


def test_stop_without_start():
    service = CacheCleanupService(FailingSweepCache())
    assert run(service.stop()) == {'sweeps': 0, 'removed': 0, 'errors': 0}
