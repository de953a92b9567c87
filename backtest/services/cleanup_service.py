"""
Cache cleanup service - periodically evicts cache entries past the hard TTL
"""
import asyncio
from typing import Any, Dict, Optional

from backtest.services.data_service import HistoricalDataCache
from utils.logger_utils import get_logger
import config

logger = get_logger("cleanup_service")


class CacheCleanupService:
    """Background sweep of the historical data cache"""

    def __init__(self, cache: HistoricalDataCache, interval: float = config.CACHE_SWEEP_INTERVAL):
        self.cache = cache
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self.stats = {'sweeps': 0, 'removed': 0, 'errors': 0}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        removed = await self.cache.sweep_expired()
        self.stats['sweeps'] += 1
        self.stats['removed'] += removed
        return removed

    async def _loop(self):
        while True:
            try:
                await self.run_once()
            except Exception as e:
                self.stats['errors'] += 1
                logger.error(f"Cache sweep failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(f"Cache cleanup started (every {self.interval:.0f}s)")

    async def stop(self) -> Dict[str, Any]:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Cache cleanup stopped")
        return dict(self.stats)
