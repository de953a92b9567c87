"""
Interface layer - strategies and cache stores are swappable behind these
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import pandas as pd

from backtest.domain.models import CacheEntry, SignalResult


class IStrategy(ABC):
    """Strategy contract: price series in, signals and indicator series out"""

    @abstractmethod
    def calculate(self, series: pd.DataFrame) -> SignalResult:
        pass


class ICacheStore(ABC):
    """Storage backend of the historical data cache"""

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Insert or replace an entry (last write wins)"""
        pass

    @abstractmethod
    async def touch(self, key: str, accessed_at: float) -> None:
        """Record an access time"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def keys(self) -> List[str]:
        pass

    @abstractmethod
    async def sweep_expired(self, cutoff: float) -> int:
        """Remove entries last accessed before `cutoff` (epoch seconds); return the count removed"""
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass
