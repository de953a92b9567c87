"""
pytest configuration

Shared price series fixtures and helpers.
"""
import asyncio

import numpy as np
import pandas as pd
import pytest

from backtest.adapters.cache.memory_cache import MemoryCacheStore
from backtest.domain.models import SignalType, StrategySignal
from backtest.scheduler.task_scheduler import TaskScheduler
from backtest.services.data_service import HistoricalDataCache


def make_klines(closes, start="2024-01-01", freq="h"):
    """Valid OHLCV frame around a close path"""
    closes = np.asarray(closes, dtype=float)
    opens = np.concatenate([[closes[0]], closes[:-1]])
    df = pd.DataFrame({
        "open": opens,
        "high": np.maximum(opens, closes) * 1.001,
        "low": np.minimum(opens, closes) * 0.999,
        "close": closes,
        "volume": np.full(len(closes), 1000.0),
    })
    df.index = pd.date_range(start, periods=len(closes), freq=freq, name="timestamp")
    return df


def make_signal(i, signal_type, price, start="2024-01-01"):
    return StrategySignal(
        timestamp=pd.Timestamp(start) + pd.Timedelta(hours=i),
        type=SignalType(signal_type),
        price=float(price),
    )


def run(coro):
    return asyncio.run(coro)


class RecordingScheduler(TaskScheduler):
    """Inline scheduler that remembers every submitted task"""

    def __init__(self, **kwargs):
        kwargs.setdefault('max_workers', 2)
        kwargs.setdefault('use_processes', False)
        super().__init__(**kwargs)
        self.submitted = []

    def _enqueue(self, task):
        self.submitted.append(task)
        return super()._enqueue(task)


@pytest.fixture
def sample_kline_data():
    """300 hourly bars of a seeded random walk"""
    rng = np.random.default_rng(42)
    closes = 100 * np.cumprod(1 + rng.normal(0, 0.01, 300))
    return make_klines(closes)


@pytest.fixture
def daily_kline_data():
    """200 daily bars of a seeded random walk"""
    rng = np.random.default_rng(7)
    closes = 100 * np.cumprod(1 + rng.normal(0.0005, 0.02, 200))
    return make_klines(closes, freq="D")


@pytest.fixture
def memory_cache():
    return HistoricalDataCache(MemoryCacheStore(max_size_mb=50))


@pytest.fixture
def inline_scheduler():
    return TaskScheduler(max_workers=2, use_processes=False)
