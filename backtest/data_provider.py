"""
Historical Data Provider - procedurally synthesized OHLCV series

Used when no cached series exists for a request. The walk is seeded from the
request itself, so the same (symbol, timeframe, start, end) always yields the
same bars.
"""
import hashlib
from datetime import datetime
from typing import Optional, Union

import numpy as np
import pandas as pd

from backtest.domain.models import PRICE_COLUMNS
from backtest.domain.schemas import TIMEFRAME_MINUTES, normalize_timeframe
from utils.logger_utils import get_logger
import config

logger = get_logger("data_provider")

Timestamp = Union[int, float, datetime, pd.Timestamp]


def to_epoch_seconds(value: Timestamp) -> int:
    """Unix seconds from an int/float or a (naive UTC) datetime"""
    if isinstance(value, (int, float, np.integer, np.floating)):
        return int(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_convert('UTC').tz_localize(None)
    return int(ts.value // 10 ** 9)


class SyntheticDataProvider:
    """Generate a bounded-volatility random walk in place of exchange data"""

    def __init__(
        self,
        base_price: float = config.SYNTHETIC_BASE_PRICE,
        max_bars: int = config.SYNTHETIC_MAX_BARS,
        seed: Optional[int] = None
    ):
        self.base_price = base_price
        self.max_bars = max_bars
        self.seed = seed

    def _seed_for(self, symbol: str, timeframe: str, start_ts: int, end_ts: int) -> int:
        if self.seed is not None:
            return self.seed
        digest = hashlib.sha256(f"{symbol}:{timeframe}:{start_ts}:{end_ts}".encode()).hexdigest()
        return int(digest[:16], 16)

    def fetch_klines(self, symbol: str, timeframe: str, start_ts: Timestamp, end_ts: Timestamp) -> pd.DataFrame:
        """
        Fetch historical klines

        Args:
            symbol: Trading pair (e.g., ETH/USDT)
            timeframe: Timeframe (e.g., 15m, 1h)
            start_ts: Start timestamp (Unix seconds or datetime)
            end_ts: End timestamp (Unix seconds or datetime)

        Returns:
            DataFrame with OHLCV data indexed by timestamp
        """
        timeframe = normalize_timeframe(timeframe)
        if timeframe not in TIMEFRAME_MINUTES:
            raise ValueError(f"Unsupported timeframe: {timeframe}")

        start_s = to_epoch_seconds(start_ts)
        end_s = to_epoch_seconds(end_ts)
        interval_s = TIMEFRAME_MINUTES[timeframe] * 60
        if end_s < start_s:
            return pd.DataFrame(columns=PRICE_COLUMNS)

        bars = min((end_s - start_s) // interval_s + 1, self.max_bars)
        rng = np.random.default_rng(self._seed_for(symbol, timeframe, start_s, end_s))

        start_price = self.base_price * (1 + rng.uniform(-0.1, 0.1))
        volatility = rng.uniform(config.SYNTHETIC_MIN_VOLATILITY, config.SYNTHETIC_MAX_VOLATILITY)
        trend = rng.uniform(-config.SYNTHETIC_MAX_TREND, config.SYNTHETIC_MAX_TREND)

        # Each step moves at most volatility / 2, so prices stay positive
        steps = (rng.random(bars) - 0.5) * volatility + trend
        close = start_price * np.cumprod(1 + steps)
        open_ = np.concatenate([[start_price], close[:-1]])
        high = np.maximum(open_, close) * (1 + rng.random(bars) * 0.01)
        low = np.minimum(open_, close) * (1 - rng.random(bars) * 0.01)
        volume = 100000 + rng.random(bars) * 2000000

        index = pd.to_datetime(start_s + np.arange(bars) * interval_s, unit='s')
        df = pd.DataFrame(
            {'open': open_, 'high': high, 'low': low, 'close': close, 'volume': volume},
            index=index
        )
        df.index.name = 'timestamp'

        logger.debug(f"Synthesized {bars} bars for {symbol} {timeframe}")
        return df
