"""
Built-in strategies

Each strategy is configured with parameters at construction and maps a price
series to an immutable signal list plus the indicator series it used.
"""
from typing import Any, Dict, Iterable, List, Optional, Type

import pandas as pd

from backtest.domain.interfaces import IStrategy
from backtest.domain.models import SignalResult, SignalType, StrategySignal
from backtest.errors import ConfigError, ErrorCode
from indicators import calc_ema, calc_linear_regression_oscillator, calc_zscore
from utils.logger_utils import get_logger

logger = get_logger("strategies")


# ==================== Base class ====================

class BaseStrategy(IStrategy):
    """Strategy base class"""

    name: str = "base"
    description: str = ""
    default_params: Dict[str, Any] = {}

    def __init__(self, **kwargs):
        self.params = {**self.default_params, **kwargs}

    def int_param(self, key: str) -> int:
        return int(round(float(self.params[key])))

    def float_param(self, key: str) -> float:
        return float(self.params[key])

    def _signal(
        self,
        series: pd.DataFrame,
        i: int,
        signal_type: SignalType,
        strength: float,
        **metadata
    ) -> StrategySignal:
        return StrategySignal(
            timestamp=series.index[i],
            type=signal_type,
            price=float(series['close'].iloc[i]),
            strength=float(min(max(strength, 0.0), 1.0)),
            metadata=metadata,
        )


# ==================== Z-score trend ====================

class ZScoreTrendStrategy(BaseStrategy):
    """Fade closes that stretch beyond `threshold` standard deviations"""

    name = "z_score_trend"
    description = "SELL above +threshold z-score, BUY below -threshold"
    default_params = {'period': 20, 'threshold': 2.0}

    def calculate(self, series: pd.DataFrame) -> SignalResult:
        period = self.int_param('period')
        threshold = self.float_param('threshold')
        zscore = calc_zscore(series['close'], period)

        signals: List[StrategySignal] = []
        for i in range(period, len(series)):
            z = zscore.iloc[i]
            if z > threshold:
                signals.append(self._signal(series, i, SignalType.SELL, abs(z) / (2 * threshold), zscore=float(z)))
            elif z < -threshold:
                signals.append(self._signal(series, i, SignalType.BUY, abs(z) / (2 * threshold), zscore=float(z)))

        return SignalResult(signals=tuple(signals), indicators={'zscore': zscore.tolist()})


# ==================== Linear regression oscillator ====================

class LinearRegressionStrategy(BaseStrategy):
    """Trade zero crossovers of the normalized linear regression oscillator"""

    name = "linear_regression"
    description = "BUY when the oscillator crosses above 0, SELL when it crosses below"
    default_params = {'period': 14, 'upper_threshold': 1.5, 'lower_threshold': -1.5}

    def calculate(self, series: pd.DataFrame) -> SignalResult:
        period = self.int_param('period')
        upper = self.float_param('upper_threshold')
        lower = abs(self.float_param('lower_threshold'))
        osc = calc_linear_regression_oscillator(series['close'], period)
        normalized = osc['normalized'].to_numpy()

        signals: List[StrategySignal] = []
        for i in range(period, len(series)):
            prev, cur = normalized[i - 1], normalized[i]
            if prev <= 0 < cur:
                signals.append(self._signal(series, i, SignalType.BUY, abs(cur) / upper, normalized=float(cur)))
            elif prev >= 0 > cur:
                signals.append(self._signal(series, i, SignalType.SELL, abs(cur) / lower, normalized=float(cur)))

        return SignalResult(
            signals=tuple(signals),
            indicators={'lro': osc['lro'].tolist(), 'normalized': osc['normalized'].tolist()},
        )


# ==================== EMA cross ====================

class EMACrossStrategy(BaseStrategy):
    """EMA crossover"""

    name = "ema_cross"
    description = "BUY when the short EMA crosses above the long EMA, SELL on the opposite cross"
    default_params = {'short_period': 9, 'long_period': 21}

    def calculate(self, series: pd.DataFrame) -> SignalResult:
        short_period = self.int_param('short_period')
        long_period = self.int_param('long_period')
        close = series['close']
        short = calc_ema(close, short_period)
        long = calc_ema(close, long_period)
        diff = (short - long).to_numpy()

        signals: List[StrategySignal] = []
        for i in range(max(short_period, long_period), len(series)):
            strength = abs(diff[i]) / long.iloc[i] * 50
            if diff[i] > 0 >= diff[i - 1]:
                signals.append(self._signal(series, i, SignalType.BUY, strength))
            elif diff[i] < 0 <= diff[i - 1]:
                signals.append(self._signal(series, i, SignalType.SELL, strength))

        return SignalResult(
            signals=tuple(signals),
            indicators={'ema_short': short.tolist(), 'ema_long': long.tolist()},
        )


# ==================== Registry ====================

STRATEGY_MAP: Dict[str, Type[BaseStrategy]] = {
    "z_score_trend": ZScoreTrendStrategy,
    "linear_regression": LinearRegressionStrategy,
    "ema_cross": EMACrossStrategy,
}


def get_strategy(name: str, **kwargs) -> BaseStrategy:
    """Instantiate a built-in strategy"""
    if name not in STRATEGY_MAP:
        raise ValueError(f"Unknown strategy: {name}")
    return STRATEGY_MAP[name](**kwargs)


class StrategyRegistry:
    """Strategy id -> class lookup owned by one orchestrator"""

    def __init__(self, strategies: Optional[Dict[str, Type[IStrategy]]] = None):
        self._strategies: Dict[str, Type[IStrategy]] = dict(STRATEGY_MAP if strategies is None else strategies)

    def register(self, strategy_id: str, strategy_cls: Type[IStrategy]) -> None:
        self._strategies[strategy_id] = strategy_cls

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def ids(self) -> List[str]:
        return sorted(self._strategies)

    def get(self, strategy_id: str) -> Type[IStrategy]:
        if strategy_id not in self._strategies:
            raise ConfigError(
                f"Unknown strategy: {strategy_id}",
                error_code=ErrorCode.UNKNOWN_STRATEGY,
                details={'available': self.ids()}
            )
        return self._strategies[strategy_id]

    def validate(self, strategy_ids: Iterable[str]) -> None:
        """Raise ConfigError listing every unknown id"""
        unknown = [s for s in strategy_ids if s not in self._strategies]
        if unknown:
            raise ConfigError(
                f"Unknown strategy id(s): {', '.join(unknown)}",
                error_code=ErrorCode.UNKNOWN_STRATEGY,
                details={'unknown': unknown, 'available': self.ids()}
            )

    def create(self, strategy_id: str, parameters: Optional[Dict[str, Any]] = None) -> IStrategy:
        return self.get(strategy_id)(**(parameters or {}))
