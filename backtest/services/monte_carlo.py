"""
Monte Carlo engine - resample trade returns into synthetic equity paths

Three resampling methods:
    parametric       Gaussian draws with the sample mean and std (Box-Muller)
    non_parametric   i.i.d. draws with replacement
    block_bootstrap  contiguous blocks, preserving short-range autocorrelation
"""
import asyncio
import math
import random
from typing import Callable, Dict, Iterable, Optional

import numpy as np

from backtest.domain.models import MonteCarloResult
from backtest.errors import ConfigError, DataError, ErrorCode
from backtest.services.metrics_calculator import MetricsCalculator
from utils.logger_utils import get_logger
import config

logger = get_logger("monte_carlo")

BOOTSTRAP_METHODS = ('parametric', 'non_parametric', 'block_bootstrap')
PERCENTILES = (5, 10, 25, 75, 90, 95)
VAR_LEVELS = (1, 5, 10)


class SeededRandom:
    """Linear congruential generator for reproducible simulations"""

    def __init__(self, seed: int):
        self.state = seed % 233280

    def __call__(self) -> float:
        self.state = (self.state * 9301 + 49297) % 233280
        return self.state / 233280


def _percentiles(values: np.ndarray) -> Dict[str, float]:
    if len(values) == 0:
        return {f"p{p}": 0.0 for p in PERCENTILES}
    return {f"p{p}": float(np.percentile(values, p)) for p in PERCENTILES}


def _std(values: np.ndarray) -> float:
    return float(np.std(values, ddof=1)) if len(values) > 1 else 0.0


def skewness(values: np.ndarray) -> float:
    if len(values) < 3:
        return 0.0
    std = _std(values)
    if std == 0:
        return 0.0
    return float(np.mean(((values - np.mean(values)) / std) ** 3))


def excess_kurtosis(values: np.ndarray) -> float:
    if len(values) < 4:
        return 0.0
    std = _std(values)
    if std == 0:
        return 0.0
    return float(np.mean(((values - np.mean(values)) / std) ** 4) - 3)


class MonteCarloEngine:
    """Monte Carlo simulation over a trade return series"""

    def __init__(
        self,
        num_simulations: Optional[int] = None,
        confidence_level: Optional[float] = None,
        bootstrap_method: Optional[str] = None,
        block_size: Optional[int] = None,
        seed: Optional[int] = None,
        batch_size: int = config.MC_BATCH_SIZE
    ):
        self.num_simulations = num_simulations or config.MC_NUM_SIMULATIONS
        self.confidence_level = confidence_level or config.MC_CONFIDENCE_LEVEL
        self.bootstrap_method = bootstrap_method or config.MC_BOOTSTRAP_METHOD
        self.block_size = block_size or config.MC_BLOCK_SIZE
        self.seed = seed
        self.batch_size = batch_size

    def _random_source(self) -> Callable[[], float]:
        if self.seed is not None:
            return SeededRandom(self.seed)
        return random.Random().random

    # ==================== Resampling ====================

    def _parametric(self, returns: np.ndarray, rand: Callable[[], float]) -> np.ndarray:
        mean = float(np.mean(returns))
        std = _std(returns)
        path = np.empty(len(returns))
        for i in range(len(returns)):
            u1 = max(rand(), 1e-10)
            u2 = rand()
            z = math.sqrt(-2 * math.log(u1)) * math.cos(2 * math.pi * u2)
            path[i] = mean + std * z
        return path

    def _non_parametric(self, returns: np.ndarray, rand: Callable[[], float]) -> np.ndarray:
        n = len(returns)
        indices = [min(int(rand() * n), n - 1) for _ in range(n)]
        return returns[indices]

    def _block_bootstrap(self, returns: np.ndarray, rand: Callable[[], float]) -> np.ndarray:
        n = len(returns)
        block = min(self.block_size, n)
        blocks = []
        drawn = 0
        while drawn < n:
            start = int(rand() * (n - block + 1))
            blocks.append(returns[start:start + block])
            drawn += block
        return np.concatenate(blocks)[:n]

    def resample(self, returns: np.ndarray, method: str, rand: Callable[[], float]) -> np.ndarray:
        if method == 'parametric':
            return self._parametric(returns, rand)
        if method == 'block_bootstrap':
            return self._block_bootstrap(returns, rand)
        return self._non_parametric(returns, rand)

    # ==================== Simulation ====================

    async def simulate(
        self,
        trade_returns: Iterable[float],
        num_simulations: Optional[int] = None,
        bootstrap_method: Optional[str] = None,
        confidence_level: Optional[float] = None
    ) -> MonteCarloResult:
        """
        Simulate `num_simulations` paths and aggregate their distributions.

        Raises DataError for an empty return series.
        """
        returns = np.asarray(list(trade_returns), dtype=float)
        returns = returns[np.isfinite(returns)]
        if len(returns) == 0:
            raise DataError("Monte Carlo needs at least one trade return", error_code=ErrorCode.EMPTY_RETURNS)

        num_simulations = num_simulations or self.num_simulations
        method = bootstrap_method or self.bootstrap_method
        confidence = confidence_level or self.confidence_level
        if method not in BOOTSTRAP_METHODS:
            raise ConfigError(f"Unknown bootstrap method: {method}")
        if not 0 < confidence < 1:
            raise ConfigError(f"Confidence level must be in (0, 1), got {confidence}")

        rand = self._random_source()
        total_returns = np.empty(num_simulations)
        max_drawdowns = np.empty(num_simulations)
        sharpes = np.empty(num_simulations)
        win_rates = np.empty(num_simulations)
        volatilities = np.empty(num_simulations)

        for batch_start in range(0, num_simulations, self.batch_size):
            for i in range(batch_start, min(batch_start + self.batch_size, num_simulations)):
                path = self.resample(returns, method, rand)
                total_returns[i] = MetricsCalculator.total_return(path)
                max_drawdowns[i] = MetricsCalculator.max_drawdown(path)
                sharpes[i] = MetricsCalculator.sharpe_ratio(path)
                win_rates[i] = MetricsCalculator.win_rate(path)
                volatilities[i] = MetricsCalculator.volatility(path)
            await asyncio.sleep(0)

        finite_sharpes = sharpes[np.isfinite(sharpes)]
        var = {f"p{level}": float(np.percentile(total_returns, level)) for level in VAR_LEVELS}
        cvar = {
            key: float(np.mean(total_returns[total_returns <= threshold]))
            for key, threshold in var.items()
        }
        lower = (1 - confidence) / 2

        logger.info(
            f"Monte Carlo ({method}, {num_simulations} paths): "
            f"mean return {np.mean(total_returns):.4f}, P(loss) {np.mean(total_returns < 0):.2%}"
        )

        return MonteCarloResult(
            num_simulations=num_simulations,
            bootstrap_method=method,
            confidence_level=confidence,
            returns={
                'mean': float(np.mean(total_returns)),
                'median': float(np.median(total_returns)),
                'std': _std(total_returns),
                'skewness': skewness(total_returns),
                'kurtosis': excess_kurtosis(total_returns),
                'percentiles': _percentiles(total_returns),
                'avg_win_rate': float(np.mean(win_rates)),
                'avg_volatility': float(np.mean(volatilities)),
            },
            drawdowns={
                'mean': float(np.mean(max_drawdowns)),
                'worst_case': float(np.max(max_drawdowns)),
                'percentiles': _percentiles(max_drawdowns),
            },
            sharpe={
                'mean': float(np.mean(finite_sharpes)) if len(finite_sharpes) else 0.0,
                'std': _std(finite_sharpes),
                'percentiles': _percentiles(finite_sharpes),
            },
            var=var,
            cvar=cvar,
            probability_of_loss=float(np.mean(total_returns < 0)),
            expected_shortfall=-cvar['p5'],
            confidence_bounds={
                'lower': float(np.percentile(total_returns, lower * 100)),
                'upper': float(np.percentile(total_returns, (confidence + lower) * 100)),
            },
        )
