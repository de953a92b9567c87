"""
Walk-forward engine - rolling in-sample optimization / out-of-sample testing

Each period optimizes on [start, start + opt) and tests the chosen parameters
on [start + opt, start + opt + test]; the window start advances by `step`
days while the testing window still fits inside the series.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from backtest.domain.models import (
    PerformanceReport,
    WalkForwardAggregate,
    WalkForwardPeriod,
    WalkForwardReport,
    WalkForwardRobustness,
)
from backtest.domain.schemas import parse_parameter_space
from backtest.errors import ConfigError, DataError
from backtest.optimization.genetic import GeneticOptimizer
from backtest.services.backtest_service import StrategyExecutor, StrategyRef
from utils.logger_utils import get_logger
import config

logger = get_logger("walk_forward")

Window = Tuple[datetime, datetime, datetime, datetime]


def build_periods(
    start: datetime,
    end: datetime,
    optimization_window_days: float,
    testing_window_days: float,
    step_days: float
) -> List[Window]:
    """(opt_start, opt_end, test_start, test_end) for every window that fits"""
    opt = timedelta(days=optimization_window_days)
    test = timedelta(days=testing_window_days)
    step = timedelta(days=step_days)

    periods = []
    current = pd.Timestamp(start)
    end = pd.Timestamp(end)
    while current + opt + test <= end:
        periods.append((current, current + opt, current + opt, current + opt + test))
        current = current + step
    return periods


def degradation(in_sample_sharpe: float, out_of_sample_sharpe: float) -> float:
    """Relative Sharpe loss out of sample; 0 when undefined"""
    if not (math.isfinite(in_sample_sharpe) and math.isfinite(out_of_sample_sharpe)):
        return 0.0
    if in_sample_sharpe == 0:
        return 0.0
    return (in_sample_sharpe - out_of_sample_sharpe) / abs(in_sample_sharpe)


def _sample_std(values: List[float]) -> float:
    """Sample standard deviation (n - 1); 0 for fewer than two values"""
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def _consistency(values: List[float]) -> float:
    std = _sample_std(values)
    return 1 / (1 + std) if std > 0 else 1.0


def _stability(values: List[float]) -> float:
    if len(values) < 2:
        return 1.0
    mean = float(np.mean(values))
    if mean == 0:
        return 1.0
    return 1 / (1 + abs(_sample_std(values) / mean))


class WalkForwardEngine:
    """Walk-forward robustness analysis"""

    def __init__(
        self,
        executor: StrategyExecutor,
        generations: int = config.WF_GA_GENERATIONS,
        population_size: int = config.WF_GA_POPULATION_SIZE,
        seed: Optional[int] = None
    ):
        self.executor = executor
        self.generations = generations
        self.population_size = population_size
        self.seed = seed

    async def run(
        self,
        strategy: StrategyRef,
        parameter_space: Dict[str, Any],
        optimization_window_days: int,
        testing_window_days: int,
        step_days: int,
        reoptimize_every: int,
        series: pd.DataFrame
    ) -> WalkForwardReport:
        if min(optimization_window_days, testing_window_days, step_days, reoptimize_every) <= 0:
            raise ConfigError("Walk-forward windows, step and re-optimization frequency must be positive")
        if series is None or len(series) == 0:
            raise DataError("Walk-forward needs a non-empty price series")

        windows = build_periods(
            series.index[0], series.index[-1],
            optimization_window_days, testing_window_days, step_days
        )
        if not windows:
            raise DataError(
                f"Series spans less than {optimization_window_days + testing_window_days} days; "
                f"no walk-forward period fits"
            )

        space = parse_parameter_space(parameter_space) if parameter_space else {}
        params = dict(strategy.parameters)
        periods: List[WalkForwardPeriod] = []
        logger.info(f"Walk-forward {strategy.strategy_id}: {len(windows)} period(s)")

        for i, (opt_start, opt_end, test_start, test_end) in enumerate(windows):
            index = series.index
            in_sample = series[(index >= opt_start) & (index < opt_end)]
            out_of_sample = series[(index >= test_start) & (index <= test_end)]

            reoptimized = False
            if space and (i == 0 or i % reoptimize_every == 0):
                optimized = await self._optimize(strategy._replace(parameters=params), space, in_sample, i)
                if optimized is not None:
                    params = {**params, **optimized}
                    reoptimized = True

            ref = strategy._replace(parameters=dict(params))
            is_report = await self._backtest(ref, in_sample, i, "in-sample")
            oos_report = await self._backtest(ref, out_of_sample, i, "out-of-sample")

            periods.append(WalkForwardPeriod(
                index=i,
                optimization_start=opt_start,
                optimization_end=opt_end,
                testing_start=test_start,
                testing_end=test_end,
                parameters=dict(params),
                in_sample=is_report,
                out_of_sample=oos_report,
                degradation=degradation(is_report.sharpe_ratio, oos_report.sharpe_ratio),
                reoptimized=reoptimized,
            ))

        return WalkForwardReport(
            periods=tuple(periods),
            aggregate=self.aggregate(periods),
            robustness=self.robustness(periods),
        )

    async def _optimize(self, ref: StrategyRef, space, in_sample: pd.DataFrame, period: int) -> Optional[Dict[str, Any]]:
        """Best parameters on the in-sample window, or None to keep the previous ones"""
        try:
            optimizer = GeneticOptimizer(
                population_size=self.population_size,
                generations=self.generations,
                seed=None if self.seed is None else self.seed + period,
            )
            result = await optimizer.optimize(
                space,
                fitness_fn=self.executor.make_backtest_func(ref, in_sample),
            )
        except Exception as e:
            logger.warning(f"Period {period}: optimization failed, keeping previous parameters: {e}")
            return None

        if not math.isfinite(result.best_score):
            logger.warning(f"Period {period}: no valid candidate, keeping previous parameters")
            return None
        return result.best_params

    async def _backtest(self, ref: StrategyRef, data: pd.DataFrame, period: int, label: str) -> PerformanceReport:
        if len(data) == 0:
            logger.warning(f"Period {period}: empty {label} window")
            return PerformanceReport()
        try:
            result = await self.executor.run_single(ref, data)
        except Exception as e:
            logger.warning(f"Period {period}: {label} backtest failed: {e}")
            return PerformanceReport()
        return result.performance

    @staticmethod
    def aggregate(periods: List[WalkForwardPeriod]) -> WalkForwardAggregate:
        oos = [p.out_of_sample for p in periods]
        returns = [r.total_return for r in oos]
        sharpes = [r.sharpe_ratio for r in oos if math.isfinite(r.sharpe_ratio)]

        return WalkForwardAggregate(
            avg_return=float(np.mean(returns)),
            avg_sharpe=float(np.mean(sharpes)) if sharpes else 0.0,
            avg_drawdown=float(np.mean([r.max_drawdown for r in oos])),
            avg_win_rate=float(np.mean([r.win_rate for r in oos])),
            total_trades=int(sum(r.total_trades for r in oos)),
            avg_degradation=float(np.mean([p.degradation for p in periods])),
            consistency=_consistency(returns),
        )

    @staticmethod
    def robustness(periods: List[WalkForwardPeriod]) -> WalkForwardRobustness:
        oos = [p.out_of_sample for p in periods]
        names = sorted({name for p in periods for name in p.parameters})
        stability = {
            name: _stability([float(p.parameters[name]) for p in periods if name in p.parameters])
            for name in names
        }

        return WalkForwardRobustness(
            parameter_stability=stability,
            performance_consistency=_consistency([r.total_return for r in oos]),
            worst_period_drawdown=float(max(r.max_drawdown for r in oos)),
            best_period_return=float(max(r.total_return for r in oos)),
        )
