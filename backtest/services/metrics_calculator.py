"""
Financial metrics calculator

Deterministic functions over a trade return series. Every division by zero has
a documented fallback instead of raising: a zero denominator yields +inf when
the numerator is positive and 0 otherwise.
"""
import math
from dataclasses import replace
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from backtest.domain.models import PerformanceReport, SignalType, StrategySignal
import config


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0 or not math.isfinite(denominator):
        return float('inf') if numerator > 0 else 0.0
    return float(numerator / denominator)


def _as_array(returns: Iterable[float]) -> np.ndarray:
    arr = np.asarray(returns, dtype=float).ravel()
    return arr[np.isfinite(arr)]


class MetricsCalculator:
    """Backtest metrics calculator"""

    @staticmethod
    def extract_trade_returns(signals: Sequence[StrategySignal]) -> np.ndarray:
        """
        Pair signals into closed trades with a single open position.

        Flat + BUY opens a long, flat + SELL opens a short, the opposite side
        closes. A same-side signal while in a position is ignored.
        """
        returns = []
        position = None
        entry_price = 0.0

        for signal in signals:
            if position is None:
                if signal.price > 0:
                    position = signal.type
                    entry_price = signal.price
            elif signal.type != position:
                if position == SignalType.BUY:
                    r = (signal.price - entry_price) / entry_price
                else:
                    r = (entry_price - signal.price) / entry_price
                if math.isfinite(r):
                    returns.append(r)
                position = None

        return np.asarray(returns, dtype=float)

    @staticmethod
    def annotate_excursions(
        signals: Sequence[StrategySignal],
        series: pd.DataFrame
    ) -> Tuple[StrategySignal, ...]:
        """
        Tag each closing signal with the trade's adverse and favorable excursion.

        Excursions are fractions of the entry price over the bars the trade was
        open (`adverse` <= 0, `favorable` >= 0), using the bar lows and highs.
        Pairing follows extract_trade_returns.
        """
        if series is None or len(series) == 0 or not {'high', 'low'} <= set(series.columns):
            return tuple(signals)

        annotated = []
        entry = None
        for signal in signals:
            if entry is None:
                if signal.price > 0:
                    entry = signal
                annotated.append(signal)
                continue
            if signal.type == entry.type:
                annotated.append(signal)
                continue

            window = series.loc[entry.timestamp:signal.timestamp]
            if len(window) == 0:
                annotated.append(signal)
            else:
                high = (float(window['high'].max()) - entry.price) / entry.price
                low = (float(window['low'].min()) - entry.price) / entry.price
                if entry.type == SignalType.BUY:
                    adverse, favorable = low, high
                else:
                    adverse, favorable = -high, -low
                annotated.append(replace(signal, metadata={
                    **signal.metadata,
                    'adverse': min(adverse, 0.0),
                    'favorable': max(favorable, 0.0),
                }))
            entry = None

        return tuple(annotated)

    @staticmethod
    def benchmark_returns(series: pd.DataFrame) -> np.ndarray:
        """Bar-to-bar close returns of the underlying series"""
        if series is None or len(series) < 2:
            return np.asarray([], dtype=float)
        returns = series['close'].pct_change().to_numpy()[1:]
        return returns[np.isfinite(returns)]

    # ==================== Return ====================

    @staticmethod
    def total_return(returns) -> float:
        r = _as_array(returns)
        if len(r) == 0:
            return 0.0
        return float(np.prod(1 + r) - 1)

    @staticmethod
    def annualized_return(returns, periods_per_year: Optional[int] = None) -> float:
        r = _as_array(returns)
        if len(r) == 0:
            return 0.0
        periods_per_year = periods_per_year or config.TRADING_DAYS_PER_YEAR
        base = 1 + MetricsCalculator.total_return(r)
        if base <= 0:
            return -1.0
        years = len(r) / periods_per_year
        with np.errstate(over='ignore'):
            return float(np.power(np.float64(base), 1 / years) - 1)

    @staticmethod
    def volatility(returns, periods_per_year: Optional[int] = None) -> float:
        r = _as_array(returns)
        if len(r) < 2:
            return 0.0
        periods_per_year = periods_per_year or config.TRADING_DAYS_PER_YEAR
        return float(np.std(r, ddof=1) * np.sqrt(periods_per_year))

    # ==================== Risk-adjusted ====================

    @staticmethod
    def sharpe_ratio(returns, risk_free_rate: Optional[float] = None) -> float:
        r = _as_array(returns)
        if len(r) < 2:
            return 0.0
        rf = config.RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        annualized = MetricsCalculator.annualized_return(r)
        vol = MetricsCalculator.volatility(r)
        if vol == 0:
            return float('inf') if annualized > 0 else 0.0
        return float((annualized - rf) / vol)

    @staticmethod
    def sortino_ratio(returns, risk_free_rate: Optional[float] = None) -> float:
        r = _as_array(returns)
        rf = config.RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        annualized = MetricsCalculator.annualized_return(r)
        negative = r[r < 0]
        if len(negative) == 0:
            return float('inf') if annualized > 0 else 0.0
        downside = np.sqrt(np.mean(negative ** 2) * config.TRADING_DAYS_PER_YEAR)
        if downside == 0:
            return float('inf') if annualized > 0 else 0.0
        return float((annualized - rf) / downside)

    @staticmethod
    def calmar_ratio(returns) -> float:
        r = _as_array(returns)
        return _ratio(MetricsCalculator.annualized_return(r), MetricsCalculator.max_drawdown(r))

    # ==================== Drawdown ====================

    @staticmethod
    def equity_curve(returns) -> np.ndarray:
        """Compounded equity starting at 1.0"""
        r = _as_array(returns)
        return np.concatenate([[1.0], np.cumprod(1 + r)])

    @staticmethod
    def drawdowns(returns) -> np.ndarray:
        """Fractional drawdown from the running peak at each point, clipped to [0, 1]"""
        equity = MetricsCalculator.equity_curve(returns)
        running_max = np.maximum.accumulate(equity)
        drawdown = (running_max - equity) / running_max
        return np.clip(drawdown, 0.0, 1.0)

    @staticmethod
    def max_drawdown(returns) -> float:
        return float(np.max(MetricsCalculator.drawdowns(returns)))

    @staticmethod
    def max_drawdown_duration(returns) -> int:
        """Longest run of consecutive points spent below the running peak"""
        longest = current = 0
        for dd in MetricsCalculator.drawdowns(returns):
            if dd > 0:
                current += 1
                longest = max(longest, current)
            else:
                current = 0
        return longest

    @staticmethod
    def ulcer_index(returns) -> float:
        drawdown = MetricsCalculator.drawdowns(returns)
        return float(np.sqrt(np.mean(drawdown ** 2)) * 100)

    # ==================== Trade statistics ====================

    @staticmethod
    def win_rate(returns) -> float:
        """Percentage of winning trades, in [0, 100]"""
        r = _as_array(returns)
        if len(r) == 0:
            return 0.0
        return float(np.sum(r > 0) / len(r) * 100)

    @staticmethod
    def profit_factor(returns) -> float:
        r = _as_array(returns)
        gains = float(np.sum(r[r > 0]))
        losses = float(abs(np.sum(r[r < 0])))
        return _ratio(gains, losses)

    @staticmethod
    def expected_return(returns) -> float:
        """Mean trade return"""
        r = _as_array(returns)
        return float(np.mean(r)) if len(r) else 0.0

    @staticmethod
    def standard_deviation(returns) -> float:
        """Population standard deviation of trade returns, not annualized"""
        r = _as_array(returns)
        return float(np.std(r)) if len(r) else 0.0

    @staticmethod
    def downside_deviation(returns) -> float:
        """Root mean square of the losing returns; 0 without losses"""
        r = _as_array(returns)
        negative = r[r < 0]
        if len(negative) == 0:
            return 0.0
        return float(np.sqrt(np.mean(negative ** 2)))

    @staticmethod
    def recovery_factor(returns) -> float:
        """Total return over max drawdown"""
        r = _as_array(returns)
        return _ratio(MetricsCalculator.total_return(r), MetricsCalculator.max_drawdown(r))

    @staticmethod
    def max_adverse_excursion(signals: Sequence[StrategySignal]) -> float:
        """Worst `adverse` tag over the signals, <= 0"""
        return float(min([0.0] + [s.metadata.get('adverse', 0.0) for s in signals or ()]))

    @staticmethod
    def max_favorable_excursion(signals: Sequence[StrategySignal]) -> float:
        """Best `favorable` tag over the signals, >= 0"""
        return float(max([0.0] + [s.metadata.get('favorable', 0.0) for s in signals or ()]))

    # ==================== Tail risk ====================

    @staticmethod
    def value_at_risk(returns, confidence: float = None) -> float:
        """Historical VaR in percent"""
        r = _as_array(returns)
        if len(r) == 0:
            return 0.0
        confidence = config.VAR_CONFIDENCE if confidence is None else confidence
        ordered = np.sort(r)
        index = max(0, int(math.floor((1 - confidence) * len(r))) - 1)
        return float(abs(ordered[index]) * 100)

    @staticmethod
    def conditional_var(returns, confidence: float = None) -> float:
        """Mean loss beyond the VaR threshold, in percent"""
        r = _as_array(returns)
        if len(r) == 0:
            return 0.0
        var = MetricsCalculator.value_at_risk(r, confidence)
        tail = r[r <= -var / 100]
        if len(tail) == 0:
            return var
        return float(np.mean(np.abs(tail)) * 100)

    @staticmethod
    def expected_shortfall(returns, alpha: float = None) -> float:
        alpha = config.EXPECTED_SHORTFALL_ALPHA if alpha is None else alpha
        return MetricsCalculator.conditional_var(returns, 1 - alpha)

    # ==================== Benchmark-relative ====================

    @staticmethod
    def _align(returns, benchmark):
        r = _as_array(returns)
        b = _as_array(benchmark)
        n = min(len(r), len(b))
        return r[:n], b[:n]

    @staticmethod
    def tracking_error(returns, benchmark) -> float:
        r, b = MetricsCalculator._align(returns, benchmark)
        if len(r) < 2:
            return 0.0
        return float(np.std(r - b, ddof=1) * np.sqrt(config.TRADING_DAYS_PER_YEAR))

    @staticmethod
    def information_ratio(returns, benchmark) -> float:
        r, b = MetricsCalculator._align(returns, benchmark)
        if len(r) < 2:
            return 0.0
        excess = r - b
        annual_excess = float(np.mean(excess) * config.TRADING_DAYS_PER_YEAR)
        return _ratio(annual_excess, MetricsCalculator.tracking_error(r, b))

    @staticmethod
    def beta(returns, benchmark) -> float:
        r, b = MetricsCalculator._align(returns, benchmark)
        if len(r) < 2:
            return 0.0
        benchmark_var = float(np.var(b, ddof=1))
        if benchmark_var == 0:
            return 0.0
        return float(np.cov(r, b, ddof=1)[0, 1] / benchmark_var)

    @staticmethod
    def alpha(returns, benchmark, risk_free_rate: Optional[float] = None) -> float:
        r, b = MetricsCalculator._align(returns, benchmark)
        if len(r) < 2:
            return 0.0
        rf = config.RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        beta = MetricsCalculator.beta(r, b)
        return float(
            MetricsCalculator.annualized_return(r)
            - (rf + beta * (MetricsCalculator.annualized_return(b) - rf))
        )

    @staticmethod
    def treynor_ratio(returns, benchmark, risk_free_rate: Optional[float] = None) -> float:
        rf = config.RISK_FREE_RATE if risk_free_rate is None else risk_free_rate
        excess = MetricsCalculator.annualized_return(returns) - rf
        return _ratio(excess, MetricsCalculator.beta(returns, benchmark))

    # ==================== Report ====================

    @staticmethod
    def calculate_all_metrics(
        returns,
        benchmark=None,
        risk_free_rate: Optional[float] = None,
        signals: Optional[Sequence[StrategySignal]] = None
    ) -> PerformanceReport:
        """
        Compute the full report

        Benchmark-relative fields stay 0 without a benchmark; the excursion
        fields read the `adverse` / `favorable` tags of `signals`.
        """
        r = _as_array(returns)
        excursions = dict(
            max_adverse_excursion=MetricsCalculator.max_adverse_excursion(signals),
            max_favorable_excursion=MetricsCalculator.max_favorable_excursion(signals),
        )
        if len(r) == 0:
            return PerformanceReport(**excursions)

        report = dict(
            total_return=MetricsCalculator.total_return(r),
            annualized_return=MetricsCalculator.annualized_return(r),
            volatility=MetricsCalculator.volatility(r),
            sharpe_ratio=MetricsCalculator.sharpe_ratio(r, risk_free_rate),
            sortino_ratio=MetricsCalculator.sortino_ratio(r, risk_free_rate),
            calmar_ratio=MetricsCalculator.calmar_ratio(r),
            max_drawdown=MetricsCalculator.max_drawdown(r),
            max_drawdown_duration=MetricsCalculator.max_drawdown_duration(r),
            win_rate=MetricsCalculator.win_rate(r),
            profit_factor=MetricsCalculator.profit_factor(r),
            recovery_factor=MetricsCalculator.recovery_factor(r),
            expected_return=MetricsCalculator.expected_return(r),
            standard_deviation=MetricsCalculator.standard_deviation(r),
            downside_deviation=MetricsCalculator.downside_deviation(r),
            ulcer_index=MetricsCalculator.ulcer_index(r),
            var_95=MetricsCalculator.value_at_risk(r),
            cvar_95=MetricsCalculator.conditional_var(r),
            expected_shortfall=MetricsCalculator.expected_shortfall(r),
            total_trades=int(len(r)),
            **excursions,
        )

        if benchmark is not None and len(_as_array(benchmark)) > 1:
            report.update(
                information_ratio=MetricsCalculator.information_ratio(r, benchmark),
                tracking_error=MetricsCalculator.tracking_error(r, benchmark),
                beta=MetricsCalculator.beta(r, benchmark),
                alpha=MetricsCalculator.alpha(r, benchmark, risk_free_rate),
                treynor_ratio=MetricsCalculator.treynor_ratio(r, benchmark, risk_free_rate),
            )

        return PerformanceReport(**report)
