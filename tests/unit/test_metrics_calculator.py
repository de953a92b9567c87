"""
MetricsCalculator unit tests
"""
import math

import numpy as np
import pytest

import config
from backtest.domain.models import PerformanceReport
from backtest.services.metrics_calculator import MetricsCalculator
from conftest import make_klines, make_signal


def _alternating_closes(n=100, start=100.0):
    closes = [start]
    for i in range(1, n):
        closes.append(closes[-1] * (1.01 if i % 2 else 0.99))
    return closes


class TestTradeReturns:

    def test_two_round_trips_compound_to_total_return(self):
        closes = _alternating_closes()
        signals = [
            make_signal(0, "BUY", closes[0]),
            make_signal(50, "SELL", closes[50]),
            make_signal(50, "BUY", closes[50]),
            make_signal(99, "SELL", closes[99]),
        ]

        returns = MetricsCalculator.extract_trade_returns(signals)

        assert len(returns) == 2
        assert returns[0] == pytest.approx((closes[50] - closes[0]) / closes[0])
        assert returns[1] == pytest.approx((closes[99] - closes[50]) / closes[50])
        total = MetricsCalculator.total_return(returns)
        assert total == pytest.approx(np.prod(1 + returns) - 1)

    def test_short_position_profits_from_falling_price(self):
        signals = [make_signal(0, "SELL", 100), make_signal(1, "BUY", 90)]
        returns = MetricsCalculator.extract_trade_returns(signals)
        assert returns.tolist() == pytest.approx([0.1])

    def test_same_side_signal_is_ignored_while_in_position(self):
        signals = [
            make_signal(0, "BUY", 100),
            make_signal(1, "BUY", 50),
            make_signal(2, "SELL", 110),
        ]
        returns = MetricsCalculator.extract_trade_returns(signals)
        assert returns.tolist() == pytest.approx([0.1])

    def test_open_position_at_end_is_not_counted(self):
        signals = [make_signal(0, "BUY", 100), make_signal(1, "SELL", 105), make_signal(2, "SELL", 100)]
        assert len(MetricsCalculator.extract_trade_returns(signals)) == 1

    def test_benchmark_returns_are_bar_to_bar(self):
        series = make_klines([100, 110, 99])
        assert MetricsCalculator.benchmark_returns(series).tolist() == pytest.approx([0.1, -0.1])


class TestReturnMetrics:

    def test_annualized_return_compounds_back_to_total(self):
        returns = np.array([0.01, -0.005, 0.02, 0.003, -0.01, 0.015])
        total = MetricsCalculator.total_return(returns)
        annualized = MetricsCalculator.annualized_return(returns)
        years = len(returns) / config.TRADING_DAYS_PER_YEAR
        assert (1 + annualized) ** years == pytest.approx(1 + total)

    def test_empty_series_gives_zero_report(self):
        assert MetricsCalculator.calculate_all_metrics([]) == PerformanceReport()

    def test_non_finite_returns_are_dropped(self):
        report = MetricsCalculator.calculate_all_metrics([0.1, float('nan'), float('inf'), -0.05])
        assert report.total_trades == 2

    def test_volatility_needs_two_points(self):
        assert MetricsCalculator.volatility([0.05]) == 0.0
        assert MetricsCalculator.volatility([0.01, 0.03]) == pytest.approx(
            np.std([0.01, 0.03], ddof=1) * np.sqrt(config.TRADING_DAYS_PER_YEAR)
        )


class TestRiskAdjusted:

    def test_sharpe_is_infinite_for_riskless_gain(self):
        assert MetricsCalculator.sharpe_ratio([0.125] * 5) == float('inf')

    def test_sharpe_is_zero_for_riskless_loss(self):
        assert MetricsCalculator.sharpe_ratio([-0.125] * 5) == 0.0

    def test_sharpe_is_zero_below_two_points(self):
        assert MetricsCalculator.sharpe_ratio([0.5]) == 0.0

    def test_sortino_without_losses(self):
        assert MetricsCalculator.sortino_ratio([0.01, 0.02]) == float('inf')
        assert MetricsCalculator.sortino_ratio([]) == 0.0

    def test_sortino_uses_downside_deviation(self):
        returns = np.array([0.02, -0.01, 0.03, -0.02])
        downside = np.sqrt(np.mean(np.array([-0.01, -0.02]) ** 2) * config.TRADING_DAYS_PER_YEAR)
        expected = (MetricsCalculator.annualized_return(returns) - config.RISK_FREE_RATE) / downside
        assert MetricsCalculator.sortino_ratio(returns) == pytest.approx(expected)

    def test_calmar_without_drawdown(self):
        assert MetricsCalculator.calmar_ratio([0.01, 0.02]) == float('inf')


class TestDrawdown:

    def test_max_drawdown_and_duration(self):
        returns = [0.1, -0.5, 0.2]
        assert MetricsCalculator.max_drawdown(returns) == pytest.approx(0.5)
        assert MetricsCalculator.max_drawdown_duration(returns) == 2

    def test_drawdown_is_clipped_for_total_loss(self):
        assert MetricsCalculator.max_drawdown([0.1, -1.5]) == 1.0

    def test_bounds_hold_for_random_series(self):
        rng = np.random.default_rng(3)
        for _ in range(20):
            returns = rng.normal(0, 0.1, rng.integers(1, 60))
            report = MetricsCalculator.calculate_all_metrics(returns)
            assert 0.0 <= report.max_drawdown <= 1.0
            assert 0.0 <= report.win_rate <= 100.0

    def test_ulcer_index_is_zero_without_drawdown(self):
        assert MetricsCalculator.ulcer_index([0.01, 0.02, 0.03]) == 0.0


class TestTradeStatistics:

    def test_win_rate_percentage(self):
        assert MetricsCalculator.win_rate([0.1, -0.1, 0.2, 0.0]) == 50.0

    def test_profit_factor(self):
        assert MetricsCalculator.profit_factor([0.1, -0.05, 0.05]) == pytest.approx(3.0)
        assert MetricsCalculator.profit_factor([0.1]) == float('inf')
        assert MetricsCalculator.profit_factor([-0.1]) == 0.0


class TestTailRisk:

    def test_historical_var_and_cvar(self):
        returns = np.linspace(-0.10, 0.09, 20)
        # floor(0.05 * 20) - 1 = 0 -> worst return
        assert MetricsCalculator.value_at_risk(returns, 0.95) == pytest.approx(10.0)
        assert MetricsCalculator.conditional_var(returns, 0.95) == pytest.approx(10.0)

    def test_var_at_lower_confidence_uses_higher_index(self):
        returns = np.linspace(-0.10, 0.09, 20)
        # floor(0.25 * 20) - 1 = 4
        var = MetricsCalculator.value_at_risk(returns, 0.75)
        assert var == pytest.approx(6.0)
        assert MetricsCalculator.conditional_var(returns, 0.75) >= var - 1e-9

    def test_expected_shortfall_matches_cvar_at_95(self):
        returns = np.linspace(-0.10, 0.09, 40)
        assert MetricsCalculator.expected_shortfall(returns) == MetricsCalculator.conditional_var(returns, 0.95)


class TestBenchmarkRelative:

    def test_beta_of_benchmark_against_itself(self):
        benchmark = [0.01, -0.02, 0.015, 0.005, -0.01]
        assert MetricsCalculator.beta(benchmark, benchmark) == pytest.approx(1.0)
        assert MetricsCalculator.tracking_error(benchmark, benchmark) == 0.0
        assert MetricsCalculator.information_ratio(benchmark, benchmark) == 0.0

    def test_alpha_is_zero_when_tracking_benchmark(self):
        benchmark = [0.01, -0.02, 0.015, 0.005, -0.01]
        assert MetricsCalculator.alpha(benchmark, benchmark) == pytest.approx(0.0, abs=1e-12)

    def test_flat_benchmark_gives_zero_beta(self):
        assert MetricsCalculator.beta([0.01, 0.02, 0.03], [0.0, 0.0, 0.0]) == 0.0

    def test_treynor_uses_infinite_fallback(self):
        assert MetricsCalculator.treynor_ratio([0.05, 0.04], [0.0, 0.0]) == float('inf')

    def test_report_includes_benchmark_fields_only_with_benchmark(self):
        returns = [0.02, -0.01, 0.03, 0.01]
        without = MetricsCalculator.calculate_all_metrics(returns)
        with_benchmark = MetricsCalculator.calculate_all_metrics(returns, [0.01, 0.0, 0.02, -0.01, 0.005])
        assert without.beta == 0.0
        assert with_benchmark.beta != 0.0
        assert math.isfinite(with_benchmark.tracking_error)
        assert with_benchmark.total_trades == 4


class TestDistribution:

    def test_expected_return_and_standard_deviation(self):
        assert MetricsCalculator.expected_return([0.1, -0.1, 0.3]) == pytest.approx(0.1)
        # population std, not annualized
        assert MetricsCalculator.standard_deviation([0.1, 0.3]) == pytest.approx(0.1)
        assert MetricsCalculator.expected_return([]) == 0.0
        assert MetricsCalculator.standard_deviation([]) == 0.0

    def test_downside_deviation_uses_losses_only(self):
        assert MetricsCalculator.downside_deviation([0.2, -0.3, -0.4]) == pytest.approx(math.sqrt(0.125))
        assert MetricsCalculator.downside_deviation([0.1, 0.2]) == 0.0

    def test_recovery_factor(self):
        # total return 1.1 * 0.5 * 1.2 - 1 over a 50% drawdown
        assert MetricsCalculator.recovery_factor([0.1, -0.5, 0.2]) == pytest.approx(-0.68)
        assert MetricsCalculator.recovery_factor([0.1, 0.2]) == math.inf
        assert MetricsCalculator.recovery_factor([]) == 0.0

    def test_report_carries_distribution_fields(self):
        report = MetricsCalculator.calculate_all_metrics([0.1, -0.5, 0.2])
        assert report.expected_return == pytest.approx(-0.2 / 3)
        assert report.recovery_factor == pytest.approx(-0.68)
        assert report.downside_deviation == pytest.approx(0.5)
        assert report.standard_deviation > 0


class TestExcursions:

    CLOSES = [100.0, 98.0, 105.0, 103.0]

    def test_long_trade_excursions(self):
        series = make_klines(self.CLOSES)
        signals = MetricsCalculator.annotate_excursions(
            [make_signal(0, "BUY", 100.0), make_signal(3, "SELL", 103.0)], series
        )

        assert 'adverse' not in signals[0].metadata
        # lowest low 98 * 0.999, highest high 105 * 1.001
        assert signals[1].metadata['adverse'] == pytest.approx(98 * 0.999 / 100 - 1)
        assert signals[1].metadata['favorable'] == pytest.approx(105 * 1.001 / 100 - 1)

    def test_short_trade_excursions_flip_sides(self):
        series = make_klines(self.CLOSES)
        signals = MetricsCalculator.annotate_excursions(
            [make_signal(0, "SELL", 100.0), make_signal(3, "BUY", 103.0)], series
        )

        assert signals[1].metadata['adverse'] == pytest.approx(1 - 105 * 1.001 / 100)
        assert signals[1].metadata['favorable'] == pytest.approx(1 - 98 * 0.999 / 100)

    def test_report_takes_extremes_across_trades(self):
        series = make_klines(self.CLOSES + [95.0, 110.0])
        signals = MetricsCalculator.annotate_excursions([
            make_signal(0, "BUY", 100.0), make_signal(2, "SELL", 105.0),
            make_signal(3, "BUY", 103.0), make_signal(5, "SELL", 110.0),
        ], series)
        returns = MetricsCalculator.extract_trade_returns(signals)

        report = MetricsCalculator.calculate_all_metrics(returns, signals=signals)

        assert report.max_adverse_excursion == pytest.approx(
            min(s.metadata.get('adverse', 0.0) for s in signals)
        )
        assert report.max_adverse_excursion <= 0.0 <= report.max_favorable_excursion
        assert report.max_favorable_excursion == pytest.approx(110 * 1.001 / 103 - 1)

    def test_untagged_signals_give_zero_excursions(self):
        signals = [make_signal(0, "BUY", 100.0), make_signal(1, "SELL", 90.0)]
        assert MetricsCalculator.max_adverse_excursion(signals) == 0.0
        assert MetricsCalculator.max_favorable_excursion(signals) == 0.0
        assert MetricsCalculator.max_adverse_excursion(None) == 0.0
