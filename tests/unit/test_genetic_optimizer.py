"""
Genetic optimizer tests
"""
import math

import pytest

import config
from backtest.domain.models import PerformanceReport
from backtest.errors import OptimizationError
from backtest.optimization.genetic import GeneticOptimizer
from backtest.services.backtest_service import StrategyExecutor, StrategyRef
from strategies.strategies import EMACrossStrategy
from conftest import RecordingScheduler, run

SPACE = {
    'x': {'min': 0.0, 'max': 2.0, 'type': 'float'},
    'y': {'min': 2, 'max': 4, 'type': 'integer'},
}


async def quadratic(params):
    """Peak of 0 at x=1, y=3"""
    return PerformanceReport(
        sharpe_ratio=-(params['x'] - 1) ** 2 - (params['y'] - 3) ** 2,
        total_trades=50,
        max_drawdown=0.1,
    )


class TestOptimize:

    def test_finds_the_peak_region(self):
        optimizer = GeneticOptimizer(quadratic, population_size=30, generations=30, seed=7)
        result = run(optimizer.optimize(SPACE))

        assert result.best_params['y'] == 3
        assert result.best_score > -0.25
        assert 0.0 <= result.best_params['x'] <= 2.0

    def test_best_score_never_decreases(self):
        optimizer = GeneticOptimizer(quadratic, population_size=10, generations=15, seed=1)
        history = run(optimizer.optimize(SPACE)).convergence_history

        assert all(b >= a for a, b in zip(history, history[1:]))

    def test_same_seed_gives_same_result(self):
        first = run(GeneticOptimizer(quadratic, population_size=10, generations=5, seed=42).optimize(SPACE))
        second = run(GeneticOptimizer(quadratic, population_size=10, generations=5, seed=42).optimize(SPACE))

        assert first.best_params == second.best_params
        assert first.convergence_history == second.convergence_history

    def test_candidates_respect_bounds_and_steps(self):
        space = {
            'period': {'min': 5, 'max': 50, 'step': 5, 'type': 'integer'},
            'threshold': {'min': 0.5, 'max': 3.0, 'type': 'float'},
        }
        seen = []

        async def fitness(params):
            seen.append(dict(params))
            return {'sharpe_ratio': params['threshold'], 'total_trades': 20, 'max_drawdown': 0.0}

        run(GeneticOptimizer(fitness, population_size=12, generations=8, mutation_rate=0.5, seed=3).optimize(space))

        assert seen
        for params in seen:
            assert 5 <= params['period'] <= 50
            assert params['period'] % 5 == 0
            assert isinstance(params['period'], int)
            assert 0.5 <= params['threshold'] <= 3.0

    def test_repeated_candidates_are_evaluated_once(self):
        calls = []

        async def fitness(params):
            calls.append(params)
            return {'sharpe_ratio': 1.0, 'total_trades': 20, 'max_drawdown': 0.0}

        space = {'n': {'min': 1, 'max': 3, 'type': 'integer'}}
        result = run(GeneticOptimizer(fitness, population_size=10, generations=5, seed=0).optimize(space))

        assert len(calls) == result.evaluations
        assert len(calls) <= 3

    def test_flat_fitness_converges(self):
        async def fitness(params):
            return {'sharpe_ratio': 1.0, 'total_trades': 20, 'max_drawdown': 0.0}

        result = run(GeneticOptimizer(fitness, population_size=6, generations=50, seed=5).optimize(SPACE))

        assert result.converged
        assert result.generations_run == config.GA_CONVERGENCE_WINDOW

    def test_failing_evaluations_score_negative_infinity(self):
        async def fitness(params):
            raise RuntimeError("backtest blew up")

        result = run(GeneticOptimizer(fitness, population_size=4, generations=3, seed=2).optimize(SPACE))

        assert result.best_score == float('-inf')
        assert result.best_params is not None
        assert not result.converged
        assert result.generations_run == 3

    def test_progress_callback_runs_every_generation(self):
        events = []
        optimizer = GeneticOptimizer(quadratic, population_size=6, generations=4, seed=9)

        run(optimizer.optimize(SPACE, progress_callback=events.append))

        assert [e['generation'] for e in events] == [1, 2, 3, 4]
        assert events[-1]['progress'] == 1.0


class TestValidation:

    def test_empty_space(self):
        with pytest.raises(OptimizationError):
            run(GeneticOptimizer(quadratic).optimize({}))

    def test_missing_fitness_function(self):
        with pytest.raises(OptimizationError):
            run(GeneticOptimizer().optimize(SPACE))

    def test_unknown_metric(self):
        with pytest.raises(OptimizationError):
            GeneticOptimizer(quadratic, metric='luck')


class TestScore:

    def test_penalties_multiply(self):
        optimizer = GeneticOptimizer(quadratic)
        score = optimizer.score({'sharpe_ratio': 2.0, 'total_trades': 1, 'max_drawdown': 0.9})
        assert score == pytest.approx(2.0 * config.GA_LOW_TRADES_PENALTY * config.GA_DRAWDOWN_PENALTY)

    def test_no_penalty_for_healthy_backtest(self):
        optimizer = GeneticOptimizer(quadratic, metric='return')
        report = PerformanceReport(total_return=0.4, total_trades=config.GA_MIN_TRADES, max_drawdown=0.1)
        assert optimizer.score(report) == pytest.approx(0.4)

    def test_non_finite_metric(self):
        optimizer = GeneticOptimizer(quadratic)
        assert optimizer.score({'sharpe_ratio': math.inf, 'total_trades': 50}) == float('-inf')
        assert optimizer.score({'sharpe_ratio': math.nan, 'total_trades': 50}) == float('-inf')


def test_scheduled_fitness_tasks_have_unique_ids(sample_kline_data):
    scheduler = RecordingScheduler()
    executor = StrategyExecutor(scheduler)
    ref = StrategyRef('ema_cross', EMACrossStrategy, {'short_period': 5, 'long_period': 20})
    space = {'short_period': {'min': 3, 'max': 12, 'type': 'integer'}}

    optimizer = GeneticOptimizer(
        executor.make_backtest_func(ref, sample_kline_data), population_size=6, generations=2, seed=3
    )
    run(optimizer.optimize(space))

    ids = [task.id for task in scheduler.submitted]
    assert len(ids) >= 2
    assert len(set(ids)) == len(ids)
    assert all(task_id.startswith("strategy:ema_cross:") for task_id in ids)
