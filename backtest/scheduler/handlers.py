"""
Task handlers, resolved by task kind

Handlers are plain module-level functions taking the task payload so they can
run either inside an execution unit process or inline on the caller's side.
"""
import asyncio
from typing import Any, Callable, Dict, Optional, Type

import pandas as pd

from backtest.domain.interfaces import IStrategy
from backtest.domain.models import StrategyResult
from backtest.services.data_service import clean_price_series
from backtest.services.metrics_calculator import MetricsCalculator

Handler = Callable[[Dict[str, Any]], Any]


def execute_strategy(
    strategy_id: str,
    strategy_cls: Type[IStrategy],
    parameters: Dict[str, Any],
    series: pd.DataFrame,
    with_benchmark: bool = False
) -> StrategyResult:
    """Run one strategy over a series and score its trade returns"""
    strategy = strategy_cls(**(parameters or {}))
    signal_result = strategy.calculate(series)
    signals = MetricsCalculator.annotate_excursions(signal_result.signals, series)
    returns = MetricsCalculator.extract_trade_returns(signals)
    benchmark = MetricsCalculator.benchmark_returns(series) if with_benchmark else None

    return StrategyResult(
        strategy_id=strategy_id,
        parameters=dict(parameters or {}),
        signals=signals,
        indicators=dict(signal_result.indicators),
        returns=tuple(float(r) for r in returns),
        performance=MetricsCalculator.calculate_all_metrics(returns, benchmark, signals=signals),
    )


def handle_strategy(payload: Dict[str, Any]) -> StrategyResult:
    return execute_strategy(
        payload['strategy_id'],
        payload['strategy_cls'],
        payload.get('parameters', {}),
        payload['series'],
        payload.get('with_benchmark', False),
    )


def handle_monte_carlo(payload: Dict[str, Any]):
    from backtest.services.monte_carlo import MonteCarloEngine

    engine = MonteCarloEngine(block_size=payload.get('block_size'), seed=payload.get('seed'))
    return asyncio.run(engine.simulate(
        payload['returns'],
        num_simulations=payload.get('num_simulations'),
        bootstrap_method=payload.get('bootstrap_method'),
        confidence_level=payload.get('confidence_level'),
    ))


def handle_walk_forward(payload: Dict[str, Any]):
    from backtest.services.backtest_service import StrategyExecutor, StrategyRef
    from backtest.services.walk_forward import WalkForwardEngine

    # Nested backtests run inline inside the unit
    engine = WalkForwardEngine(StrategyExecutor(), seed=payload.get('seed'))
    return asyncio.run(engine.run(
        strategy=StrategyRef(payload['strategy_id'], payload['strategy_cls'], payload.get('parameters', {})),
        parameter_space=payload.get('parameter_space') or {},
        optimization_window_days=payload['optimization_window_days'],
        testing_window_days=payload['testing_window_days'],
        step_days=payload['step_days'],
        reoptimize_every=payload.get('reoptimize_every', 1),
        series=payload['series'],
    ))


def handle_data_cleaning(payload: Dict[str, Any]) -> pd.DataFrame:
    return clean_price_series(payload['series'])


HANDLERS: Dict[str, Handler] = {
    'strategy': handle_strategy,
    'monte_carlo': handle_monte_carlo,
    'walk_forward': handle_walk_forward,
    'data_cleaning': handle_data_cleaning,
}


def get_handler(kind: str, handlers: Optional[Dict[str, Handler]] = None) -> Handler:
    table = HANDLERS if handlers is None else handlers
    if kind not in table:
        raise KeyError(f"No handler registered for task kind: {kind}")
    return table[kind]
