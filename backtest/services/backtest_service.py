"""
Strategy executor - runs strategies over a price series through the scheduler
"""
import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional, Type

import pandas as pd

import config
from backtest.domain.interfaces import IStrategy
from backtest.domain.models import PerformanceReport, StrategyResult, Task
from backtest.domain.schemas import StrategyConfig
from backtest.errors import TaskError
from backtest.scheduler.handlers import execute_strategy
from backtest.scheduler.task_scheduler import TaskScheduler
from strategies.strategies import StrategyRegistry
from utils.logger_utils import get_logger

logger = get_logger("backtest_service")


class StrategyRef(NamedTuple):
    """A strategy id, its class and its base parameters"""
    strategy_id: str
    strategy_cls: Type[IStrategy]
    parameters: Dict[str, Any]


class StrategyExecutor:
    """Produce signals and raw metrics for strategies, one task per strategy"""

    def __init__(
        self,
        scheduler: Optional[TaskScheduler] = None,
        registry: Optional[StrategyRegistry] = None
    ):
        """
        Args:
            scheduler: task scheduler; without one every run executes inline
            registry: strategy id -> class lookup
        """
        self.scheduler = scheduler
        self.registry = registry or StrategyRegistry()
        self._sequence = itertools.count(1)

    def _task(self, ref: StrategyRef, series: pd.DataFrame) -> Task:
        """A strategy task with an id unique for this executor"""
        return Task(
            id=f"strategy:{ref.strategy_id}:{next(self._sequence)}",
            kind='strategy',
            payload={
                'strategy_id': ref.strategy_id,
                'strategy_cls': ref.strategy_cls,
                'parameters': ref.parameters,
                'series': series,
            },
            priority=config.STRATEGY_TASK_PRIORITY,
        )

    def resolve(self, strategy_config: StrategyConfig) -> StrategyRef:
        return StrategyRef(
            strategy_config.id,
            self.registry.get(strategy_config.id),
            dict(strategy_config.parameters),
        )

    async def execute(
        self,
        strategy_configs: List[StrategyConfig],
        series: pd.DataFrame,
        on_progress: Optional[Callable[[Dict[str, Any]], Any]] = None
    ) -> List[StrategyResult]:
        """Run every strategy over `series`; results follow the input order"""
        refs = [self.resolve(cfg) for cfg in strategy_configs]

        if self.scheduler is None:
            results = []
            for ref in refs:
                results.append(execute_strategy(ref.strategy_id, ref.strategy_cls, ref.parameters, series))
                await asyncio.sleep(0)
            return results

        tasks = [self._task(ref, series) for ref in refs]
        results = await self.scheduler.submit_batch(tasks, on_progress=on_progress)
        return [r.value for r in results]

    async def run_single(self, ref: StrategyRef, series: pd.DataFrame) -> StrategyResult:
        """Run one strategy with its own parameters"""
        if self.scheduler is None:
            result = execute_strategy(ref.strategy_id, ref.strategy_cls, ref.parameters, series)
            await asyncio.sleep(0)
            return result

        result = await self.scheduler.submit(self._task(ref, series))
        if not result.success:
            raise TaskError(f"Backtest of {ref.strategy_id} failed: {result.error}", results=[result])
        return result.value

    def make_backtest_func(
        self,
        ref: StrategyRef,
        series: pd.DataFrame
    ) -> Callable[[Dict[str, Any]], Awaitable[PerformanceReport]]:
        """Fitness source for the optimizer: candidate parameters -> performance report"""

        async def backtest_func(params: Dict[str, Any]) -> PerformanceReport:
            candidate = ref._replace(parameters={**ref.parameters, **params})
            result = await self.run_single(candidate, series)
            return result.performance

        return backtest_func
