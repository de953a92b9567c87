"""
Backtest Orchestrator - drives one backtest run through its phases

    loading -> processing -> analyzing -> complete
                  (any phase) -> error

loading     resolve the price series through the cache and drop malformed bars
processing  one strategy task per strategy (signals + raw metrics), then the
            optional parameter optimization
analyzing   Monte Carlo and walk-forward tasks per strategy, then the final
            metrics with the benchmark series and the robustness assessment
"""
import inspect
import math
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

import config
from backtest.domain.models import BacktestPhase, BacktestProgress, StrategyResult, Task
from backtest.domain.schemas import BacktestConfig, parse_backtest_config
from backtest.errors import BacktestError, ConcurrentRunError, ConfigError, DataError
from backtest.optimization.genetic import GeneticOptimizer
from backtest.scheduler.task_scheduler import TaskScheduler
from backtest.services.analysis_service import AnalysisService
from backtest.services.backtest_service import StrategyExecutor
from backtest.services.data_service import HistoricalDataCache
from backtest.services.metrics_calculator import MetricsCalculator
from strategies.strategies import StrategyRegistry
from utils.logger_utils import get_logger

logger = get_logger("engine")

ProgressCallback = Callable[[BacktestProgress], Any]


class BacktestOrchestrator:
    """Runs backtests; at most one run in flight per instance"""

    def __init__(
        self,
        cache: HistoricalDataCache,
        scheduler: TaskScheduler,
        registry: Optional[StrategyRegistry] = None,
        progress_callback: Optional[ProgressCallback] = None
    ):
        self.cache = cache
        self.scheduler = scheduler
        self.registry = registry or StrategyRegistry()
        self.executor = StrategyExecutor(scheduler, self.registry)
        self.progress_callback = progress_callback

        self.phase: Optional[BacktestPhase] = None
        self._running = False
        self._run_number = 0
        self._stats = {'runs_completed': 0, 'runs_failed': 0, 'runs_rejected': 0}

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self, backtest_config: Any) -> List[StrategyResult]:
        """
        Run a backtest

        Args:
            backtest_config: BacktestConfig or its dict form

        Returns:
            One StrategyResult per enabled strategy, in configuration order

        Raises:
            ConcurrentRunError: a run is already in flight
            ConfigError: invalid configuration or unknown strategy ids
            BacktestError: any failure during the run, tagged with its phase
        """
        if self._running:
            self._stats['runs_rejected'] += 1
            raise ConcurrentRunError("Backtest already running")

        try:
            cfg = self._validate(backtest_config)
        except ConfigError as e:
            self._stats['runs_failed'] += 1
            e.phase = BacktestPhase.LOADING.value
            await self._emit(BacktestPhase.ERROR, 0, e.message, error=e.message)
            logger.error(f"Backtest rejected, invalid configuration: {e.message}")
            raise
        strategies = cfg.enabled_strategies

        self._running = True
        self._run_number += 1
        phase = BacktestPhase.LOADING
        try:
            await self._emit(phase, 0, f"Loading {cfg.symbol} {cfg.timeframe} data")
            raw = await self.cache.load(cfg.symbol, cfg.timeframe, cfg.start_date, cfg.end_date)
            await self._emit(phase, 30, f"Loaded {len(raw)} bars")
            series = await self._clean(raw)
            await self._emit(phase, 60, f"Validated {len(series)} bars")

            phase = BacktestPhase.PROCESSING
            await self._emit(phase, 0, f"Running {len(strategies)} strategy(ies)")

            async def on_strategy_progress(progress: Dict[str, Any]):
                await self._emit(
                    BacktestPhase.PROCESSING,
                    progress['overall'],
                    f"Completed {progress['completed']}/{progress['total']} strategies",
                    strategy_progress=progress['individual'],
                )

            results = await self.executor.execute(strategies, series, on_progress=on_strategy_progress)
            if cfg.optimization is not None and cfg.optimization.enabled:
                results = await self._optimize(cfg, results, series)

            phase = BacktestPhase.ANALYZING
            await self._emit(phase, 0, "Running robustness analysis")
            results = await self._analyze(cfg, results, series)
            await self._emit(phase, 80, "Calculating financial metrics")
            benchmark = MetricsCalculator.benchmark_returns(series)
            results = [self._finalize(result, benchmark, cfg.initial_capital) for result in results]

            phase = BacktestPhase.COMPLETE
            await self._emit(phase, 100, "Backtest complete")
            self._stats['runs_completed'] += 1
            return results

        except BacktestError as e:
            self._stats['runs_failed'] += 1
            if e.phase is None:
                e.phase = phase.value
            await self._emit(BacktestPhase.ERROR, 0, e.message, error=e.message)
            logger.error(f"Backtest failed during {e.phase}: {e.message}")
            raise
        except Exception as e:
            self._stats['runs_failed'] += 1
            message = f"{type(e).__name__}: {e}"
            await self._emit(BacktestPhase.ERROR, 0, message, error=message)
            logger.exception(f"Backtest failed during {phase.value}")
            raise BacktestError(message, phase=phase.value) from e
        finally:
            self._running = False
            await self.cleanup()

    # ==================== Validation ====================

    def _validate(self, backtest_config: Any) -> BacktestConfig:
        cfg = parse_backtest_config(backtest_config)
        strategies = cfg.enabled_strategies
        if not strategies:
            raise ConfigError("No enabled strategies in configuration")
        self.registry.validate([s.id for s in strategies])

        opt = cfg.optimization
        if opt is not None and opt.enabled and opt.strategy_id is not None:
            if opt.strategy_id not in [s.id for s in strategies]:
                raise ConfigError(f"Optimization target {opt.strategy_id} is not an enabled strategy")
        return cfg

    # ==================== Loading ====================

    async def _clean(self, raw: pd.DataFrame) -> pd.DataFrame:
        """Drop malformed bars through a data_cleaning task"""
        result = await self.scheduler.submit(Task(
            id=f"data_cleaning:{self._run_number}",
            kind='data_cleaning',
            payload={'series': raw},
            priority=config.DATA_TASK_PRIORITY,
        ))
        if not result.success:
            raise DataError(result.error or "Price series cleaning failed", details={'task_id': result.task_id})
        return result.value

    # ==================== Optimization ====================

    async def _optimize(
        self,
        cfg: BacktestConfig,
        results: List[StrategyResult],
        series: pd.DataFrame
    ) -> List[StrategyResult]:
        """Optimize one strategy's parameters; failures leave its result as is"""
        opt = cfg.optimization
        strategies = cfg.enabled_strategies
        target_id = opt.strategy_id or strategies[0].id
        index = next(i for i, s in enumerate(strategies) if s.id == target_id)
        ref = self.executor.resolve(strategies[index])

        try:
            optimizer = GeneticOptimizer(
                population_size=opt.population_size,
                generations=opt.generations,
                mutation_rate=opt.mutation_rate,
                crossover_rate=opt.crossover_rate,
                elite_ratio=opt.elite_ratio,
                metric=opt.metric,
                seed=opt.seed,
            )

            async def on_generation(progress: Dict[str, Any]):
                await self._emit(
                    BacktestPhase.PROCESSING,
                    progress['progress'] * 100,
                    f"Optimizing {target_id}: generation {progress['generation']}/{progress['total_generations']}",
                )

            outcome = await optimizer.optimize(
                opt.parameters,
                fitness_fn=self.executor.make_backtest_func(ref, series),
                progress_callback=on_generation,
            )

            if math.isfinite(outcome.best_score):
                best = await self.executor.run_single(
                    ref._replace(parameters={**ref.parameters, **outcome.best_params}), series
                )
            else:
                best = results[index]
            logger.info(f"Optimized {target_id}: score {outcome.best_score:.4f} with {outcome.best_params}")
        except Exception as e:
            logger.warning(f"Optimization of {target_id} failed, keeping configured parameters: {e}")
            return results

        updated = list(results)
        updated[index] = replace(best, optimization=outcome)
        return updated

    # ==================== Analytics ====================

    def _analytics_tasks(self, cfg: BacktestConfig, results: List[StrategyResult], series: pd.DataFrame):
        tasks = []
        targets = []
        mc = cfg.monte_carlo
        wf = cfg.walk_forward

        for i, result in enumerate(results):
            if mc is not None and mc.enabled:
                if result.returns:
                    tasks.append(Task(
                        id=f"monte_carlo:{self._run_number}:{result.strategy_id}:{i}",
                        kind='monte_carlo',
                        payload={
                            'returns': list(result.returns),
                            'num_simulations': mc.num_simulations,
                            'bootstrap_method': mc.bootstrap_method,
                            'confidence_level': mc.confidence_level,
                            'block_size': mc.block_size,
                            'seed': mc.seed,
                        },
                        priority=config.ANALYTICS_TASK_PRIORITY,
                    ))
                    targets.append((i, 'monte_carlo'))
                else:
                    logger.warning(f"Skipping Monte Carlo for {result.strategy_id}: no completed trades")

            if wf is not None and wf.enabled:
                ref = self.registry.get(result.strategy_id)
                tasks.append(Task(
                    id=f"walk_forward:{self._run_number}:{result.strategy_id}:{i}",
                    kind='walk_forward',
                    payload={
                        'strategy_id': result.strategy_id,
                        'strategy_cls': ref,
                        'parameters': dict(result.parameters),
                        'parameter_space': {k: v.model_dump() for k, v in wf.parameter_space.items()},
                        'optimization_window_days': wf.optimization_window_days,
                        'testing_window_days': wf.testing_window_days,
                        'step_days': wf.step_days,
                        'reoptimize_every': wf.reoptimize_every,
                        'series': series,
                    },
                    priority=config.ANALYTICS_TASK_PRIORITY,
                ))
                targets.append((i, 'walk_forward'))

        return tasks, targets

    async def _analyze(
        self,
        cfg: BacktestConfig,
        results: List[StrategyResult],
        series: pd.DataFrame
    ) -> List[StrategyResult]:
        """Attach Monte Carlo and walk-forward results; failures are omitted"""
        tasks, targets = self._analytics_tasks(cfg, results, series)
        if not tasks:
            return results

        async def on_analytics_progress(progress: Dict[str, Any]):
            await self._emit(
                BacktestPhase.ANALYZING,
                progress['overall'] * 0.7,
                f"Completed {progress['completed']}/{progress['total']} analytics tasks",
                strategy_progress=progress['individual'],
            )

        try:
            task_results = await self.scheduler.submit_batch(
                tasks, on_progress=on_analytics_progress, raise_on_failure=False
            )
        except Exception as e:
            logger.warning(f"Analytics failed, returning basic results: {e}")
            return results

        updated = list(results)
        for (index, field), task_result in zip(targets, task_results):
            if task_result.success:
                updated[index] = replace(updated[index], **{field: task_result.value})
            else:
                logger.warning(f"{field} for {results[index].strategy_id} failed: {task_result.error}")
        return updated

    @staticmethod
    def _finalize(result: StrategyResult, benchmark, initial_capital: float) -> StrategyResult:
        performance = MetricsCalculator.calculate_all_metrics(result.returns, benchmark, signals=result.signals)
        result = replace(
            result,
            performance=performance,
            final_equity=initial_capital * (1 + performance.total_return),
        )
        return replace(result, assessment=AnalysisService.assess(result))

    # ==================== Progress / lifecycle ====================

    async def _emit(
        self,
        phase: BacktestPhase,
        progress: float,
        message: str,
        strategy_progress: Optional[Dict[str, float]] = None,
        error: Optional[str] = None
    ) -> None:
        self.phase = phase
        event = BacktestProgress(
            phase=phase,
            progress=float(min(max(progress, 0.0), 100.0)),
            message=message,
            strategy_progress=strategy_progress,
            error=error,
        )
        logger.info(f"[{phase.value}] {event.progress:.0f}% {message}")

        if self.progress_callback is None:
            return
        try:
            outcome = self.progress_callback(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Progress callback raised: {e}")

    async def cleanup(self) -> None:
        """Terminate execution units and sweep expired cache entries"""
        try:
            await self.scheduler.shutdown()
        except Exception as e:
            logger.warning(f"Scheduler shutdown failed: {e}")
        try:
            await self.cache.sweep_expired()
        except Exception as e:
            logger.warning(f"Cache sweep failed: {e}")

    async def get_engine_stats(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'phase': self.phase.value if self.phase else None,
            **self._stats,
            'scheduler': self.scheduler.get_stats(),
            'cache': await self.cache.stats(),
        }
