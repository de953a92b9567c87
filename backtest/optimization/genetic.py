"""
Genetic algorithm - parameter search over a bounded space

Elitism, tournament selection (k=3), uniform crossover and per-parameter
mutation. Fitness is the selected metric of a backtest, penalized for low
trade counts and deep drawdowns; failed or non-finite evaluations score -inf.
"""
import asyncio
import inspect
import math
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np

from backtest.domain.models import OptimizationResult
from backtest.domain.schemas import ParameterBounds, ParameterSpace, parse_parameter_space
from backtest.errors import OptimizationError
from utils.logger_utils import get_logger
import config

logger = get_logger("optimization.genetic")

METRIC_FIELDS = {
    'sharpe': 'sharpe_ratio',
    'return': 'total_return',
    'calmar': 'calmar_ratio',
    'sortino': 'sortino_ratio',
}

BacktestFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


def _metric(metrics: Any, name: str, default: float = 0.0) -> float:
    if isinstance(metrics, dict):
        return metrics.get(name, default)
    return getattr(metrics, name, default)


def _params_key(params: Dict[str, Any]) -> Tuple:
    return tuple(sorted(params.items()))


class GeneticOptimizer:
    """Genetic algorithm optimizer"""

    def __init__(
        self,
        backtest_func: Optional[BacktestFunc] = None,
        population_size: int = config.GA_POPULATION_SIZE,
        generations: int = config.GA_GENERATIONS,
        mutation_rate: float = config.GA_MUTATION_RATE,
        crossover_rate: float = config.GA_CROSSOVER_RATE,
        elite_ratio: float = config.GA_ELITE_RATIO,
        metric: str = 'sharpe',
        seed: Optional[int] = None
    ):
        """
        Args:
            backtest_func: async params -> metrics (PerformanceReport or dict)
            population_size: individuals per generation
            generations: generation cap
            mutation_rate: per-parameter mutation probability
            crossover_rate: per-parameter probability of taking the second parent's gene
            elite_ratio: share of the ranked population copied unchanged
            metric: sharpe | return | calmar | sortino
            seed: seed for reproducible runs
        """
        if metric not in METRIC_FIELDS:
            raise OptimizationError(f"Unknown optimization metric: {metric}")
        self.backtest_func = backtest_func
        self.population_size = population_size
        self.generations = generations
        self.mutation_rate = mutation_rate
        self.crossover_rate = crossover_rate
        self.elite_ratio = elite_ratio
        self.metric = metric
        self.random = random.Random(seed)

    async def optimize(
        self,
        search_space: Dict[str, Any],
        fitness_fn: Optional[BacktestFunc] = None,
        generations: Optional[int] = None,
        population_size: Optional[int] = None,
        progress_callback: Optional[Callable] = None
    ) -> OptimizationResult:
        """
        Run the optimization

        Args:
            search_space: parameter name -> ParameterBounds (or its dict form),
                e.g. {'period': {'type': 'integer', 'min': 5, 'max': 50}}
            fitness_fn: overrides the backtest function given at construction
            generations: overrides the generation cap
            population_size: overrides the population size
            progress_callback: called (sync or async) after every generation

        Returns:
            OptimizationResult with the best parameters and per-generation history
        """
        space = parse_parameter_space(search_space)
        if not space:
            raise OptimizationError("Parameter space is empty")
        backtest_func = fitness_fn or self.backtest_func
        if backtest_func is None:
            raise OptimizationError("No fitness function supplied")

        generations = generations or self.generations
        population_size = max(2, population_size or self.population_size)
        started = time.time()

        population = self._initialize_population(space, population_size)
        fitness_cache: Dict[Tuple, float] = {}
        best_params: Optional[Dict[str, Any]] = None
        best_score = float('-inf')
        convergence_history: List[float] = []
        population_history = []
        converged = False
        generations_run = 0

        for gen in range(generations):
            scores = await self._evaluate(population, backtest_func, fitness_cache)
            ranked = sorted(zip(population, scores), key=lambda item: item[1], reverse=True)
            generations_run = gen + 1

            if best_params is None or ranked[0][1] > best_score:
                best_params = dict(ranked[0][0])
                best_score = ranked[0][1]

            convergence_history.append(best_score)
            population_history.append(tuple(
                {'params': dict(params), 'score': score} for params, score in ranked[:5]
            ))

            if progress_callback:
                outcome = progress_callback({
                    'generation': gen + 1,
                    'total_generations': generations,
                    'progress': (gen + 1) / generations,
                    'best_score': best_score,
                    'best_params': dict(best_params),
                })
                if inspect.isawaitable(outcome):
                    await outcome

            if self._has_converged(convergence_history):
                converged = True
                logger.info(f"Converged after {gen + 1} generation(s), best score {best_score:.4f}")
                break

            if gen < generations - 1:
                population = self._next_generation(ranked, space, population_size)

            await asyncio.sleep(0)

        if best_score == float('-inf'):
            logger.warning("Every evaluation failed; best parameters are arbitrary")

        return OptimizationResult(
            best_params=best_params,
            best_score=best_score,
            convergence_history=tuple(convergence_history),
            population_history=tuple(population_history),
            generations_run=generations_run,
            converged=converged,
            execution_time=time.time() - started,
            evaluations=len(fitness_cache),
        )

    # ==================== Fitness ====================

    def score(self, metrics: Any) -> float:
        """Penalized fitness of one backtest's metrics"""
        value = _metric(metrics, METRIC_FIELDS[self.metric])
        if value is None or not math.isfinite(value):
            return float('-inf')

        if _metric(metrics, 'total_trades', 0) < config.GA_MIN_TRADES:
            value *= config.GA_LOW_TRADES_PENALTY
        if abs(_metric(metrics, 'max_drawdown', 0.0)) > config.GA_MAX_DRAWDOWN:
            value *= config.GA_DRAWDOWN_PENALTY
        return float(value)

    async def _evaluate(
        self,
        population: List[Dict[str, Any]],
        backtest_func: BacktestFunc,
        fitness_cache: Dict[Tuple, float]
    ) -> List[float]:
        """Evaluate unseen individuals concurrently; repeats come from the cache"""
        pending: Dict[Tuple, Dict[str, Any]] = {}
        for individual in population:
            key = _params_key(individual)
            if key not in fitness_cache and key not in pending:
                pending[key] = individual

        if pending:
            outcomes = await asyncio.gather(
                *(backtest_func(dict(ind)) for ind in pending.values()),
                return_exceptions=True
            )
            for key, outcome in zip(pending, outcomes):
                if isinstance(outcome, BaseException):
                    logger.debug(f"Evaluation of {dict(key)} failed: {outcome}")
                    fitness_cache[key] = float('-inf')
                else:
                    fitness_cache[key] = self.score(outcome)

        return [fitness_cache[_params_key(ind)] for ind in population]

    @staticmethod
    def _has_converged(history: List[float]) -> bool:
        if len(history) < config.GA_CONVERGENCE_WINDOW:
            return False
        window = np.asarray(history[-config.GA_CONVERGENCE_WINDOW:], dtype=float)
        if not np.isfinite(window).all():
            return False
        return float(np.var(window)) < config.GA_CONVERGENCE_THRESHOLD

    # ==================== Operators ====================

    def _sample(self, bounds: ParameterBounds) -> float:
        if bounds.type == 'integer':
            value = self.random.randint(int(bounds.min), int(bounds.max))
            return self._snap(value, bounds)
        return self.random.uniform(bounds.min, bounds.max)

    @staticmethod
    def _snap(value: float, bounds: ParameterBounds):
        step = bounds.step or 1.0
        snapped = bounds.min + round((value - bounds.min) / step) * step
        snapped = min(max(snapped, bounds.min), bounds.max)
        return int(round(snapped))

    def _initialize_population(self, space: ParameterSpace, size: int) -> List[Dict[str, Any]]:
        return [{name: self._sample(bounds) for name, bounds in space.items()} for _ in range(size)]

    def _tournament(self, ranked: List[Tuple[Dict[str, Any], float]]) -> Dict[str, Any]:
        contenders = self.random.choices(ranked, k=config.GA_TOURNAMENT_SIZE)
        return dict(max(contenders, key=lambda item: item[1])[0])

    def _crossover(self, parent1: Dict[str, Any], parent2: Dict[str, Any]) -> Dict[str, Any]:
        """Uniform crossover"""
        return {
            name: parent2[name] if self.random.random() < self.crossover_rate else parent1[name]
            for name in parent1
        }

    def _mutate(self, individual: Dict[str, Any], space: ParameterSpace) -> Dict[str, Any]:
        mutated = dict(individual)
        for name, bounds in space.items():
            if self.random.random() >= self.mutation_rate:
                continue
            if bounds.type == 'integer':
                mutated[name] = self._sample(bounds)
            else:
                value = mutated[name] + self.random.gauss(0, bounds.span * 0.1)
                mutated[name] = min(max(value, bounds.min), bounds.max)
        return mutated

    def _next_generation(
        self,
        ranked: List[Tuple[Dict[str, Any], float]],
        space: ParameterSpace,
        size: int
    ) -> List[Dict[str, Any]]:
        elite_count = min(int(size * self.elite_ratio), len(ranked))
        population = [dict(params) for params, _ in ranked[:elite_count]]

        while len(population) < size:
            child = self._crossover(self._tournament(ranked), self._tournament(ranked))
            population.append(self._mutate(child, space))

        return population
