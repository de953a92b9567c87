"""
Domain models

Value objects produced by the engine. Results are frozen and replaced
wholesale (dataclasses.replace) instead of being mutated in place.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

PRICE_COLUMNS = ['open', 'high', 'low', 'close', 'volume']


class SignalType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class BacktestPhase(str, Enum):
    LOADING = "loading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    ERROR = "error"


class Recommendation(str, Enum):
    DEPLOY = "DEPLOY"
    OPTIMIZE = "OPTIMIZE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class PriceBar:
    """One OHLCV bar"""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class StrategySignal:
    """A BUY/SELL signal emitted by a strategy at one bar"""
    timestamp: datetime
    type: SignalType
    price: float
    strength: float = 1.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SignalResult:
    """Output of IStrategy.calculate"""
    signals: Tuple[StrategySignal, ...]
    indicators: Dict[str, List[float]] = field(default_factory=dict)


@dataclass(frozen=True)
class PerformanceReport:
    """Financial metrics of one return series"""
    total_return: float = 0.0
    annualized_return: float = 0.0
    volatility: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_duration: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    recovery_factor: float = 0.0
    expected_return: float = 0.0
    standard_deviation: float = 0.0
    downside_deviation: float = 0.0
    max_adverse_excursion: float = 0.0
    max_favorable_excursion: float = 0.0
    information_ratio: float = 0.0
    tracking_error: float = 0.0
    ulcer_index: float = 0.0
    var_95: float = 0.0
    cvar_95: float = 0.0
    expected_shortfall: float = 0.0
    beta: float = 0.0
    alpha: float = 0.0
    treynor_ratio: float = 0.0
    total_trades: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CacheEntry:
    """A cached price series and its bookkeeping"""
    key: str
    series: pd.DataFrame
    symbol: str
    timeframe: str
    created_at: float
    last_accessed_at: float
    content_hash: str

    @property
    def bar_count(self) -> int:
        return len(self.series)


@dataclass
class Task:
    """A unit of work submitted to the scheduler"""
    id: str
    kind: str  # strategy|monte_carlo|walk_forward|data_cleaning
    payload: Dict[str, Any]
    priority: int = 0
    timeout: Optional[float] = None


@dataclass
class TaskResult:
    task_id: str
    success: bool
    value: Any = None
    error: Optional[str] = None
    attempts: int = 1
    executed_inline: bool = False
    duration: float = 0.0


@dataclass(frozen=True)
class OptimizationResult:
    best_params: Dict[str, float]
    best_score: float
    convergence_history: Tuple[float, ...]
    population_history: Tuple[Tuple[Dict[str, Any], ...], ...]
    generations_run: int
    converged: bool
    execution_time: float
    evaluations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MonteCarloResult:
    num_simulations: int
    bootstrap_method: str
    confidence_level: float
    returns: Dict[str, Any]
    drawdowns: Dict[str, Any]
    sharpe: Dict[str, Any]
    var: Dict[str, float]
    cvar: Dict[str, float]
    probability_of_loss: float
    expected_shortfall: float
    confidence_bounds: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class WalkForwardPeriod:
    index: int
    optimization_start: datetime
    optimization_end: datetime
    testing_start: datetime
    testing_end: datetime
    parameters: Dict[str, float]
    in_sample: PerformanceReport
    out_of_sample: PerformanceReport
    degradation: float
    reoptimized: bool


@dataclass(frozen=True)
class WalkForwardAggregate:
    avg_return: float
    avg_sharpe: float
    avg_drawdown: float
    avg_win_rate: float
    total_trades: int
    avg_degradation: float
    consistency: float


@dataclass(frozen=True)
class WalkForwardRobustness:
    parameter_stability: Dict[str, float]
    performance_consistency: float
    worst_period_drawdown: float
    best_period_return: float


@dataclass(frozen=True)
class WalkForwardReport:
    periods: Tuple[WalkForwardPeriod, ...]
    aggregate: WalkForwardAggregate
    robustness: WalkForwardRobustness

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RobustnessAssessment:
    robustness_score: float
    overfitting_score: float
    consistency_score: float
    risk_adjusted_return: float
    recommendation: Recommendation
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StrategyResult:
    """Everything the engine produced for one strategy"""
    strategy_id: str
    parameters: Dict[str, float]
    signals: Tuple[StrategySignal, ...]
    indicators: Dict[str, List[float]]
    returns: Tuple[float, ...]
    performance: PerformanceReport
    final_equity: Optional[float] = None
    optimization: Optional[OptimizationResult] = None
    monte_carlo: Optional[MonteCarloResult] = None
    walk_forward: Optional[WalkForwardReport] = None
    assessment: Optional[RobustnessAssessment] = None

    def summary(self) -> Dict[str, Any]:
        """Compact dict for logs and the CLI"""
        data = {
            'strategy_id': self.strategy_id,
            'parameters': dict(self.parameters),
            'signals': len(self.signals),
            'performance': self.performance.to_dict(),
        }
        if self.final_equity is not None:
            data['final_equity'] = self.final_equity
        if self.monte_carlo is not None:
            data['probability_of_loss'] = self.monte_carlo.probability_of_loss
        if self.walk_forward is not None:
            data['walk_forward_consistency'] = self.walk_forward.aggregate.consistency
        if self.assessment is not None:
            data['recommendation'] = self.assessment.recommendation.value
            data['reasons'] = list(self.assessment.reasons)
        return data


@dataclass(frozen=True)
class BacktestProgress:
    phase: BacktestPhase
    progress: float
    message: str
    strategy_progress: Optional[Dict[str, float]] = None
    error: Optional[str] = None
