"""
Backtest configuration models
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from backtest.errors import ConfigError
import config

# Bar interval in minutes per supported timeframe
TIMEFRAME_MINUTES = {
    '1m': 1,
    '5m': 5,
    '15m': 15,
    '30m': 30,
    '1h': 60,
    '4h': 240,
    '1d': 1440,
}


def normalize_timeframe(timeframe: str) -> str:
    """'1H' -> '1h', '1D' -> '1d'; minute timeframes are case sensitive"""
    if timeframe and timeframe[-1] in ('H', 'D'):
        return timeframe.lower()
    return timeframe


class ParameterBounds(BaseModel):
    """Search range of one strategy parameter"""
    min: float
    max: float
    step: Optional[float] = Field(default=None, gt=0)
    type: Literal['integer', 'float'] = 'float'

    @model_validator(mode="after")
    def validate_range(self):
        if self.max < self.min:
            raise ValueError(f"max ({self.max}) must not be below min ({self.min})")
        if self.type == 'integer':
            self.min = float(int(round(self.min)))
            self.max = float(int(round(self.max)))
            if self.step is None:
                self.step = 1.0
        return self

    @property
    def span(self) -> float:
        return self.max - self.min


ParameterSpace = Dict[str, ParameterBounds]


class StrategyConfig(BaseModel):
    id: str = Field(..., min_length=1, examples=["z_score_trend"])
    name: Optional[str] = None
    parameters: Dict[str, float] = Field(default_factory=dict)
    enabled: bool = True


class MonteCarloConfig(BaseModel):
    enabled: bool = True
    num_simulations: int = Field(default=config.MC_NUM_SIMULATIONS, ge=1, le=100000)
    confidence_level: float = Field(default=config.MC_CONFIDENCE_LEVEL, gt=0, lt=1)
    bootstrap_method: Literal['parametric', 'non_parametric', 'block_bootstrap'] = 'non_parametric'
    block_size: int = Field(default=config.MC_BLOCK_SIZE, ge=1)
    seed: Optional[int] = None


class WalkForwardConfig(BaseModel):
    enabled: bool = True
    optimization_window_days: int = Field(..., ge=1)
    testing_window_days: int = Field(..., ge=1)
    step_days: int = Field(..., ge=1)
    reoptimize_every: int = Field(default=1, ge=1)
    parameter_space: Dict[str, ParameterBounds] = Field(default_factory=dict)


class OptimizationConfig(BaseModel):
    enabled: bool = True
    strategy_id: Optional[str] = Field(default=None, description="Strategy to optimize; defaults to the first one")
    parameters: Dict[str, ParameterBounds]
    metric: Literal['sharpe', 'return', 'calmar', 'sortino'] = 'sharpe'
    generations: int = Field(default=config.GA_GENERATIONS, ge=1)
    population_size: int = Field(default=config.GA_POPULATION_SIZE, ge=2)
    crossover_rate: float = Field(default=config.GA_CROSSOVER_RATE, ge=0, le=1)
    mutation_rate: float = Field(default=config.GA_MUTATION_RATE, ge=0, le=1)
    elite_ratio: float = Field(default=config.GA_ELITE_RATIO, ge=0, lt=1)
    seed: Optional[int] = None

    @field_validator('parameters')
    @classmethod
    def validate_parameters(cls, v):
        if not v:
            raise ValueError("at least one parameter range is required")
        return v


class BacktestConfig(BaseModel):
    symbol: str = Field(..., min_length=1, examples=["ETH/USDT"])
    timeframe: str = Field(..., examples=["1h"])
    start_date: datetime
    end_date: datetime
    initial_capital: float = Field(default=10000.0, gt=0)
    strategies: List[StrategyConfig] = Field(..., min_length=1)
    monte_carlo: Optional[MonteCarloConfig] = None
    walk_forward: Optional[WalkForwardConfig] = None
    optimization: Optional[OptimizationConfig] = None

    @field_validator('timeframe')
    @classmethod
    def validate_timeframe(cls, v):
        v = normalize_timeframe(v)
        if v not in TIMEFRAME_MINUTES:
            raise ValueError(f"unsupported timeframe {v}, expected one of {sorted(TIMEFRAME_MINUTES)}")
        return v

    @model_validator(mode="after")
    def validate_dates(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self

    @property
    def enabled_strategies(self) -> List[StrategyConfig]:
        return [s for s in self.strategies if s.enabled]


def parse_backtest_config(data: Any) -> BacktestConfig:
    """Validate raw input into a BacktestConfig, raising ConfigError on failure"""
    if isinstance(data, BacktestConfig):
        return data
    try:
        return BacktestConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Invalid backtest configuration: {e.error_count()} error(s)",
            details={'errors': e.errors(include_url=False)}
        ) from e


def parse_parameter_space(space: Dict[str, Any]) -> ParameterSpace:
    try:
        return {
            name: bounds if isinstance(bounds, ParameterBounds) else ParameterBounds.model_validate(bounds)
            for name, bounds in space.items()
        }
    except ValidationError as e:
        raise ConfigError(f"Invalid parameter space: {e}") from e
