"""
Settings validation - type-safe checks with Pydantic
"""
from pydantic import BaseModel, Field, ValidationError, field_validator

from utils.logger_utils import get_logger

logger = get_logger("config")


class SchedulerSettings(BaseModel):
    """Task scheduler settings"""
    max_workers: int = Field(6, ge=1, le=64, description="Upper bound of the execution pool")
    task_timeout: float = Field(60.0, gt=0, description="Per-task deadline in seconds")
    fallback_to_main_thread: bool = True
    max_retries: int = Field(1, ge=0, le=5)
    start_method: str = "spawn"

    @field_validator('start_method')
    @classmethod
    def validate_start_method(cls, v):
        if v not in ('spawn', 'fork', 'forkserver'):
            raise ValueError(f"start method must be spawn, fork or forkserver, got: {v}")
        return v


class CacheSettings(BaseModel):
    """Historical data cache settings"""
    backend: str = "memory"
    soft_ttl_hours: float = Field(24.0, gt=0)
    hard_ttl_days: float = Field(7.0, gt=0)
    max_size_mb: int = Field(100, ge=1)

    @field_validator('backend')
    @classmethod
    def validate_backend(cls, v):
        if v not in ('memory', 'sqlite'):
            raise ValueError(f"cache backend must be 'memory' or 'sqlite', got: {v}")
        return v

    @field_validator('hard_ttl_days')
    @classmethod
    def validate_hard_ttl(cls, v, info):
        soft_hours = info.data.get('soft_ttl_hours', 24.0)
        if v * 24 < soft_hours:
            raise ValueError("hard TTL must not be shorter than the soft TTL")
        return v


class AnalyticsSettings(BaseModel):
    """Metrics, Monte Carlo and optimizer defaults"""
    risk_free_rate: float = Field(0.02, ge=0.0, le=0.2)
    trading_days_per_year: int = Field(252, ge=1, le=366)
    mc_num_simulations: int = Field(1000, ge=1)
    mc_confidence_level: float = Field(0.95, gt=0.0, lt=1.0)
    mc_bootstrap_method: str = "non_parametric"
    mc_block_size: int = Field(10, ge=1)
    ga_population_size: int = Field(20, ge=2)
    ga_generations: int = Field(50, ge=1)
    ga_crossover_rate: float = Field(0.8, ge=0.0, le=1.0)
    ga_mutation_rate: float = Field(0.1, ge=0.0, le=1.0)
    ga_elite_ratio: float = Field(0.2, ge=0.0, lt=1.0)

    @field_validator('mc_bootstrap_method')
    @classmethod
    def validate_bootstrap_method(cls, v):
        if v not in ('parametric', 'non_parametric', 'block_bootstrap'):
            raise ValueError(f"unknown bootstrap method: {v}")
        return v


class EngineSettings(BaseModel):
    scheduler: SchedulerSettings
    cache: CacheSettings
    analytics: AnalyticsSettings


def build_settings(config_module) -> EngineSettings:
    """Build the validated settings model from a config module"""
    return EngineSettings(
        scheduler=SchedulerSettings(
            max_workers=config_module.SCHEDULER_MAX_WORKERS,
            task_timeout=config_module.SCHEDULER_TASK_TIMEOUT,
            fallback_to_main_thread=config_module.SCHEDULER_FALLBACK_TO_MAIN_THREAD,
            max_retries=config_module.SCHEDULER_MAX_RETRIES,
            start_method=config_module.SCHEDULER_START_METHOD,
        ),
        cache=CacheSettings(
            backend=config_module.CACHE_BACKEND,
            soft_ttl_hours=config_module.CACHE_SOFT_TTL_HOURS,
            hard_ttl_days=config_module.CACHE_HARD_TTL_DAYS,
            max_size_mb=config_module.CACHE_MAX_SIZE_MB,
        ),
        analytics=AnalyticsSettings(
            risk_free_rate=config_module.RISK_FREE_RATE,
            trading_days_per_year=config_module.TRADING_DAYS_PER_YEAR,
            mc_num_simulations=config_module.MC_NUM_SIMULATIONS,
            mc_confidence_level=config_module.MC_CONFIDENCE_LEVEL,
            mc_bootstrap_method=config_module.MC_BOOTSTRAP_METHOD,
            mc_block_size=config_module.MC_BLOCK_SIZE,
            ga_population_size=config_module.GA_POPULATION_SIZE,
            ga_generations=config_module.GA_GENERATIONS,
            ga_crossover_rate=config_module.GA_CROSSOVER_RATE,
            ga_mutation_rate=config_module.GA_MUTATION_RATE,
            ga_elite_ratio=config_module.GA_ELITE_RATIO,
        ),
    )


def validate_settings(config_module) -> bool:
    """
    Validate a config module

    Args:
        config_module: module (or object) exposing the settings constants

    Returns:
        bool: whether validation passed
    """
    try:
        build_settings(config_module)
        logger.info("Engine settings validated")
        return True
    except ValidationError as e:
        logger.error(f"Invalid engine settings: {e}")
        return False


if __name__ == "__main__":
    import config
    validate_settings(config)
