"""
Engine settings

Values are read from the environment (and an optional .env file) once at import
time and exposed as module constants.
"""
import os

from dotenv import load_dotenv

# Load .env
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ==================== Logging ====================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_TO_FILE = _env_bool("LOG_TO_FILE", False)

# ==================== Task scheduler ====================

SCHEDULER_MAX_WORKERS = int(os.getenv("SCHEDULER_MAX_WORKERS", "6"))
SCHEDULER_TASK_TIMEOUT = float(os.getenv("SCHEDULER_TASK_TIMEOUT", "60"))  # seconds
SCHEDULER_FALLBACK_TO_MAIN_THREAD = _env_bool("SCHEDULER_FALLBACK_TO_MAIN_THREAD", True)
SCHEDULER_MAX_RETRIES = int(os.getenv("SCHEDULER_MAX_RETRIES", "1"))
SCHEDULER_USE_PROCESSES = _env_bool("SCHEDULER_USE_PROCESSES", True)
SCHEDULER_START_METHOD = os.getenv("SCHEDULER_START_METHOD", "spawn")

# Priorities of the task kinds submitted by the orchestrator
DATA_TASK_PRIORITY = 3
STRATEGY_TASK_PRIORITY = 1
ANALYTICS_TASK_PRIORITY = 2

# ==================== Historical data cache ====================

CACHE_BACKEND = os.getenv("CACHE_BACKEND", "memory")  # memory | sqlite
CACHE_SOFT_TTL_HOURS = float(os.getenv("CACHE_SOFT_TTL_HOURS", "24"))
CACHE_HARD_TTL_DAYS = float(os.getenv("CACHE_HARD_TTL_DAYS", "7"))
CACHE_MAX_SIZE_MB = int(os.getenv("CACHE_MAX_SIZE_MB", "100"))
CACHE_SWEEP_INTERVAL = float(os.getenv("CACHE_SWEEP_INTERVAL", "3600"))  # seconds
CACHE_KEY_VERSION = "v2"

# Synthetic series
SYNTHETIC_MAX_BARS = 10000
SYNTHETIC_BASE_PRICE = 2500.0
SYNTHETIC_MIN_VOLATILITY = 0.02
SYNTHETIC_MAX_VOLATILITY = 0.05
SYNTHETIC_MAX_TREND = 0.0005

# ==================== Financial metrics ====================

TRADING_DAYS_PER_YEAR = int(os.getenv("TRADING_DAYS_PER_YEAR", "252"))
RISK_FREE_RATE = float(os.getenv("RISK_FREE_RATE", "0.02"))
VAR_CONFIDENCE = 0.95
EXPECTED_SHORTFALL_ALPHA = 0.05

# ==================== Monte Carlo ====================

MC_NUM_SIMULATIONS = int(os.getenv("MC_NUM_SIMULATIONS", "1000"))
MC_CONFIDENCE_LEVEL = float(os.getenv("MC_CONFIDENCE_LEVEL", "0.95"))
MC_BOOTSTRAP_METHOD = os.getenv("MC_BOOTSTRAP_METHOD", "non_parametric")
MC_BLOCK_SIZE = int(os.getenv("MC_BLOCK_SIZE", "10"))
MC_BATCH_SIZE = 100

# ==================== Genetic optimizer ====================

GA_POPULATION_SIZE = int(os.getenv("GA_POPULATION_SIZE", "20"))
GA_GENERATIONS = int(os.getenv("GA_GENERATIONS", "50"))
GA_CROSSOVER_RATE = float(os.getenv("GA_CROSSOVER_RATE", "0.8"))
GA_MUTATION_RATE = float(os.getenv("GA_MUTATION_RATE", "0.1"))
GA_ELITE_RATIO = float(os.getenv("GA_ELITE_RATIO", "0.2"))
GA_TOURNAMENT_SIZE = 3
GA_CONVERGENCE_WINDOW = 10
GA_CONVERGENCE_THRESHOLD = 0.001
GA_MIN_TRADES = 10
GA_LOW_TRADES_PENALTY = 0.5
GA_MAX_DRAWDOWN = 0.3
GA_DRAWDOWN_PENALTY = 0.3

# Walk-forward re-optimization runs a smaller search
WF_GA_GENERATIONS = 20
WF_GA_POPULATION_SIZE = 20
