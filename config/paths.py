"""
Path configuration
"""
import os

# ==================== Data storage ====================

CACHE_DB_PATH = os.getenv("CACHE_DB_PATH", "backtest_cache.db")

# ==================== Logging ====================

LOG_DIR = os.getenv("LOG_DIR", "logs")
LOG_FILE = "backtest.log"
