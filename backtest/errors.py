"""
Backtest error codes and exception classes
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Backtest error code"""

    # Input data
    DATA_ERROR = "DATA_ERROR"
    EMPTY_SERIES = "EMPTY_SERIES"
    EMPTY_RETURNS = "EMPTY_RETURNS"

    # Configuration
    CONFIG_ERROR = "CONFIG_ERROR"
    UNKNOWN_STRATEGY = "UNKNOWN_STRATEGY"

    # Task execution
    TASK_FAILED = "TASK_FAILED"
    TASK_TIMEOUT = "TASK_TIMEOUT"
    WORKER_CRASHED = "WORKER_CRASHED"

    # Optimization
    OPTIMIZATION_FAILED = "OPTIMIZATION_FAILED"

    # Run lifecycle
    ALREADY_RUNNING = "ALREADY_RUNNING"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BacktestError(Exception):
    """Base exception of the backtest engine"""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[ErrorCode] = None,
        phase: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """
        Args:
            message: error message (defaults to the message of the error code)
            error_code: error code
            phase: run phase the error was raised in, if known
            details: extra context
        """
        self.error_code = error_code or self.default_code
        self.message = message or self._get_default_message(self.error_code)
        self.phase = phase
        self.details = details or {}
        super().__init__(self.message)

    @staticmethod
    def _get_default_message(error_code: ErrorCode) -> str:
        messages = {
            ErrorCode.DATA_ERROR: "Invalid price data",
            ErrorCode.EMPTY_SERIES: "No valid price bars",
            ErrorCode.EMPTY_RETURNS: "Return series is empty",
            ErrorCode.CONFIG_ERROR: "Invalid backtest configuration",
            ErrorCode.UNKNOWN_STRATEGY: "Unknown strategy id",
            ErrorCode.TASK_FAILED: "Task failed",
            ErrorCode.TASK_TIMEOUT: "Task timed out",
            ErrorCode.WORKER_CRASHED: "Execution unit crashed",
            ErrorCode.OPTIMIZATION_FAILED: "Parameter optimization failed",
            ErrorCode.ALREADY_RUNNING: "Backtest already running",
            ErrorCode.INTERNAL_ERROR: "Internal error",
        }
        return messages.get(error_code, "Unknown error")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "phase": self.phase,
                "details": self.details
            }
        }


class DataError(BacktestError):
    default_code = ErrorCode.DATA_ERROR


class ConfigError(BacktestError):
    default_code = ErrorCode.CONFIG_ERROR


class TaskError(BacktestError):
    """A task (or a batch of tasks) failed without a successful recovery"""

    default_code = ErrorCode.TASK_FAILED

    def __init__(self, message: Optional[str] = None, results: Optional[list] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.results = results or []


class TaskTimeoutError(TaskError):
    default_code = ErrorCode.TASK_TIMEOUT


class WorkerCrashedError(TaskError):
    default_code = ErrorCode.WORKER_CRASHED


class OptimizationError(BacktestError):
    default_code = ErrorCode.OPTIMIZATION_FAILED


class ConcurrentRunError(BacktestError):
    default_code = ErrorCode.ALREADY_RUNNING
