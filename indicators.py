import numpy as np
import pandas as pd


# ==================== Moving averages ====================

def calc_sma(data: pd.Series, period: int) -> pd.Series:
    """Simple moving average"""
    return data.rolling(window=period).mean()


def calc_ema(data: pd.Series, period: int) -> pd.Series:
    """Exponential moving average"""
    return data.ewm(span=period, adjust=False).mean()


# ==================== Dispersion ====================

def calc_rolling_std(data: pd.Series, period: int) -> pd.Series:
    """Population standard deviation over a rolling window"""
    return data.rolling(window=period).std(ddof=0)


def calc_zscore(close: pd.Series, period: int = 20) -> pd.Series:
    """
    Z-score of each close against the `period` bars before it.
    The current bar is excluded from its own window.
    """
    mean = calc_sma(close, period).shift(1)
    std = calc_rolling_std(close, period).shift(1)
    return ((close - mean) / std.replace(0, np.nan)).fillna(0.0)


# ==================== Linear regression ====================

def _regression_residual(window: np.ndarray) -> float:
    n = len(window)
    x = np.arange(n)
    slope, intercept = np.polyfit(x, window, 1)
    return window[-1] - (intercept + slope * (n - 1))


def calc_linear_regression_oscillator(close: pd.Series, period: int = 14) -> pd.DataFrame:
    """
    Distance of the close from the end point of its rolling least-squares line.

    Returns columns `lro` (price units) and `normalized` (lro / population std of the window).
    """
    lro = close.rolling(window=period).apply(_regression_residual, raw=True)
    std = calc_rolling_std(close, period)
    normalized = (lro / std.replace(0, np.nan)).fillna(0.0)
    return pd.DataFrame({'lro': lro.fillna(0.0), 'normalized': normalized}, index=close.index)
