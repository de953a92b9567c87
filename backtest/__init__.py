"""
Backtesting and robustness analysis engine
"""
