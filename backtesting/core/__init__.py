"""
Core engine: indicators, features, predictor, portfolio and backtester.
"""
from .errors import BacktestingError, InsufficientTrainingData
