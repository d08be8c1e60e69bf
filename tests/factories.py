"""Synthetic bars and series shared by the unit and integration tests."""
from datetime import datetime, timedelta
from typing import Optional, Sequence

import numpy as np

from backtesting.config import MLConfig
from backtesting.data.schema import Bar, TimeSeries

START = datetime(2024, 1, 1)  # a Monday
STEP = timedelta(minutes=15)


def make_series(closes: Sequence[float], symbol: str = "TEST", volumes: Optional[Sequence[float]] = None,
                spread: float = 0.01, start: datetime = START, step: timedelta = STEP) -> TimeSeries:
    """Open = previous close, high/low `spread` outside the body."""
    bars = []
    for i, close in enumerate(closes):
        open_ = closes[i - 1] if i else close
        bars.append(Bar(
            timestamp=start + i * step,
            duration=step,
            open=float(open_),
            high=float(max(open_, close) * (1 + spread)),
            low=float(min(open_, close) * (1 - spread)),
            close=float(close),
            volume=float(volumes[i]) if volumes is not None else 1000.0,
        ))
    return TimeSeries(symbol, bars)


def random_walk(n: int = 400, seed: int = 42, symbol: str = "WALK", vol: float = 0.01) -> TimeSeries:
    rng = np.random.default_rng(seed)
    closes = 100.0 * np.exp(np.cumsum(rng.normal(0.0, vol, n)))
    volumes = rng.uniform(500, 1500, n)
    return make_series(closes, symbol=symbol, volumes=volumes)


def fast_ml_config(**overrides) -> MLConfig:
    cfg = MLConfig(min_training_period=50, lookback_period=500, epochs=20)
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg
