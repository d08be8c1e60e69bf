import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from backtesting.data.schema import TimeSeries

logger = logging.getLogger("backtesting.core.indicators")

SOURCES = ("open", "high", "low", "close", "volume")
FLAT_BAND_TOLERANCE = 1e-12


@dataclass(frozen=True)
class MACDValue:
    macd: float
    signal: Optional[float]
    histogram: Optional[float]


@dataclass(frozen=True)
class BollingerValue:
    middle: float
    upper: float
    lower: float
    width: float
    position: float


def rolling_apply(values: np.ndarray, period: int, fn: Callable[..., np.ndarray]) -> np.ndarray:
    """
    Applies a reducing numpy function over trailing windows of `period` values.
    Windows computed from scratch (no running sums), so a flat window reduces
    to exactly zero variance.
    """
    out = np.full(len(values), np.nan)
    if period <= 0 or len(values) < period:
        return out
    windows = np.lib.stride_tricks.sliding_window_view(values, period)
    out[period - 1:] = fn(windows, axis=1)
    return out


def ema_array(values: np.ndarray, period: int) -> np.ndarray:
    """
    Exponential moving average, seeded with the SMA of the first `period`
    valid values (leading NaNs are skipped) and then alpha = 2 / (period + 1).
    Entries before the seed are NaN.
    """
    out = np.full(len(values), np.nan)
    valid = np.flatnonzero(~np.isnan(values))
    if len(valid) == 0:
        return out
    first = valid[0]
    seed_idx = first + period - 1
    if seed_idx >= len(values):
        return out

    tail = pd.Series(values[seed_idx:], dtype=float)
    tail.iloc[0] = float(np.mean(values[first:seed_idx + 1]))
    out[seed_idx:] = tail.ewm(span=period, adjust=False).mean().to_numpy()
    return out


class IndicatorEngine:
    """
    Causal technical indicators over a TimeSeries.

    Every indicator is computed once over the whole series and cached per
    (name, params); a lookup at index i is then O(1). All formulas
    only read bars <= i, so appending bars never changes an earlier value: the
    cache is simply rebuilt when the series has grown.
    Lookups return None when there is not enough history.
    """

    def __init__(self, series: TimeSeries):
        self.series = series.root
        self._cache: Dict[Tuple, np.ndarray] = {}
        self._cached_len = 0

    # --- cache plumbing ---------------------------------------------------

    def _sync(self):
        n = len(self.series)
        if n != self._cached_len:
            if self._cache:
                logger.debug(f"[INDICATORS] Series grew {self._cached_len} -> {n} bars, rebuilding cache")
            self._cache.clear()
            self._cached_len = n

    def _array(self, key: Tuple, build: Callable[[], np.ndarray]) -> np.ndarray:
        self._sync()
        arr = self._cache.get(key)
        if arr is None:
            arr = build()
            self._cache[key] = arr
        return arr

    def _source(self, source: str) -> np.ndarray:
        if source not in SOURCES:
            raise ValueError(f"Unknown price source '{source}'")
        return self._array(("source", source), lambda: getattr(self.series, f"{source}s")())

    @staticmethod
    def _at(arr: np.ndarray, index: int) -> Optional[float]:
        if index < 0 or index >= len(arr):
            return None
        value = arr[index]
        if np.isnan(value):
            return None
        return float(value)

    # --- array builders ---------------------------------------------------

    def sma_series(self, period: int, source: str = "close") -> np.ndarray:
        return self._array(
            ("sma", period, source),
            lambda: rolling_apply(self._source(source), period, np.mean),
        )

    def std_series(self, period: int, source: str = "close") -> np.ndarray:
        return self._array(
            ("std", period, source),
            lambda: rolling_apply(self._source(source), period, np.std),
        )

    def ema_series(self, period: int, source: str = "close") -> np.ndarray:
        return self._array(("ema", period, source), lambda: ema_array(self._source(source), period))

    def rsi_series(self, period: int = 14) -> np.ndarray:
        def build():
            close = pd.Series(self._source("close"))
            delta = close.diff()
            gain = delta.clip(lower=0)
            loss = (-delta).clip(lower=0)
            avg_gain = rolling_apply(gain.to_numpy(), period, np.mean)
            avg_loss = rolling_apply(loss.to_numpy(), period, np.mean)

            rsi = np.full(len(close), np.nan)
            ready = ~np.isnan(avg_gain) & ~np.isnan(avg_loss)
            no_loss = ready & (avg_loss <= 0)
            normal = ready & (avg_loss > 0)
            rsi[no_loss] = 100.0
            rs = avg_gain[normal] / avg_loss[normal]
            rsi[normal] = 100.0 - 100.0 / (1.0 + rs)
            return rsi

        return self._array(("rsi", period), build)

    def macd_series(self, fast: int = 12, slow: int = 26) -> np.ndarray:
        return self._array(
            ("macd", fast, slow),
            lambda: self.ema_series(fast) - self.ema_series(slow),
        )

    def macd_signal_series(self, fast: int = 12, slow: int = 26, signal: int = 9) -> np.ndarray:
        return self._array(
            ("macd_signal", fast, slow, signal),
            lambda: ema_array(self.macd_series(fast, slow), signal),
        )

    def true_range_series(self) -> np.ndarray:
        def build():
            high = self._source("high")
            low = self._source("low")
            prev_close = pd.Series(self._source("close")).shift(1).to_numpy()
            tr = np.maximum(high - low, np.maximum(np.abs(high - prev_close), np.abs(low - prev_close)))
            tr[0] = np.nan  # no previous close
            return tr

        return self._array(("true_range",), build)

    def atr_series(self, period: int = 14) -> np.ndarray:
        return self._array(
            ("atr", period),
            lambda: rolling_apply(self.true_range_series(), period, np.mean),
        )

    # --- point lookups ----------------------------------------------------

    def sma(self, index: int, period: int, source: str = "close") -> Optional[float]:
        return self._at(self.sma_series(period, source), index)

    def std_dev(self, index: int, period: int, source: str = "close") -> Optional[float]:
        return self._at(self.std_series(period, source), index)

    def ema(self, index: int, period: int, source: str = "close") -> Optional[float]:
        return self._at(self.ema_series(period, source), index)

    def rsi(self, index: int, period: int = 14) -> Optional[float]:
        return self._at(self.rsi_series(period), index)

    def macd(self, index: int, fast: int = 12, slow: int = 26, signal: int = 9) -> Optional[MACDValue]:
        macd = self._at(self.macd_series(fast, slow), index)
        if macd is None:
            return None
        sig = self._at(self.macd_signal_series(fast, slow, signal), index)
        return MACDValue(macd=macd, signal=sig, histogram=None if sig is None else macd - sig)

    def atr(self, index: int, period: int = 14) -> Optional[float]:
        return self._at(self.atr_series(period), index)

    def bollinger(self, index: int, period: int = 20, k: float = 2.0) -> Optional[BollingerValue]:
        middle = self.sma(index, period)
        sigma = self.std_dev(index, period)
        if middle is None or sigma is None:
            return None
        upper = middle + k * sigma
        lower = middle - k * sigma
        width = upper - lower
        if width <= FLAT_BAND_TOLERANCE * max(1.0, abs(middle)):
            width = 0.0
        close = self.series[index].close
        position = (close - lower) / width if width != 0 else 0.0
        return BollingerValue(middle=middle, upper=upper, lower=lower, width=width, position=position)
