import math
from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, Optional

from backtesting.data.schema import TimeSeries


def sanitize(value: Optional[float]) -> float:
    """NaN, +/-inf and missing values become 0.0."""
    if value is None:
        return 0.0
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return value


@dataclass(frozen=True)
class FeatureVector:
    # Price features
    price_change_1: float = 0.0
    price_change_5: float = 0.0
    price_change_10: float = 0.0

    # Technical indicators
    rsi: float = 0.0
    ema9: float = 0.0
    ema21: float = 0.0
    ema_spread: float = 0.0
    macd: float = 0.0
    macd_signal: float = 0.0
    macd_histogram: float = 0.0

    # Volume
    volume_ratio: float = 0.0
    volume_ma: float = 0.0

    # Volatility
    atr: float = 0.0
    bollinger_width: float = 0.0
    bollinger_position: float = 0.0

    # Market structure
    high_low_ratio: float = 0.0
    candle_body: float = 0.0
    candle_wick: float = 0.0

    # Time
    hour_of_day: float = 0.0
    day_of_week: float = 0.0

    # Training label, filled by the training driver
    future_return: float = 0.0

    def __post_init__(self):
        for f in fields(self):
            object.__setattr__(self, f.name, sanitize(getattr(self, f.name)))

    def with_future_return(self, future_return: float) -> "FeatureVector":
        return replace(self, future_return=future_return)

    def get(self, name: str) -> float:
        return getattr(self, name)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


FEATURE_NAMES = tuple(f.name for f in fields(FeatureVector))


class FeatureExtractor:
    """
    Builds one FeatureVector per bar index from the causal indicator engine.

    Principles:
    1. CAUSALITY: only bars <= index are read. The label (future_return) is
       computed separately by `label()` and only by the training driver.
    2. ROBUSTNESS: missing indicator values and every ratio that can divide by
       zero on flat or early data end up as 0.0, never NaN/inf.
    """

    def __init__(self, window_size: int = 30):
        self.window_size = window_size

    def extract(self, series: TimeSeries, index: int) -> Optional[FeatureVector]:
        """Returns None when index < window_size (not enough history)."""
        if index < self.window_size or index >= len(series):
            return None

        ind = series.indicators
        bar = series[index]
        price = bar.close

        def change(back: int) -> float:
            if index < back:
                return 0.0
            prev = series[index - back].close
            return (price - prev) / prev if prev != 0 else 0.0

        ema9 = sanitize(ind.ema(index, 9))
        ema21 = sanitize(ind.ema(index, 21))
        macd = ind.macd(index, 12, 26, 9)

        vol_ma = sanitize(ind.sma(index, 20, source="volume"))
        volume_ratio = bar.volume / vol_ma if vol_ma > 0 else 1.0

        bands = ind.bollinger(index, 20, 2.0)
        bollinger_width = 0.0
        bollinger_position = 0.0
        if bands is not None:
            if bands.middle != 0:
                bollinger_width = bands.width / bands.middle
            bollinger_position = bands.position

        high_low_ratio = candle_body = candle_wick = 0.0
        if price != 0:
            high_low_ratio = (bar.high - bar.low) / price
            candle_body = abs(price - bar.open) / price
            upper_wick = max(bar.high - price, bar.high - bar.open)
            lower_wick = max(price - bar.low, bar.open - bar.low)
            candle_wick = (upper_wick + lower_wick) / price

        return FeatureVector(
            price_change_1=change(1),
            price_change_5=change(5),
            price_change_10=change(10),
            rsi=ind.rsi(index, 14),
            ema9=ema9,
            ema21=ema21,
            ema_spread=(ema9 - ema21) / ema21 if ema21 != 0 else 0.0,
            macd=macd.macd if macd else None,
            macd_signal=macd.signal if macd else None,
            macd_histogram=macd.histogram if macd else None,
            volume_ratio=volume_ratio,
            volume_ma=vol_ma,
            atr=ind.atr(index, 14),
            bollinger_width=bollinger_width,
            bollinger_position=bollinger_position,
            high_low_ratio=high_low_ratio,
            candle_body=candle_body,
            candle_wick=candle_wick,
            hour_of_day=bar.timestamp.hour / 24.0,
            day_of_week=bar.timestamp.weekday() / 7.0,
        )

    @staticmethod
    def label(series: TimeSeries, index: int, horizon: int = 5) -> float:
        """Forward return over `horizon` bars; 0.0 if that bar does not exist."""
        if index + horizon >= len(series):
            return 0.0
        price = series[index].close
        if price == 0:
            return 0.0
        return sanitize((series[index + horizon].close - price) / price)
