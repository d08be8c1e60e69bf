from backtesting.core.strategy_interface import StrategyInterface, Signal, SignalSide
import logging
from typing import Dict, Any

from backtesting.data.schema import TimeSeries

logger = logging.getLogger("backtesting.strategies.rule_based")

# Index of the first bar the crossover logic runs on (27 bars of history).
MIN_HISTORY_INDEX = 26


class RuleBasedStrategy(StrategyInterface):
    """
    EMA9/EMA21 crossover confirmed by RSI14 and MACD(12,26).

    BUY:  EMA9 crosses above EMA21, RSI < overbought, MACD above its comparison line.
    SELL: EMA9 crosses below EMA21, RSI > oversold, MACD below its comparison line.

    The comparison line is the MACD histogram (macd - EMA9(macd)) by default;
    `macd_compare="signal"` compares against the signal line instead.
    """

    name = "rule"

    def __init__(self):
        super().__init__()
        self.setup({})

    def setup(self, params: Dict[str, Any]):
        self.ema_fast = params.get("ema_fast", 9)
        self.ema_slow = params.get("ema_slow", 21)
        self.rsi_period = params.get("rsi_period", 14)
        self.rsi_overbought = params.get("rsi_overbought", 70.0)
        self.rsi_oversold = params.get("rsi_oversold", 30.0)
        self.macd_fast = params.get("macd_fast", 12)
        self.macd_slow = params.get("macd_slow", 26)
        self.macd_signal = params.get("macd_signal", 9)
        self.macd_compare = params.get("macd_compare", "histogram")
        self.min_index = params.get("min_index", MIN_HISTORY_INDEX)

        if self.macd_compare not in ("histogram", "signal"):
            raise ValueError(f"macd_compare must be 'histogram' or 'signal', got {self.macd_compare!r}")

        self.params = params
        self.last_indicators = {}

    def get_params(self) -> Dict[str, Any]:
        return {
            "ema_fast": self.ema_fast,
            "ema_slow": self.ema_slow,
            "rsi_period": self.rsi_period,
            "rsi_overbought": self.rsi_overbought,
            "rsi_oversold": self.rsi_oversold,
            "macd_fast": self.macd_fast,
            "macd_slow": self.macd_slow,
            "macd_signal": self.macd_signal,
            "macd_compare": self.macd_compare,
            "min_index": self.min_index,
        }

    def _macd_reference(self, series: TimeSeries, index: int):
        macd = series.indicators.macd(index, self.macd_fast, self.macd_slow, self.macd_signal)
        if macd is None:
            return None, None
        if self.macd_compare == "signal":
            return macd.macd, macd.signal
        return macd.macd, macd.histogram

    def on_bar(self, series: TimeSeries, index: int, portfolio_context: Dict[str, Any]) -> Signal:
        if index < self.min_index:
            return Signal(SignalSide.WAIT, tag="warmup")

        ind = series.indicators
        fast_now = ind.ema(index, self.ema_fast)
        slow_now = ind.ema(index, self.ema_slow)
        fast_prev = ind.ema(index - 1, self.ema_fast)
        slow_prev = ind.ema(index - 1, self.ema_slow)
        rsi = ind.rsi(index, self.rsi_period)
        macd, reference = self._macd_reference(series, index)

        self.last_indicators = {
            "ema_fast": fast_now,
            "ema_slow": slow_now,
            "rsi": rsi,
            "macd": macd,
            "macd_reference": reference,
        }

        if None in (fast_now, slow_now, fast_prev, slow_prev, rsi):
            return Signal(SignalSide.WAIT, tag="insufficient_data")
        # The histogram needs slow + signal - 2 bars; until then MACD cannot confirm.
        macd_ready = macd is not None and reference is not None

        crossed_up = fast_now > slow_now and fast_prev <= slow_prev
        crossed_down = fast_now < slow_now and fast_prev >= slow_prev

        if crossed_up and rsi < self.rsi_overbought and macd_ready and macd > reference:
            logger.debug(f"[RULE] BUY at {index} | EMA {fast_now:.4f}/{slow_now:.4f} | RSI {rsi:.2f}")
            return Signal(SignalSide.BUY, confidence=1.0, tag="ema_cross_up", metadata=dict(self.last_indicators))

        if crossed_down and rsi > self.rsi_oversold and macd_ready and macd < reference:
            logger.debug(f"[RULE] SELL at {index} | EMA {fast_now:.4f}/{slow_now:.4f} | RSI {rsi:.2f}")
            return Signal(SignalSide.SELL, confidence=1.0, tag="ema_cross_down", metadata=dict(self.last_indicators))

        return Signal(SignalSide.HOLD)
