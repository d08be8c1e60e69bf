from abc import ABC, abstractmethod
from typing import Dict, Any, Optional
from enum import Enum

from backtesting.data.schema import TimeSeries


class SignalSide(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    WAIT = "WAIT"  # not enough history yet


class Signal:
    def __init__(self, side: SignalSide, confidence: float = 0.0, tag: Optional[str] = None, metadata: Dict[str, Any] = None):
        self.side = side
        self.confidence = confidence  # 0..1, model-based strategies only
        self.tag = tag
        self.metadata = metadata or {}

    @property
    def is_actionable(self) -> bool:
        return self.side in (SignalSide.BUY, SignalSide.SELL)

    def __repr__(self) -> str:
        return f"Signal({self.side.value}, confidence={self.confidence:.2f}, tag={self.tag!r})"


class StrategyInterface(ABC):
    """
    Abstract Interface that all strategies must implement.
    """

    name = "strategy"

    def __init__(self):
        self.last_indicators: Dict[str, Any] = {}

    @abstractmethod
    def setup(self, params: Dict[str, Any]):
        """
        Initialization with configurable parameters.
        """
        pass

    @abstractmethod
    def on_bar(self, series: TimeSeries, index: int, portfolio_context: Dict[str, Any]) -> Signal:
        """
        Processes one bar and returns a signal.
        - series: causal history, bars 0..index (inclusive).
        - index: position of the current bar.
        - portfolio_context: Current state of the portfolio (cash, holdings, value).
        """
        pass

    @abstractmethod
    def get_params(self) -> Dict[str, Any]:
        """
        Returns the configurable parameters of the strategy.
        """
        pass
