from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, TYPE_CHECKING

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from backtesting.core.indicators import IndicatorEngine

OHLCV_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]


@dataclass(frozen=True)
class Bar:
    """
    Atomic unit of OHLCV data.
    Frozen to prevent accidental mutation during backtest.
    """
    timestamp: datetime  # period start
    duration: timedelta
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @property
    def end(self) -> datetime:
        return self.timestamp + self.duration


class TimeSeries:
    """
    Ordered, append-only sequence of bars for a single symbol.

    Timestamps are strictly increasing. A prefix view (see `prefix`) shares the
    underlying storage with its parent but only exposes bars up to its last
    index, which is how the backtester hands a strategy the causal history at
    each step without copying it.
    """

    def __init__(self, symbol: str = "asset", bars: Optional[List[Bar]] = None):
        self.symbol = symbol
        self._bars: List[Bar] = []
        self._root: "TimeSeries" = self
        self._end: Optional[int] = None  # exclusive bound for prefix views
        self._indicators: Optional["IndicatorEngine"] = None
        for bar in bars or []:
            self.append(bar)

    # --- construction -----------------------------------------------------

    def append(self, bar: Bar):
        if self._end is not None:
            raise ValueError("Cannot append to a prefix view of a time series")
        if self._bars and bar.timestamp <= self._bars[-1].timestamp:
            raise ValueError(
                f"Bar at {bar.timestamp} is not after last bar at {self._bars[-1].timestamp} "
                f"({self.symbol})"
            )
        self._bars.append(bar)

    def prefix(self, index: int) -> "TimeSeries":
        """Read-only view over bars 0..index (inclusive)."""
        if index < 0 or index >= len(self):
            raise IndexError(f"Prefix index {index} out of range for {len(self)} bars")
        view = TimeSeries.__new__(TimeSeries)
        view.symbol = self.symbol
        view._bars = self._root._bars
        view._root = self._root
        view._end = index + 1
        view._indicators = None
        return view

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, symbol: str = "asset",
                       duration: Optional[timedelta] = None) -> "TimeSeries":
        """
        Builds a series from an OHLCV frame indexed by period start
        (columns Open/High/Low/Close[/Volume]).
        """
        if df.empty:
            return cls(symbol)
        index = pd.to_datetime(df.index)
        if duration is None:
            if len(index) > 1:
                duration = (index.to_series().diff().dropna().min()).to_pytimedelta()
            else:
                duration = timedelta(minutes=15)

        has_volume = "Volume" in df.columns
        series = cls(symbol)
        for ts, row in zip(index, df.itertuples(index=False)):
            values = row._asdict()
            series.append(Bar(
                timestamp=ts.to_pydatetime(),
                duration=duration,
                open=float(values["Open"]),
                high=float(values["High"]),
                low=float(values["Low"]),
                close=float(values["Close"]),
                volume=float(values["Volume"]) if has_volume else 0.0,
            ))
        return series

    def to_dataframe(self) -> pd.DataFrame:
        bars = list(self)
        df = pd.DataFrame(
            [[b.open, b.high, b.low, b.close, b.volume] for b in bars],
            columns=OHLCV_COLUMNS,
            index=pd.DatetimeIndex([b.timestamp for b in bars], name="timestamp"),
        )
        return df

    # --- access -----------------------------------------------------------

    def __len__(self) -> int:
        return self._end if self._end is not None else len(self._bars)

    def __getitem__(self, index: int) -> Bar:
        n = len(self)
        if index < 0:
            index += n
        if index < 0 or index >= n:
            raise IndexError(f"Bar index {index} out of range for {n} bars")
        return self._bars[index]

    def __iter__(self) -> Iterator[Bar]:
        for i in range(len(self)):
            yield self._bars[i]

    @property
    def last_index(self) -> int:
        return len(self) - 1

    @property
    def root(self) -> "TimeSeries":
        return self._root

    @property
    def is_view(self) -> bool:
        return self._end is not None

    @property
    def indicators(self) -> "IndicatorEngine":
        """Shared, cached indicator engine bound to the full (root) series."""
        root = self._root
        if root._indicators is None:
            from backtesting.core.indicators import IndicatorEngine
            root._indicators = IndicatorEngine(root)
        return root._indicators

    def _column(self, attr: str) -> np.ndarray:
        return np.fromiter((getattr(b, attr) for b in self), dtype=float, count=len(self))

    def opens(self) -> np.ndarray:
        return self._column("open")

    def highs(self) -> np.ndarray:
        return self._column("high")

    def lows(self) -> np.ndarray:
        return self._column("low")

    def closes(self) -> np.ndarray:
        return self._column("close")

    def volumes(self) -> np.ndarray:
        return self._column("volume")

    def __repr__(self) -> str:
        kind = "view" if self.is_view else "series"
        return f"TimeSeries({self.symbol!r}, {len(self)} bars, {kind})"
