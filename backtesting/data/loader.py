import pandas as pd
import logging
from datetime import timedelta
from typing import Optional

from backtesting.config import interval_to_minutes
from backtesting.data.schema import OHLCV_COLUMNS, TimeSeries

logger = logging.getLogger("backtesting.data.loader")

# lower-case aliases accepted in CSV headers
_COLUMN_ALIASES = {
    "open": "Open",
    "high": "High",
    "low": "Low",
    "close": "Close",
    "volume": "Volume",
}
_TIME_COLUMNS = ("timestamp", "time", "date", "datetime", "open_time")


class DataLoader:
    """
    Boundary between files/frames and the core: normalizes an OHLCV frame,
    runs the integrity pass and materializes a TimeSeries.
    """

    def __init__(self, interval: str = "15m"):
        self.interval = interval
        self.duration = timedelta(minutes=interval_to_minutes(interval))

    def load_csv(self, path: str, symbol: Optional[str] = None) -> TimeSeries:
        logger.info(f"[DATA LOAD START] Loading {path} | Interval: {self.interval}")
        df = pd.read_csv(path)
        return self.from_dataframe(df, symbol or "asset")

    def from_dataframe(self, df: pd.DataFrame, symbol: str = "asset") -> TimeSeries:
        df = self._normalize(df)
        if df.empty:
            logger.error(f"[DATA ERROR] No data found for {symbol}.")
            return TimeSeries(symbol)

        df = self._validate_data(df, symbol)
        series = TimeSeries.from_dataframe(df, symbol=symbol, duration=self.duration)
        logger.info(f"[DATA LOADED] {len(series)} bars loaded for {symbol}.")
        return series

    def _normalize(self, df: pd.DataFrame) -> pd.DataFrame:
        df = df.rename(columns={c: _COLUMN_ALIASES.get(str(c).lower(), c) for c in df.columns})

        if not isinstance(df.index, pd.DatetimeIndex):
            time_col = next((c for c in df.columns if str(c).lower() in _TIME_COLUMNS), None)
            if time_col is None:
                raise ValueError("OHLCV data needs a DatetimeIndex or a timestamp column")
            values = df[time_col]
            # epoch milliseconds (exchange kline dumps) or parseable strings
            if pd.api.types.is_numeric_dtype(values):
                index = pd.to_datetime(values, unit="ms")
            else:
                index = pd.to_datetime(values)
            df = df.drop(columns=[time_col]).set_index(pd.DatetimeIndex(index, name="timestamp"))

        missing = [c for c in OHLCV_COLUMNS[:4] if c not in df.columns]
        if missing:
            raise ValueError(f"OHLCV data is missing columns: {missing}")
        if "Volume" not in df.columns:
            df["Volume"] = 0.0

        df = df[OHLCV_COLUMNS].astype(float)
        return df.sort_index(kind="mergesort")

    def _validate_data(self, df: pd.DataFrame, symbol: str) -> pd.DataFrame:
        """
        Performs technical validation on the data. Duplicated timestamps are
        dropped (keep first); everything else is only reported.
        """
        logger.info(f"[VALIDATION START] Validating {symbol} integrity...")
        issues_found = 0

        # 1. Duplicates
        if df.index.duplicated().any():
            dup_count = df.index.duplicated().sum()
            logger.warning(f"[VALIDATION WARNING] {symbol}: Found {dup_count} duplicated timestamps. Keeping first.")
            df = df[~df.index.duplicated(keep='first')]
            issues_found += 1

        # 2. Impossible values
        invalid_high_low = df[df['High'] < df['Low']]
        if not invalid_high_low.empty:
            logger.error(f"[VALIDATION ERROR] {symbol}: Found {len(invalid_high_low)} bars where High < Low!")
            issues_found += 1

        invalid_prices = df[(df['Open'] <= 0) | (df['Close'] <= 0) | (df['High'] <= 0) | (df['Low'] <= 0)]
        if not invalid_prices.empty:
            logger.warning(f"[VALIDATION WARNING] {symbol}: Found {len(invalid_prices)} bars with zero/negative prices.")
            issues_found += 1

        if df[OHLCV_COLUMNS].isnull().any().any():
            logger.warning(f"[VALIDATION WARNING] {symbol}: Found missing OHLCV values.")
            issues_found += 1

        # 3. Gaps against the configured interval
        gaps = df.index.to_series().diff() > pd.Timedelta(self.duration) * 1.5
        gap_count = int(gaps.sum())
        if gap_count > 0:
            logger.warning(f"[VALIDATION WARNING] {symbol}: Detected {gap_count} potential data gaps.")
            issues_found += 1

        if issues_found == 0:
            logger.info(f"[VALIDATION PASSED] {symbol} data is clean.")
        else:
            logger.info(f"[VALIDATION COMPLETE] Found {issues_found} potential issues in {symbol}.")
        return df
