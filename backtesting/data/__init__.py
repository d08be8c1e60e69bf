from .schema import Bar, TimeSeries, OHLCV_COLUMNS
