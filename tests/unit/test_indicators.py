import math

import numpy as np
import pytest

from backtesting.core.indicators import ema_array, rolling_apply
from backtesting.data.schema import TimeSeries
from tests.factories import make_series, random_walk


@pytest.mark.indicators
class TestIndicatorEngine:

    @pytest.fixture
    def linear(self):
        return make_series([float(i) for i in range(1, 41)])

    def test_sma_window(self, linear):
        ind = linear.indicators
        assert ind.sma(9, 5) == pytest.approx(8.0)  # mean of 6..10
        assert ind.sma(3, 5) is None

    def test_std_dev_is_population(self):
        series = make_series([2, 4, 4, 4, 5, 5, 7, 9])
        assert series.indicators.std_dev(7, 8) == pytest.approx(2.0)

    def test_ema_seeded_with_sma(self, linear):
        ind = linear.indicators
        assert ind.ema(1, 3) is None
        assert ind.ema(2, 3) == pytest.approx(2.0)      # SMA(1, 2, 3)
        assert ind.ema(3, 3) == pytest.approx(3.0)      # 2 + 0.5 * (4 - 2)
        assert ind.ema(4, 3) == pytest.approx(4.0)

    def test_ema_array_skips_leading_nan(self):
        values = np.array([np.nan, np.nan, 1.0, 2.0, 3.0, 4.0])
        out = ema_array(values, 2)
        assert np.isnan(out[:3]).all()
        assert out[3] == pytest.approx(1.5)
        assert out[4] == pytest.approx(1.5 + (3.0 - 1.5) * 2 / 3)

    def test_rolling_apply_short_input(self):
        out = rolling_apply(np.array([1.0, 2.0]), 5, np.mean)
        assert np.isnan(out).all()

    def test_rsi_saturates_without_losses(self, linear):
        ind = linear.indicators
        assert ind.rsi(13) is None
        assert ind.rsi(14) == pytest.approx(100.0)

    def test_rsi_balanced_moves(self):
        series = make_series([10.0 + (i % 2) for i in range(15)])
        assert series.indicators.rsi(14) == pytest.approx(50.0)

    def test_rsi_flat_window(self, flat_series):
        assert flat_series.indicators.rsi(20) == pytest.approx(100.0)

    def test_macd_availability(self, linear):
        ind = linear.indicators
        assert ind.macd(24) is None
        early = ind.macd(25)
        assert early is not None
        assert early.signal is None and early.histogram is None
        full = ind.macd(33)
        assert full.signal is not None
        assert full.histogram == pytest.approx(full.macd - full.signal)

    def test_atr_constant_range(self):
        series = make_series([100.0] * 20, spread=0.01)
        ind = series.indicators
        assert ind.atr(13) is None
        assert ind.atr(14) == pytest.approx(2.0)  # high - low = 101 - 99

    def test_flat_bollinger_is_guarded(self, flat_series):
        """30 identical bars: zero width and zero position at every valid index."""
        ind = flat_series.indicators
        assert ind.bollinger(18) is None
        for i in range(19, 30):
            bands = ind.bollinger(i)
            assert bands.width == 0.0
            assert bands.position == 0.0
            assert not math.isnan(bands.upper)

    def test_bollinger_position(self):
        series = random_walk(60, seed=3)
        bands = series.indicators.bollinger(59, 20, 2.0)
        close = series[59].close
        assert bands.width == pytest.approx(bands.upper - bands.lower)
        assert bands.position == pytest.approx((close - bands.lower) / bands.width)

    def test_values_unchanged_by_appending_bars(self):
        full = random_walk(200, seed=7)
        grown = TimeSeries(full.symbol, [full[i] for i in range(120)])

        def snapshot(ind, i):
            macd = ind.macd(i)
            bands = ind.bollinger(i)
            return [ind.ema(i, 9), ind.ema(i, 21), ind.rsi(i), ind.atr(i),
                    macd.macd if macd else None, macd.signal if macd else None,
                    bands.position if bands else None]

        before = {i: snapshot(grown.indicators, i) for i in range(120)}
        for i in range(120, 200):
            grown.append(full[i])

        for i, values in before.items():
            for old, new in zip(values, snapshot(grown.indicators, i)):
                if old is None:
                    assert new is None
                else:
                    assert new == pytest.approx(old, rel=1e-12)

    def test_repeated_lookups_are_identical(self):
        series = random_walk(100, seed=11)
        ind = series.indicators
        assert ind.ema(80, 21) == ind.ema(80, 21)
        assert ind.macd(80) == ind.macd(80)

    def test_unknown_source(self, linear):
        with pytest.raises(ValueError):
            linear.indicators.sma(10, 5, source="vwap")
