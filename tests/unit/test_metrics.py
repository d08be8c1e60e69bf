import math
from datetime import datetime, timedelta

import pytest

from backtesting.analytics.metrics import MetricsCalculator, format_report, pair_trades, sharpe_ratio
from backtesting.core.schema import OrderSide, Trade

T0 = datetime(2024, 1, 1)


def trade(side, price, qty=1.0, fee=1.0, minutes=0):
    return Trade(symbol="X", side=side, price=price, quantity=qty, fee=fee,
                 timestamp=T0 + timedelta(minutes=minutes), cash_after=0.0, portfolio_value_after=0.0)


class TestSharpe:

    def test_all_zero_returns(self):
        assert sharpe_ratio([0.0] * 50) == 0.0

    def test_fewer_than_two_returns(self):
        assert sharpe_ratio([]) == 0.0
        assert sharpe_ratio([0.05]) == 0.0

    def test_sample_std(self):
        assert sharpe_ratio([0.01, 0.02, 0.03]) == pytest.approx(0.02 / 0.01 * math.sqrt(252))


class TestTradePairing:

    def test_lifo(self):
        trades = [
            trade(OrderSide.BUY, 100.0),
            trade(OrderSide.BUY, 110.0),
            trade(OrderSide.SELL, 120.0),   # pairs with 110
            trade(OrderSide.SELL, 90.0),    # pairs with 100
        ]
        assert pair_trades(trades) == pytest.approx([8.0, -12.0])

    def test_unmatched_sell_ignored(self):
        assert pair_trades([trade(OrderSide.SELL, 100.0)]) == []


class TestMetricsCalculator:

    @pytest.fixture
    def result(self):
        trades = [
            trade(OrderSide.BUY, 100.0, minutes=0),
            trade(OrderSide.SELL, 110.0, minutes=15),
            trade(OrderSide.BUY, 105.0, minutes=30),
            trade(OrderSide.SELL, 100.0, minutes=45),
        ]
        return MetricsCalculator.calculate(
            trades=trades,
            equity_curve=[10000.0, 11000.0, 9900.0, 10500.0],
            returns=[0.1, -0.1, 0.0606],
            closes=[100.0, 110.0, 105.0, 120.0],
            initial_cash=10000.0,
            final_balance=10500.0,
            symbol="X",
            strategy="rule",
            start=T0,
            end=T0 + timedelta(hours=1),
        )

    def test_returns(self, result):
        assert result.final_value == 10500.0
        assert result.total_return == pytest.approx(500.0)
        assert result.total_return_pct == pytest.approx(5.0)
        assert result.buy_and_hold_return_pct == pytest.approx(20.0)
        assert result.buy_and_hold_return == pytest.approx(2000.0)

    def test_drawdown(self, result):
        assert result.max_drawdown == pytest.approx(1100.0)
        assert result.max_drawdown_pct == pytest.approx(10.0)
        assert result.max_drawdown <= max(result.equity_curve)

    def test_trade_stats(self, result):
        assert result.total_trades == 4
        assert result.winning_trades == 1 and result.losing_trades == 1
        assert result.win_rate == pytest.approx(50.0)
        assert result.average_win == pytest.approx(8.0)
        assert result.average_loss == pytest.approx(7.0)
        assert result.duration == timedelta(hours=1)

    def test_rating(self, result):
        assert result.rating == "FAIR"

    def test_summary_and_report(self, result):
        summary = result.to_dict()
        assert summary["Total Trades"] == 4
        assert summary["Rating"] == "FAIR"
        report = format_report(result)
        assert "STRATEGY RATING: FAIR" in report
        assert "RECENT TRADES" in report

    def test_report_shows_last_ten_trades(self):
        trades = [trade(OrderSide.BUY if i % 2 == 0 else OrderSide.SELL, 100.0 + i, minutes=i) for i in range(14)]
        result = MetricsCalculator.calculate(trades, [10000.0], [], [100.0], 10000.0, 10000.0)
        report = format_report(result)
        assert report.count(" X at $") == 10

    def test_empty_run(self):
        result = MetricsCalculator.calculate([], [], [], [], 10000.0, 10000.0)
        assert result.final_value == 10000.0
        assert result.sharpe_ratio == 0.0
        assert result.max_drawdown == 0.0
        assert result.win_rate == 0.0
