import logging
from typing import Optional

from backtesting.analytics.metrics import BacktestResult, MetricsCalculator
from backtesting.config import BacktestConfig
from backtesting.core.logger import AuditTrail
from backtesting.core.portfolio import Portfolio
from backtesting.core.schema import ExecutionResult
from backtesting.core.strategy_interface import StrategyInterface, SignalSide
from backtesting.data.schema import TimeSeries

logger = logging.getLogger("backtesting.core.backtester")


class BacktestEngine:
    """
    Replays a strategy over a series, one bar at a time.

    Each engine owns its Portfolio for exactly one run; run() builds a fresh
    one so an engine can be reused sequentially, never concurrently.
    """

    def __init__(self, config: Optional[BacktestConfig] = None, symbol: Optional[str] = None,
                 audit: Optional[AuditTrail] = None):
        self.config = config or BacktestConfig()
        self.symbol = symbol or self.config.symbol
        self.audit = audit
        self.portfolio = Portfolio(self.config.initial_cash, self.config.fee_rate)

    def run(self, series: TimeSeries, strategy: StrategyInterface,
            start_index: Optional[int] = None) -> BacktestResult:
        """
        The Main Event Loop. Processes bars from the warm-up offset to the end.
        The strategy only ever sees the prefix ending at the current bar.
        """
        start = self.config.warmup_bars if start_index is None else start_index
        strategy_name = getattr(strategy, "name", strategy.__class__.__name__)
        self.portfolio = Portfolio(self.config.initial_cash, self.config.fee_rate)
        portfolio = self.portfolio

        logger.info(
            f"[BACKTEST START] Strategy: {strategy.__class__.__name__} | Symbol: {self.symbol} | "
            f"Bars: {len(series)} | Warm-up: {start}"
        )
        if self.audit:
            self.audit.set_metadata({
                "strategy": strategy.__class__.__name__,
                "params": strategy.get_params(),
                "symbol": self.symbol,
                "period": f"{series[0].timestamp} to {series[-1].end}" if len(series) else "",
                "initial_cash": self.config.initial_cash,
                "fee_rate": self.config.fee_rate,
            })

        rejected = 0
        for i in range(max(start, 0), len(series)):
            bar = series[i]
            portfolio.update_price(self.symbol, bar.close)

            ctx = portfolio.get_context()
            signal = strategy.on_bar(series.prefix(i), i, ctx)

            outcome = ExecutionResult.NOOP
            if signal.side in (SignalSide.BUY, SignalSide.SELL):
                logger.debug(f"[SIGNAL] {bar.timestamp} | {signal.side.value} | Tag: {signal.tag}")
                outcome = portfolio.execute(self.symbol, signal.side, bar.close, bar.timestamp)
                if outcome == ExecutionResult.FILLED and self.audit:
                    self.audit.record_trade(portfolio.trades[-1])
                elif outcome == ExecutionResult.REJECTED:
                    rejected += 1

            snapshot = portfolio.record_snapshot(bar.timestamp)

            if self.audit:
                self.audit.record_bar(i, bar, signal, outcome, strategy.last_indicators, snapshot["total_value"])

        # open positions stay open, marked to the last price by value()
        # an explicit start_index marks an out-of-sample replay: buy & hold and
        # duration then cover the replayed bars only
        first = max(start, 0) if start_index is not None else 0
        replayed = first < len(series)
        equity = [point["total_value"] for point in portfolio.equity_curve]
        result = MetricsCalculator.calculate(
            trades=portfolio.trades,
            equity_curve=equity,
            returns=portfolio.returns,
            closes=series.closes()[first:],
            initial_cash=self.config.initial_cash,
            final_balance=portfolio.cash,
            symbol=self.symbol,
            strategy=strategy_name,
            start=series[first].timestamp if replayed else None,
            end=series[-1].end if replayed else None,
        )

        logger.info(
            f"[BACKTEST END] {self.symbol} finished. Final Value: ${result.final_value:.2f} "
            f"({result.total_return_pct:+.2f}%) | Trades: {result.total_trades} | Rejected: {rejected}"
        )
        if self.audit:
            self.audit.save(result)
        return result
