import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from backtesting.core.schema import Trade, OrderSide

TRADING_DAYS = 252


@dataclass(frozen=True)
class BacktestResult:
    symbol: str
    strategy: str
    initial_cash: float
    final_balance: float          # cash only
    final_value: float            # cash + open position marked to last price
    total_return: float
    total_return_pct: float
    buy_and_hold_return: float
    buy_and_hold_return_pct: float
    max_drawdown: float
    max_drawdown_pct: float
    win_rate: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    average_win: float
    average_loss: float
    sharpe_ratio: float
    duration: timedelta
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    trades: Tuple[Trade, ...] = field(default_factory=tuple)
    equity_curve: Tuple[float, ...] = field(default_factory=tuple)
    returns: Tuple[float, ...] = field(default_factory=tuple)

    @property
    def alpha_pct(self) -> float:
        return self.total_return_pct - self.buy_and_hold_return_pct

    @property
    def profit_factor(self) -> Optional[float]:
        if self.average_loss > 0:
            return self.average_win / self.average_loss
        return None

    @property
    def rating(self) -> str:
        if self.total_return_pct > self.buy_and_hold_return_pct + 10:
            return "EXCELLENT"
        if self.total_return_pct > self.buy_and_hold_return_pct:
            return "GOOD"
        if self.total_return_pct > -10:
            return "FAIR"
        return "POOR"

    def to_dict(self, include_trades: bool = False) -> Dict[str, Any]:
        data = MetricsCalculator.summary_dict(self)
        if include_trades:
            data["trades"] = [t.to_dict() for t in self.trades]
            data["equity_curve"] = list(self.equity_curve)
        return data


def pair_trades(trades: Sequence[Trade]) -> List[float]:
    """
    P&L of every round trip. Each SELL is matched with the most recent
    unmatched BUY (LIFO); both fees are charged to the pair.
    """
    open_buys: List[Trade] = []
    pnls: List[float] = []
    for t in trades:
        if t.side == OrderSide.BUY:
            open_buys.append(t)
        elif t.side == OrderSide.SELL and open_buys:
            buy = open_buys.pop()
            pnls.append((t.price - buy.price) * t.quantity - t.fee - buy.fee)
    return pnls


def sharpe_ratio(returns: Sequence[float]) -> float:
    """mean / sample std * sqrt(252); 0 with fewer than 2 returns or zero volatility."""
    if len(returns) < 2:
        return 0.0
    r = pd.Series(returns, dtype=float)
    std = r.std(ddof=1)
    if not np.isfinite(std) or std <= 0:
        return 0.0
    value = r.mean() / std * math.sqrt(TRADING_DAYS)
    return float(value) if np.isfinite(value) else 0.0


class MetricsCalculator:
    @staticmethod
    def calculate(trades: Sequence[Trade], equity_curve: Sequence[float], returns: Sequence[float],
                  closes: Sequence[float], initial_cash: float, final_balance: float,
                  symbol: str = "asset", strategy: str = "strategy",
                  start: Optional[datetime] = None, end: Optional[datetime] = None) -> BacktestResult:
        final_value = float(equity_curve[-1]) if len(equity_curve) else initial_cash
        total_return = final_value - initial_cash
        total_return_pct = total_return / initial_cash * 100 if initial_cash else 0.0

        # Buy & hold over the whole series, first to last close
        bh_pct = 0.0
        if len(closes) and closes[0] != 0:
            bh_pct = (closes[-1] - closes[0]) / closes[0] * 100
        bh_return = bh_pct / 100 * initial_cash

        # Drawdown against the running peak, seeded with the starting cash
        max_dd, max_dd_pct = 0.0, 0.0
        if len(equity_curve):
            equity = pd.Series(equity_curve, dtype=float)
            peak = equity.cummax().clip(lower=initial_cash)
            dd = peak - equity
            worst = int(dd.values.argmax())
            max_dd = float(dd.iloc[worst])
            if max_dd > 0 and peak.iloc[worst] > 0:
                max_dd_pct = max_dd / float(peak.iloc[worst]) * 100

        pnls = pair_trades(trades)
        wins = [p for p in pnls if p > 0]
        losses = [abs(p) for p in pnls if p <= 0]
        win_rate = len(wins) / len(pnls) * 100 if pnls else 0.0

        return BacktestResult(
            symbol=symbol,
            strategy=strategy,
            initial_cash=initial_cash,
            final_balance=final_balance,
            final_value=final_value,
            total_return=total_return,
            total_return_pct=total_return_pct,
            buy_and_hold_return=bh_return,
            buy_and_hold_return_pct=bh_pct,
            max_drawdown=max_dd,
            max_drawdown_pct=max_dd_pct,
            win_rate=win_rate,
            total_trades=len(trades),
            winning_trades=len(wins),
            losing_trades=len(losses),
            average_win=sum(wins) / len(wins) if wins else 0.0,
            average_loss=sum(losses) / len(losses) if losses else 0.0,
            sharpe_ratio=sharpe_ratio(returns),
            duration=(end - start) if start and end else timedelta(0),
            start=start,
            end=end,
            trades=tuple(trades),
            equity_curve=tuple(float(v) for v in equity_curve),
            returns=tuple(float(r) for r in returns),
        )

    @staticmethod
    def summary_dict(result: BacktestResult) -> Dict[str, Any]:
        pf = result.profit_factor
        return {
            "Symbol": result.symbol,
            "Strategy": result.strategy,
            "Initial Cash": round(result.initial_cash, 2),
            "Final Balance": round(result.final_balance, 2),
            "Final Value": round(result.final_value, 2),
            "Total P&L": round(result.total_return, 2),
            "Total P&L %": round(result.total_return_pct, 2),
            "Buy & Hold %": round(result.buy_and_hold_return_pct, 2),
            "Alpha %": round(result.alpha_pct, 2),
            "Max Drawdown": round(result.max_drawdown, 2),
            "Max Drawdown %": round(result.max_drawdown_pct, 2),
            "Sharpe Ratio": round(result.sharpe_ratio, 3),
            "Total Trades": result.total_trades,
            "Winning Trades": result.winning_trades,
            "Losing Trades": result.losing_trades,
            "Win Rate %": round(result.win_rate, 2),
            "Average Win": round(result.average_win, 2),
            "Average Loss": round(result.average_loss, 2),
            "Profit Factor": round(pf, 2) if pf is not None else "N/A",
            "Duration": str(result.duration),
            "Rating": result.rating,
        }


RATING_EMOJI = {"EXCELLENT": "🏆", "GOOD": "✅", "FAIR": "⚠️", "POOR": "❌"}


def format_report(result: BacktestResult, recent: int = 10) -> str:
    """Multi-line text report: overview, trade statistics, last trades and rating."""
    bar = "=" * 80
    lines = [
        "",
        bar,
        f"                    BACKTEST RESULTS - {result.symbol} ({result.strategy})",
        bar,
        "📊 PERFORMANCE OVERVIEW",
        f"   Initial Balance:      ${result.initial_cash:.2f}",
        f"   Final Value:          ${result.final_value:.2f}",
        f"   Total Return:         ${result.total_return:.2f} ({result.total_return_pct:.2f}%)",
        f"   Buy & Hold Return:    ${result.buy_and_hold_return:.2f} ({result.buy_and_hold_return_pct:.2f}%)",
        f"   Alpha vs Buy & Hold:  {result.alpha_pct:.2f}%",
        f"   Max Drawdown:         ${result.max_drawdown:.2f} ({result.max_drawdown_pct:.2f}%)",
        f"   Sharpe Ratio:         {result.sharpe_ratio:.3f}",
        f"   Duration:             {result.duration}",
        "",
        "📈 TRADE STATISTICS",
        f"   Total Trades:         {result.total_trades}",
        f"   Winning Trades:       {result.winning_trades}",
        f"   Losing Trades:        {result.losing_trades}",
        f"   Win Rate:             {result.win_rate:.1f}%",
        f"   Average Win:          ${result.average_win:.2f}",
        f"   Average Loss:         ${result.average_loss:.2f}",
    ]
    if result.profit_factor is not None:
        lines.append(f"   Profit Factor:        {result.profit_factor:.2f}")

    lines += ["", f"📋 RECENT TRADES (Last {recent})"]
    for t in result.trades[-recent:]:
        emoji = "🟢" if t.side == OrderSide.BUY else "🔴"
        when = t.timestamp.strftime("%Y-%m-%d %H:%M") if t.timestamp else "-"
        lines.append(f"   {emoji} {t.side.value} {t.quantity:.6f} {t.symbol} at ${t.price:.2f} ({when})")

    lines += [bar, f"{RATING_EMOJI[result.rating]} STRATEGY RATING: {result.rating}", bar]
    return "\n".join(lines)
