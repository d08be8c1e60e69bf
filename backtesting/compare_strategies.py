import logging
import concurrent.futures
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import pandas as pd
from tqdm import tqdm

from backtesting.analytics.metrics import BacktestResult
from backtesting.config import BacktestConfig
from backtesting.core.backtester import BacktestEngine
from backtesting.core.training import train_for_replay
from backtesting.data.schema import TimeSeries
from backtesting.strategies import build_strategy

logger = logging.getLogger("backtesting.compare_strategies")


@dataclass(frozen=True)
class StrategyComparison:
    symbol: str
    rule: BacktestResult
    ml: BacktestResult

    @property
    def difference_pct(self) -> float:
        return self.ml.total_return_pct - self.rule.total_return_pct

    @property
    def winner(self) -> str:
        return "ML Strategy" if self.ml.total_return_pct > self.rule.total_return_pct else "Traditional"

    @property
    def best(self) -> BacktestResult:
        return self.ml if self.winner == "ML Strategy" else self.rule

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "winner": self.winner,
            "difference_pct": self.difference_pct,
            "rule": self.rule.to_dict(),
            "ml": self.ml.to_dict(),
        }


def compare_strategies(series: TimeSeries, config: Optional[BacktestConfig] = None) -> StrategyComparison:
    """
    Rule-based vs model-based on the same series and the same engine.
    The predictor learns from the first half of the series; both strategies
    are then replayed over the second half only.
    """
    config = config or BacktestConfig()
    symbol = series.symbol

    predictor, start = train_for_replay(series, config.ml, warmup=config.warmup_bars)

    logger.info(f"[COMPARE] {symbol}: running traditional strategy backtest from bar {start}")
    rule_result = BacktestEngine(config, symbol).run(
        series, build_strategy("rule", params={"macd_compare": config.macd_compare}), start_index=start
    )

    logger.info(f"[COMPARE] {symbol}: running ML strategy backtest from bar {start}")
    ml_result = BacktestEngine(config, symbol).run(
        series, build_strategy("ml", predictor=predictor), start_index=start
    )

    comparison = StrategyComparison(symbol=symbol, rule=rule_result, ml=ml_result)
    logger.info(f"[COMPARE] {symbol}: winner {comparison.winner} ({comparison.difference_pct:+.2f}%)")
    return comparison


def run_comparison(args) -> Optional[StrategyComparison]:
    """Process-pool entry point; unpacks (series, config)."""
    series, config = args
    if len(series) == 0:
        return None
    return compare_strategies(series, config)


def batch_compare(series_by_symbol: Mapping[str, TimeSeries], config: Optional[BacktestConfig] = None,
                  parallel: bool = True, max_workers: Optional[int] = None) -> List[StrategyComparison]:
    """
    Compares both strategies on every series. Each task builds its own
    engines and predictor, so nothing mutable crosses process boundaries.
    Failed tasks are logged and skipped.
    """
    config = config or BacktestConfig()
    tasks = [(series, config) for series in series_by_symbol.values()]
    results: List[StrategyComparison] = []

    if not parallel:
        for task in tqdm(tasks, desc="Simulating"):
            try:
                res = run_comparison(task)
            except Exception as exc:
                logger.error(f"Task {task[0].symbol} generated an exception: {exc}")
                continue
            if res:
                results.append(res)
        return sorted(results, key=lambda r: r.symbol)

    with concurrent.futures.ProcessPoolExecutor(max_workers=max_workers or config.max_workers) as executor:
        future_to_task = {executor.submit(run_comparison, t): t for t in tasks}
        for future in tqdm(concurrent.futures.as_completed(future_to_task), total=len(future_to_task), desc="Simulating"):
            task = future_to_task[future]
            try:
                res = future.result()
            except Exception as exc:
                logger.error(f"Task {task[0].symbol} generated an exception: {exc}")
                continue
            if res:
                results.append(res)

    return sorted(results, key=lambda r: r.symbol)


def format_comparison(comparison: StrategyComparison) -> str:
    rule, ml = comparison.rule, comparison.ml
    lines = [
        "",
        "=" * 80,
        f"                    STRATEGY COMPARISON - {comparison.symbol}",
        "=" * 80,
        "📊 PERFORMANCE COMPARISON:",
        f"   {'Metric':<20}   Traditional    ML Strategy",
        "-" * 55,
        f"   {'Total Return':<20}   {rule.total_return_pct:8.2f}%      {ml.total_return_pct:8.2f}%",
        f"   {'Win Rate':<20}   {rule.win_rate:8.2f}%      {ml.win_rate:8.2f}%",
        f"   {'Total Trades':<20}   {rule.total_trades:8d}         {ml.total_trades:8d}",
        f"   {'Max Drawdown':<20}   {rule.max_drawdown_pct:8.2f}%      {ml.max_drawdown_pct:8.2f}%",
        f"   {'Sharpe Ratio':<20}   {rule.sharpe_ratio:8.3f}        {ml.sharpe_ratio:8.3f}",
        "-" * 55,
        f"🏆 Winner: {comparison.winner}",
        f"📈 Performance Difference: {comparison.difference_pct:.2f}%",
        "=" * 80,
    ]
    return "\n".join(lines)


def format_batch_summary(results: List[StrategyComparison]) -> str:
    """Per-symbol table of both strategies plus the best performer overall."""
    if not results:
        return "No comparison results."

    rows = []
    for comp in results:
        for label, res in (("RULE", comp.rule), ("ML", comp.ml)):
            rows.append({
                "Symbol": comp.symbol,
                "Strategy": label,
                "P&L %": f"{res.total_return_pct:+,.2f}%",
                "B&H %": f"{res.buy_and_hold_return_pct:+,.2f}%",
                "Win Rate": f"{res.win_rate:.1f}%",
                "Sharpe": round(res.sharpe_ratio, 3),
                "MaxDD": f"{res.max_drawdown_pct:.1f}%",
                "Trades": res.total_trades,
            })

    best = max(results, key=lambda c: c.best.total_return_pct)
    lines = [
        "=" * 95,
        "MULTI-SYMBOL COMPARISON SUMMARY",
        "=" * 95,
        pd.DataFrame(rows).to_string(index=False),
        "-" * 95,
        f"🏆 Best performer: {best.symbol} ({best.winner}, {best.best.total_return_pct:+.2f}%)",
        "=" * 95,
    ]
    return "\n".join(lines)
