#!/usr/bin/env python3
"""
🚀 SIGNAL BACKTESTER - CLI
=========================

Runs the simulation and learning engine over OHLCV CSV files.

Usage:
    python -m backtesting.main backtest data/BTCUSDT.csv            # rule-based backtest
    python -m backtesting.main backtest data/BTCUSDT.csv --ml       # model-based backtest
    python -m backtesting.main train data/BTCUSDT.csv               # train and report the model
    python -m backtesting.main test data/BTCUSDT.csv                # hold-out evaluation
    python -m backtesting.main compare data/BTCUSDT.csv data/ETHUSDT.csv
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from backtesting.analytics.metrics import format_report
from backtesting.compare_strategies import batch_compare, compare_strategies, format_batch_summary, format_comparison
from backtesting.config import BacktestConfig, load_config
from backtesting.core.backtester import BacktestEngine
from backtesting.core.errors import InsufficientTrainingData
from backtesting.core.logger import AuditTrail, setup_logging
from backtesting.core.training import evaluate_holdout, format_holdout, train_for_replay, train_on_series
from backtesting.data.loader import DataLoader
from backtesting.data.schema import TimeSeries
from backtesting.strategies import build_strategy

logger = logging.getLogger("backtesting.main")


def _symbol_for(path: str, explicit: Optional[str]) -> str:
    return explicit or Path(path).stem.upper()


def _load(config: BacktestConfig, path: str, symbol: Optional[str] = None) -> TimeSeries:
    return DataLoader(config.interval).load_csv(path, _symbol_for(path, symbol))


def cmd_backtest(config: BacktestConfig, args, ts: str) -> int:
    series = _load(config, args.files[0], args.symbol)
    predictor = None
    start = None
    if config.use_ml:
        # model learns from the first half, the backtest replays only the second
        predictor, start = train_for_replay(series, config.ml, warmup=config.warmup_bars)
    strategy = build_strategy(
        config.strategy_mode,
        predictor=predictor,
        params={"macd_compare": config.macd_compare} if not config.use_ml else {},
        ml_config=config.ml,
    )
    audit = AuditTrail(config.logging, ts, symbol=series.symbol, strategy=config.strategy_mode)
    result = BacktestEngine(config, series.symbol, audit=audit).run(series, strategy, start_index=start)
    print(format_report(result))
    return 0


def cmd_train(config: BacktestConfig, args, ts: str) -> int:
    series = _load(config, args.files[0], args.symbol)
    predictor = train_on_series(series, config.ml)
    print(predictor.format_performance())
    info = predictor.get_model_info()
    print(f"\n💾 Model training completed: {info.data_points} data points, "
          f"accuracy {info.performance.accuracy * 100:.2f}%, F1 {info.performance.f1_score:.3f}")
    return 0


def cmd_test(config: BacktestConfig, args, ts: str) -> int:
    series = _load(config, args.files[0], args.symbol)
    report = evaluate_holdout(series, config.ml, ratio=args.ratio)
    print(format_holdout(report))
    return 0


def cmd_compare(config: BacktestConfig, args, ts: str) -> int:
    if len(args.files) == 1:
        print(format_comparison(compare_strategies(_load(config, args.files[0], args.symbol), config)))
        return 0

    series_by_symbol = {}
    for path in args.files:
        series = _load(config, path)
        if len(series):
            series_by_symbol[series.symbol] = series
    results = batch_compare(series_by_symbol, config, parallel=not args.sequential, max_workers=args.workers)
    for comp in results:
        print(format_comparison(comp))
    print(format_batch_summary(results))
    return 0


COMMANDS = {
    "backtest": cmd_backtest,
    "train": cmd_train,
    "test": cmd_test,
    "compare": cmd_compare,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="🔙 Signal Backtester - rule-based and model-based strategies over OHLCV CSV files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("command", choices=sorted(COMMANDS), help="Operation mode")
    parser.add_argument("files", nargs="+", help="OHLCV CSV file(s)")
    parser.add_argument("--config", type=str, help="Path to config.json")
    parser.add_argument("--symbol", type=str, help="Symbol name (default: file name)")
    parser.add_argument("--ml", action="store_true", help="Use the model-based strategy")
    parser.add_argument("--interval", type=str, help="Bar interval (1m/5m/15m/30m/1h/4h/1d)")
    parser.add_argument("--capital", type=float, help="Initial cash")
    parser.add_argument("--fee", type=float, help="Fee rate per side (0.001 = 0.1%%)")
    parser.add_argument("--lookback", type=int, help="Training buffer size")
    parser.add_argument("--mintrain", type=int, help="Minimum training samples")
    parser.add_argument("--ratio", type=float, default=0.7, help="Train share for the test command")
    parser.add_argument("--workers", type=int, help="Worker processes for batch compare")
    parser.add_argument("--sequential", action="store_true", help="Run batch compare in-process")
    return parser


def apply_overrides(config: BacktestConfig, args) -> BacktestConfig:
    if args.ml:
        config.strategy_mode = "ml"
    if args.interval:
        config.interval = args.interval
    if args.capital:
        config.initial_cash = args.capital
    if args.fee is not None:
        config.fee_rate = args.fee
    if args.lookback:
        config.ml.lookback_period = args.lookback
    if args.mintrain:
        config.ml.min_training_period = args.mintrain
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = apply_overrides(load_config(args.config), args)
    ts = setup_logging(config.logging)

    start_time = datetime.now()
    logger.info(f"🤖 Mode: {args.command.upper()} | Strategy: {config.strategy_mode} | Files: {len(args.files)}")
    try:
        code = COMMANDS[args.command](config, args, ts)
    except InsufficientTrainingData as exc:
        logger.error(f"❌ Training failed: {exc}")
        return 1
    logger.info(f"⏱️ Elapsed Time: {datetime.now() - start_time}")
    return code


if __name__ == "__main__":
    sys.exit(main())
