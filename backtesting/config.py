#!/usr/bin/env python3
"""
⚙️ BACKTESTING CONFIGURATION
============================

Typed configuration for the simulation and learning engine.

Defaults live in `backtesting/config.json`; a few values can be overridden
from the environment (`.env` is loaded with python-dotenv):

    USE_ML_ANALYZE         true/1/yes -> model-based strategy
    LOG_LEVEL              console log level
    BACKTEST_FEE_RATE      fee fraction per side (0.001 = 0.1%)
    BACKTEST_INITIAL_CASH  starting cash
"""

import copy
import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

CONFIG_PATH = Path(__file__).resolve().parent / "config.json"

# Hand-tuned starting point carried over from the first version of the model.
# Weights missing here start at 0.0; an empty dict means a zero start.
DEFAULT_INITIAL_WEIGHTS: Dict[str, float] = {
    "price_change_1": 0.1,
    "price_change_5": 0.15,
    "price_change_10": 0.1,
    "rsi": 0.05,
    "ema_spread": 0.2,
    "macd_histogram": 0.15,
    "atr": -0.1,
    "bollinger_position": 0.1,
    "bias": 0.0,
}

INTERVAL_MINUTES = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "4h": 240,
    "1d": 1440,
}


def interval_to_minutes(interval: str) -> int:
    try:
        return INTERVAL_MINUTES[interval.strip().lower()]
    except KeyError:
        raise ValueError(f"unsupported interval: {interval}") from None


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None:
        return None
    return value.strip().lower() in ("true", "1", "yes")


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class MLConfig:
    """Predictor and training-driver settings."""

    lookback_period: int = 500        # max samples kept in the training buffer
    training_ratio: float = 0.8       # leading share of the buffer used for fitting
    min_training_period: int = 100    # samples required before train() is allowed
    retraining_period: int = 60       # minutes between retrains
    feature_window: int = 30          # first index with a feature vector
    label_horizon: int = 5            # bars ahead for future_return

    learning_rate: float = 1e-4
    epochs: int = 100
    l2_lambda: float = 1e-4
    early_stop_loss: float = 1e-4
    direction_threshold: float = 0.001  # dead zone for up/down vs flat
    confidence_scale: float = 100.0

    initial_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_INITIAL_WEIGHTS))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MLConfig":
        return cls(**_known(cls, data))


@dataclass
class BacktestConfig:
    """Simulation settings plus the strategy selector."""

    symbol: str = "BTCUSDT"
    initial_cash: float = 10000.0
    fee_rate: float = 0.001
    warmup_bars: int = 26
    interval: str = "15m"

    strategy_mode: str = "rule"       # "rule" or "ml"
    macd_compare: str = "histogram"   # "histogram" or "signal"
    max_workers: int = 4

    ml: MLConfig = field(default_factory=MLConfig)
    logging: Dict[str, Any] = field(default_factory=dict)

    @property
    def use_ml(self) -> bool:
        return self.strategy_mode == "ml"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BacktestConfig":
        bt = data.get("backtesting", {})
        strategy = data.get("strategy", {})
        cfg = cls(**_known(cls, bt))
        cfg.strategy_mode = strategy.get("mode", cfg.strategy_mode)
        cfg.macd_compare = strategy.get("macd_compare", cfg.macd_compare)
        cfg.max_workers = data.get("compare", {}).get("max_workers", cfg.max_workers)
        cfg.ml = MLConfig.from_dict(data.get("ml", {}))
        cfg.logging = copy.deepcopy(data.get("logging", {}))
        return cfg


def load_raw_config(path: Optional[str] = None) -> Dict[str, Any]:
    with open(path or CONFIG_PATH, "r") as f:
        return json.load(f)


def load_config(path: Optional[str] = None, use_env: bool = True) -> BacktestConfig:
    """
    Reads the JSON defaults and applies environment overrides.
    """
    data = load_raw_config(path)
    cfg = BacktestConfig.from_dict(data)

    if use_env:
        load_dotenv()
        use_ml = _env_flag("USE_ML_ANALYZE")
        if use_ml:
            cfg.strategy_mode = "ml"
        if os.getenv("BACKTEST_FEE_RATE"):
            cfg.fee_rate = float(os.environ["BACKTEST_FEE_RATE"])
        if os.getenv("BACKTEST_INITIAL_CASH"):
            cfg.initial_cash = float(os.environ["BACKTEST_INITIAL_CASH"])
        if os.getenv("LOG_LEVEL"):
            cfg.logging.setdefault("console", {})["level"] = os.environ["LOG_LEVEL"].upper()

    return cfg
