import json

import pytest

from backtesting.config import (
    DEFAULT_INITIAL_WEIGHTS,
    BacktestConfig,
    MLConfig,
    interval_to_minutes,
    load_config,
)

ENV_VARS = ("USE_ML_ANALYZE", "BACKTEST_FEE_RATE", "BACKTEST_INITIAL_CASH", "LOG_LEVEL")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # keep load_dotenv away from any .env in the working tree
    monkeypatch.chdir(tmp_path)


class TestLoadConfig:

    def test_defaults(self):
        cfg = load_config(use_env=False)
        assert cfg.symbol == "BTCUSDT"
        assert cfg.initial_cash == 10000.0
        assert cfg.fee_rate == 0.001
        assert cfg.warmup_bars == 26
        assert cfg.strategy_mode == "rule"
        assert not cfg.use_ml
        assert cfg.ml.min_training_period == 100
        assert cfg.ml.lookback_period == 500
        assert cfg.ml.initial_weights == DEFAULT_INITIAL_WEIGHTS

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("USE_ML_ANALYZE", "true")
        monkeypatch.setenv("BACKTEST_FEE_RATE", "0.002")
        monkeypatch.setenv("BACKTEST_INITIAL_CASH", "5000")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        cfg = load_config()
        assert cfg.use_ml
        assert cfg.fee_rate == 0.002
        assert cfg.initial_cash == 5000.0
        assert cfg.logging["console"]["level"] == "DEBUG"

    def test_false_flag_keeps_rule(self, monkeypatch):
        monkeypatch.setenv("USE_ML_ANALYZE", "no")
        assert load_config().strategy_mode == "rule"

    def test_custom_file(self, tmp_path):
        path = tmp_path / "custom.json"
        path.write_text(json.dumps({
            "backtesting": {"symbol": "ETHUSDT", "initial_cash": 500.0, "unknown": 1},
            "strategy": {"mode": "ml", "macd_compare": "signal"},
            "ml": {"epochs": 5, "initial_weights": {}},
            "compare": {"max_workers": 2},
        }))
        cfg = load_config(str(path), use_env=False)
        assert cfg.symbol == "ETHUSDT"
        assert cfg.initial_cash == 500.0
        assert cfg.use_ml
        assert cfg.macd_compare == "signal"
        assert cfg.max_workers == 2
        assert cfg.ml.epochs == 5
        assert cfg.ml.initial_weights == {}
        assert cfg.logging == {}


class TestDataclasses:

    def test_from_dict_ignores_unknown_keys(self):
        cfg = MLConfig.from_dict({"epochs": 7, "optimizer": "adam"})
        assert cfg.epochs == 7
        assert cfg.learning_rate == 1e-4

    def test_default_weights_not_shared(self):
        a, b = MLConfig(), MLConfig()
        a.initial_weights["rsi"] = 9.0
        assert b.initial_weights["rsi"] == DEFAULT_INITIAL_WEIGHTS["rsi"]

    def test_backtest_defaults(self):
        cfg = BacktestConfig()
        assert cfg.macd_compare == "histogram"
        assert isinstance(cfg.ml, MLConfig)


class TestIntervals:

    @pytest.mark.parametrize("interval,minutes", [("1m", 1), ("15m", 15), ("1H", 60), ("4h", 240), ("1d", 1440)])
    def test_known(self, interval, minutes):
        assert interval_to_minutes(interval) == minutes

    def test_unknown(self):
        with pytest.raises(ValueError):
            interval_to_minutes("7m")
