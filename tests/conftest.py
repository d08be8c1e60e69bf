#!/usr/bin/env python3
"""
🧪 PYTEST CONFIGURATION & FIXTURES
===================================

Shared fixtures for the unit and integration suites.
"""

import logging

import pytest

from backtesting.config import BacktestConfig
from tests.factories import make_series, random_walk, fast_ml_config


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running tests")
    config.addinivalue_line("markers", "integration: end-to-end engine tests")
    config.addinivalue_line("markers", "indicators: indicator engine tests")
    config.addinivalue_line("markers", "ml: predictor and training tests")
    config.addinivalue_line("markers", "backtest: portfolio and backtester tests")


@pytest.fixture(autouse=True)
def _quiet_engine_logs():
    logging.getLogger("backtesting").setLevel(logging.WARNING)
    yield
    logging.getLogger("backtesting").setLevel(logging.NOTSET)


@pytest.fixture
def series_factory():
    return make_series


@pytest.fixture
def walk_series():
    return random_walk(400)


@pytest.fixture
def rising_series():
    return make_series([100.0 + i for i in range(200)], symbol="RISE")


@pytest.fixture
def flat_series():
    return make_series([50.0] * 30, symbol="FLAT", spread=0.0)


@pytest.fixture
def ml_config():
    return fast_ml_config()


@pytest.fixture
def bt_config(ml_config):
    cfg = BacktestConfig(symbol="WALK", initial_cash=10000.0, fee_rate=0.001)
    cfg.ml = ml_config
    return cfg
