from typing import Any, Dict, Optional

from backtesting.config import MLConfig
from backtesting.core.ml_model import TrainablePredictor
from backtesting.core.strategy_interface import StrategyInterface
from backtesting.strategies.model_based import ModelBasedStrategy
from backtesting.strategies.rule_based import RuleBasedStrategy

STRATEGY_MODES = ("rule", "ml")


def build_strategy(mode: str, predictor: Optional[TrainablePredictor] = None,
                   params: Optional[Dict[str, Any]] = None,
                   ml_config: Optional[MLConfig] = None) -> StrategyInterface:
    """
    Selects the strategy for a run. "ml" uses `predictor` when given, else a
    fresh (untrained, always HOLD) predictor built from `ml_config`.
    """
    mode = (mode or "rule").lower()
    if mode == "rule":
        strategy: StrategyInterface = RuleBasedStrategy()
    elif mode == "ml":
        strategy = ModelBasedStrategy(predictor or TrainablePredictor(ml_config or MLConfig()))
    else:
        raise ValueError(f"Unknown strategy mode '{mode}' (expected one of {STRATEGY_MODES})")
    strategy.setup(params or {})
    return strategy


__all__ = ["build_strategy", "RuleBasedStrategy", "ModelBasedStrategy", "STRATEGY_MODES"]
