import logging
from typing import Dict, Any, Optional

from backtesting.core.features import FeatureExtractor
from backtesting.core.ml_model import TrainablePredictor, BUY, SELL
from backtesting.core.strategy_interface import StrategyInterface, Signal, SignalSide
from backtesting.data.schema import TimeSeries

logger = logging.getLogger("backtesting.strategies.model_based")

_SIDES = {BUY: SignalSide.BUY, SELL: SignalSide.SELL}


class ModelBasedStrategy(StrategyInterface):
    """Maps the predictor's direction for the current bar's features straight to a signal."""

    name = "ml"

    def __init__(self, predictor: TrainablePredictor, extractor: Optional[FeatureExtractor] = None):
        super().__init__()
        self.predictor = predictor
        self.extractor = extractor or FeatureExtractor(predictor.config.feature_window)
        self.params: Dict[str, Any] = {}

    def setup(self, params: Dict[str, Any]):
        if "feature_window" in params:
            self.extractor = FeatureExtractor(params["feature_window"])
        self.params = params
        self.last_indicators = {}

    def get_params(self) -> Dict[str, Any]:
        return {"feature_window": self.extractor.window_size, **self.params}

    def on_bar(self, series: TimeSeries, index: int, portfolio_context: Dict[str, Any]) -> Signal:
        features = self.extractor.extract(series, index)
        if features is None:
            return Signal(SignalSide.WAIT, tag="insufficient_data")

        prediction = self.predictor.predict(features)
        self.last_indicators = {
            "rsi": features.rsi,
            "ema_spread": features.ema_spread,
            "macd_histogram": features.macd_histogram,
            "expected_return": prediction.expected_return,
            "confidence": prediction.confidence,
        }

        side = _SIDES.get(prediction.direction, SignalSide.HOLD)
        if side != SignalSide.HOLD:
            logger.debug(
                f"[ML] {side.value} at {index} | expected {prediction.expected_return:+.5f} | "
                f"confidence {prediction.confidence:.2f}"
            )
        return Signal(side, confidence=prediction.confidence, tag="ml", metadata=prediction.to_dict())
