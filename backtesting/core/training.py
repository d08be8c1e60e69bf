"""
Training driver: turns a series into labelled feature vectors and feeds
them to a TrainablePredictor (train mode), or scores a predictor on a
hold-out tail (test mode).
"""
import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from backtesting.config import MLConfig
from backtesting.core.features import FeatureExtractor, FeatureVector
from backtesting.core.ml_model import BUY, SELL, ModelPerformance, TrainablePredictor, direction_of
from backtesting.data.schema import TimeSeries

logger = logging.getLogger("backtesting.core.training")

HOLDOUT_RATIO = 0.7


@dataclass(frozen=True)
class HoldoutReport:
    train_samples: int
    test_samples: int
    direction_accuracy: float   # %
    strategy_return: float      # sum of captured forward returns
    buy_and_hold_return: float  # sum of all forward returns
    alpha_pct: Optional[float]  # None when buy & hold sums to 0
    performance: ModelPerformance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "train_samples": self.train_samples,
            "test_samples": self.test_samples,
            "direction_accuracy": self.direction_accuracy,
            "strategy_return": self.strategy_return,
            "buy_and_hold_return": self.buy_and_hold_return,
            "alpha_pct": self.alpha_pct,
            "performance": self.performance.to_dict(),
        }


def build_dataset(series: TimeSeries, extractor: FeatureExtractor, start: Optional[int] = None,
                  stop: Optional[int] = None, horizon: int = 5) -> List[FeatureVector]:
    """
    Labelled vectors for indices in [start, stop). Defaults cover every
    index with both enough history and an existing horizon bar.
    """
    start = extractor.window_size if start is None else max(start, extractor.window_size)
    stop = len(series) - horizon if stop is None else min(stop, len(series))

    samples = []
    for i in range(start, stop):
        features = extractor.extract(series, i)
        if features is None:
            continue
        samples.append(features.with_future_return(FeatureExtractor.label(series, i, horizon)))

    logger.info(f"[DATASET] {series.symbol}: {len(samples)} labelled samples from indices {start}..{stop - 1}")
    return samples


def train_on_series(series: TimeSeries, config: Optional[MLConfig] = None,
                    predictor: Optional[TrainablePredictor] = None,
                    stop: Optional[int] = None) -> TrainablePredictor:
    """
    Fills the predictor's buffer from `series` (up to `stop`) and trains it.
    InsufficientTrainingData propagates to the caller.
    """
    predictor = predictor or TrainablePredictor(config or MLConfig())
    cfg = predictor.config
    extractor = FeatureExtractor(cfg.feature_window)
    predictor.add_samples(build_dataset(series, extractor, stop=stop, horizon=cfg.label_horizon))
    predictor.train()
    return predictor


def replay_split(length: int, horizon: int = 5, warmup: int = 0) -> Tuple[int, int]:
    """
    (train_stop, replay_start) for training on the head of a series and
    replaying the rest. Replay starts at the midpoint; training labels stop
    `horizon` bars earlier so none of them reads a bar the replay trades on.
    """
    start = max(length // 2, warmup)
    return max(start - horizon, 0), start


def train_for_replay(series: TimeSeries, config: Optional[MLConfig] = None,
                     warmup: int = 0) -> Tuple[TrainablePredictor, int]:
    """Trains on the head of `series`; returns the predictor and the first out-of-sample index."""
    cfg = config or MLConfig()
    train_stop, start = replay_split(len(series), cfg.label_horizon, warmup)
    logger.info(f"[ML TRAIN] {series.symbol}: training on indices < {train_stop}, replay from {start}")
    return train_on_series(series, cfg, stop=train_stop), start


def evaluate_holdout(series: TimeSeries, config: Optional[MLConfig] = None,
                     ratio: float = HOLDOUT_RATIO) -> HoldoutReport:
    """
    Trains on the leading `ratio` of the labelled samples and scores
    directional calls on the rest. The strategy return adds the forward
    return of every correct BUY and the magnitude of every correct SELL.
    """
    cfg = replace(config or MLConfig(), training_ratio=ratio)
    samples = build_dataset(series, FeatureExtractor(cfg.feature_window), horizon=cfg.label_horizon)

    train_size = int(len(samples) * ratio)
    train_data, test_data = samples[:train_size], samples[train_size:]
    logger.info(f"[ML TEST] Training on {len(train_data)} samples, testing on {len(test_data)} samples")

    predictor = TrainablePredictor(cfg)
    predictor.add_samples(train_data)
    performance = predictor.train()

    correct = 0
    strategy_return = 0.0
    total_return = 0.0
    for sample in test_data:
        prediction = predictor.predict(sample)
        actual = direction_of(sample.future_return, cfg.direction_threshold)
        predicted = {BUY: 1, SELL: -1}.get(prediction.direction, 0)
        if predicted == actual:
            correct += 1

        if prediction.direction == BUY and sample.future_return > 0:
            strategy_return += sample.future_return
        elif prediction.direction == SELL and sample.future_return < 0:
            strategy_return -= sample.future_return
        total_return += sample.future_return

    accuracy = correct / len(test_data) * 100 if test_data else 0.0
    alpha = None
    if total_return != 0 and math.isfinite(total_return):
        alpha = (strategy_return - total_return) / abs(total_return) * 100

    report = HoldoutReport(
        train_samples=len(train_data),
        test_samples=len(test_data),
        direction_accuracy=accuracy,
        strategy_return=strategy_return,
        buy_and_hold_return=total_return,
        alpha_pct=alpha,
        performance=performance,
    )
    logger.info(
        f"[ML TEST] Direction accuracy {accuracy:.2f}% | Strategy {strategy_return:.4f} | "
        f"Buy & Hold {total_return:.4f}"
    )
    return report


def format_holdout(report: HoldoutReport) -> str:
    bar = "=" * 60
    lines = [
        bar,
        "                   TEST RESULTS",
        bar,
        f"🎯 Direction Accuracy:    {report.direction_accuracy:.2f}%",
        f"📊 Test Samples:          {report.test_samples}",
        f"💰 ML Strategy Returns:   {report.strategy_return:.4f}",
        f"💹 Buy & Hold Returns:    {report.buy_and_hold_return:.4f}",
    ]
    if report.alpha_pct is not None:
        lines.append(f"🚀 Alpha vs Buy & Hold:  {report.alpha_pct:.2f}%")
    lines.append(bar)
    return "\n".join(lines)
