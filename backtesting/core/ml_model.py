import logging
import math
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Sequence

import numpy as np

from backtesting.config import MLConfig
from backtesting.core.errors import InsufficientTrainingData
from backtesting.core.features import FeatureVector

logger = logging.getLogger("backtesting.core.ml_model")

# Features that are z-score normalized before scoring.
NORMALIZED_FEATURES = (
    "price_change_1",
    "price_change_5",
    "price_change_10",
    "rsi",
    "ema_spread",
    "macd_histogram",
    "atr",
    "bollinger_width",
    "bollinger_position",
    "volume_ratio",
)

# Features that carry a weight in the linear score. bollinger_width is
# normalized but deliberately left out of the score.
WEIGHTED_FEATURES = (
    "price_change_1",
    "price_change_5",
    "price_change_10",
    "rsi",
    "ema_spread",
    "macd_histogram",
    "atr",
    "bollinger_position",
    "volume_ratio",
)

BIAS = "bias"
MIN_STATS_SAMPLES = 10

BUY = "BUY"
SELL = "SELL"
HOLD = "HOLD"


@dataclass(frozen=True)
class FeatureStats:
    mean: float = 0.0
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0

    @classmethod
    def from_values(cls, values: Sequence[float]) -> "FeatureStats":
        if len(values) == 0:
            return cls()
        arr = np.asarray(values, dtype=float)
        arr = arr[np.isfinite(arr)]
        if len(arr) == 0:
            return cls()
        return cls(
            mean=float(arr.mean()),
            std_dev=float(arr.std()),  # population
            min=float(arr.min()),
            max=float(arr.max()),
        )


@dataclass
class ModelPerformance:
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    training_loss: float = 0.0
    validation_loss: float = 0.0
    training_samples: int = 0
    validation_samples: int = 0
    epochs_run: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PredictionResult:
    direction: str          # BUY / SELL / HOLD
    confidence: float       # 0.0 .. 1.0
    expected_return: float
    features: Optional[FeatureVector] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction,
            "confidence": self.confidence,
            "expected_return": self.expected_return,
        }


@dataclass(frozen=True)
class ModelInfo:
    training_count: int
    data_points: int
    last_training: Optional[datetime]
    performance: ModelPerformance
    feature_weights: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "training_count": self.training_count,
            "data_points": self.data_points,
            "last_training": self.last_training.strftime("%Y-%m-%d %H:%M:%S") if self.last_training else None,
            "performance": self.performance.to_dict(),
            "feature_weights": dict(self.feature_weights),
        }


def direction_of(value: float, threshold: float) -> int:
    """1 = up, -1 = down, 0 = inside the dead zone."""
    if value > threshold:
        return 1
    if value < -threshold:
        return -1
    return 0


class TrainablePredictor:
    """
    Linear return predictor trained with L2-regularized gradient descent.

    Untrained until the first successful `train()`; `predict()` then scores
    z-score-normalized features with the learned weights. The sample buffer
    is a sliding window of at most `lookback_period` labelled vectors.
    Mutations (`add_sample`, `train`) and reads share one lock.
    """

    def __init__(self, config: Optional[MLConfig] = None):
        self.config = config or MLConfig()
        self._samples: Deque[FeatureVector] = deque(maxlen=max(1, self.config.lookback_period))
        self._weights: Dict[str, float] = {}
        self._stats: Dict[str, FeatureStats] = {}
        self.training_count = 0
        self.last_training: Optional[datetime] = None
        self.performance = ModelPerformance()
        self._lock = threading.RLock()

    # --- state ------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return bool(self._weights)

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def weights(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._weights)

    @property
    def feature_stats(self) -> Dict[str, FeatureStats]:
        with self._lock:
            return dict(self._stats)

    def add_sample(self, features: FeatureVector):
        with self._lock:
            # FeatureVector sanitizes on construction; oldest sample drops on overflow
            self._samples.append(features)

    def add_samples(self, samples: Sequence[FeatureVector]):
        with self._lock:
            for sample in samples:
                self._samples.append(sample)

    # --- normalization ----------------------------------------------------

    @staticmethod
    def compute_stats(samples: Sequence[FeatureVector]) -> Dict[str, FeatureStats]:
        if len(samples) < MIN_STATS_SAMPLES:
            return {}
        return {
            name: FeatureStats.from_values([s.get(name) for s in samples])
            for name in NORMALIZED_FEATURES
        }

    def _ensure_stats(self):
        if not self._stats:
            self._stats = self.compute_stats(list(self._samples))

    @staticmethod
    def _normalize(value: float, stats: Optional[FeatureStats]) -> float:
        if stats is None or stats.std_dev == 0 or not math.isfinite(value):
            return 0.0
        z = (value - stats.mean) / stats.std_dev
        return z if math.isfinite(z) else 0.0

    def normalize(self, features: FeatureVector, stats: Optional[Dict[str, FeatureStats]] = None) -> Dict[str, float]:
        """z-scores of the normalized features; statistics are built on demand."""
        with self._lock:
            if stats is None:
                self._ensure_stats()
                stats = self._stats
            return {name: self._normalize(features.get(name), stats.get(name)) for name in NORMALIZED_FEATURES}

    @staticmethod
    def _score(weights: Dict[str, float], normalized: Dict[str, float]) -> float:
        score = weights.get(BIAS, 0.0)
        for name in WEIGHTED_FEATURES:
            score += weights.get(name, 0.0) * normalized.get(name, 0.0)
        return score

    # --- training ---------------------------------------------------------

    def _split(self, n: int, train_ratio: float) -> int:
        train_size = int(n * train_ratio)
        if train_size <= 0 or train_size >= n:
            corrected = int(n * 0.8)
            if corrected <= 0:
                corrected = n - 1
            logger.warning(
                f"[ML TRAIN] Degenerate split (ratio={train_ratio}, samples={n}), using {corrected} training samples"
            )
            train_size = corrected
        return train_size

    def _initial_weights(self) -> Dict[str, float]:
        weights = {name: 0.0 for name in WEIGHTED_FEATURES}
        weights[BIAS] = 0.0
        for name, value in self.config.initial_weights.items():
            if name in weights and math.isfinite(value):
                weights[name] = float(value)
        return weights

    def train(self, train_ratio: Optional[float] = None) -> ModelPerformance:
        """
        Fits the weights on the leading slice of the buffer and scores the
        trailing slice. Raises InsufficientTrainingData without touching any
        state when the buffer is below `min_training_period`.
        """
        with self._lock:
            samples = list(self._samples)
            required = max(self.config.min_training_period, 2)
            if len(samples) < required:
                raise InsufficientTrainingData(len(samples), required)

            ratio = self.config.training_ratio if train_ratio is None else train_ratio
            logger.info(f"[ML TRAIN] Training with {len(samples)} samples (ratio={ratio})")

            stats = self.compute_stats(samples)
            train_size = self._split(len(samples), ratio)
            train_data = samples[:train_size]
            validation_data = samples[train_size:]

            weights = self._initial_weights()
            performance = ModelPerformance(
                training_samples=len(train_data),
                validation_samples=len(validation_data),
            )
            self._fit(weights, train_data, stats, performance)
            self._evaluate(weights, validation_data, stats, performance)

            # commit only after a full, successful pass
            self._weights = weights
            self._stats = stats
            self.performance = performance
            self.last_training = datetime.now()
            self.training_count += 1

            logger.info(
                f"[ML TRAIN] Completed #{self.training_count} | Accuracy: {performance.accuracy * 100:.2f}% | "
                f"F1: {performance.f1_score:.3f} | Train loss: {performance.training_loss:.6f} | "
                f"Val loss: {performance.validation_loss:.6f}"
            )
            return performance

    def _fit(self, weights: Dict[str, float], train_data: List[FeatureVector],
             stats: Dict[str, FeatureStats], performance: ModelPerformance):
        cfg = self.config
        lr = cfg.learning_rate
        normalized_rows = [
            {name: self._normalize(s.get(name), stats.get(name)) for name in NORMALIZED_FEATURES}
            for s in train_data
        ]

        for epoch in range(cfg.epochs):
            total_error = 0.0
            for sample, normalized in zip(train_data, normalized_rows):
                prediction = self._score(weights, normalized)
                error = sample.future_return - prediction
                if not math.isfinite(error):
                    continue
                error = max(-1.0, min(1.0, error))  # gradient clipping
                total_error += error * error

                for name in WEIGHTED_FEATURES:
                    updated = weights[name] + lr * error * normalized[name]
                    if math.isfinite(updated):
                        weights[name] = updated
                weights[BIAS] += lr * error

            # L2 weight decay, once per epoch, bias excluded
            reg = 0.0
            for name in WEIGHTED_FEATURES:
                w = weights[name]
                reg += w * w
                decayed = w - lr * cfg.l2_lambda * w
                if math.isfinite(decayed):
                    weights[name] = decayed

            performance.epochs_run = epoch + 1
            if train_data:
                performance.training_loss = total_error / len(train_data) + cfg.l2_lambda * reg

            if performance.training_loss < cfg.early_stop_loss:
                logger.debug(f"[ML TRAIN] Early stop at epoch {epoch + 1} (loss={performance.training_loss:.6f})")
                break

    def _evaluate(self, weights: Dict[str, float], validation_data: List[FeatureVector],
                  stats: Dict[str, FeatureStats], performance: ModelPerformance):
        if not validation_data:
            return
        threshold = self.config.direction_threshold

        correct = 0
        total_error = 0.0
        true_pos = false_pos = false_neg = 0

        for sample in validation_data:
            normalized = {name: self._normalize(sample.get(name), stats.get(name)) for name in NORMALIZED_FEATURES}
            prediction = self._score(weights, normalized)
            error = sample.future_return - prediction
            total_error += error * error

            predicted = direction_of(prediction, threshold)
            actual = direction_of(sample.future_return, threshold)
            if predicted == actual:
                correct += 1

            if predicted == 1:
                if actual == 1:
                    true_pos += 1
                else:
                    false_pos += 1
            elif actual == 1:
                false_neg += 1

        performance.validation_loss = total_error / len(validation_data)
        performance.accuracy = correct / len(validation_data)
        if true_pos + false_pos > 0:
            performance.precision = true_pos / (true_pos + false_pos)
        if true_pos + false_neg > 0:
            performance.recall = true_pos / (true_pos + false_neg)
        if performance.precision + performance.recall > 0:
            performance.f1_score = (
                2 * performance.precision * performance.recall / (performance.precision + performance.recall)
            )

    # --- inference --------------------------------------------------------

    def predict_value(self, features: FeatureVector) -> float:
        with self._lock:
            if not self._weights:
                return 0.0
            return self._score(self._weights, self.normalize(features))

    def predict(self, features: FeatureVector) -> PredictionResult:
        with self._lock:
            if not self._weights:
                return PredictionResult(direction=HOLD, confidence=0.0, expected_return=0.0, features=features)

            expected = self.predict_value(features)
            if not math.isfinite(expected):
                expected = 0.0

        cfg = self.config
        direction = HOLD
        confidence = 0.0
        move = direction_of(expected, cfg.direction_threshold)
        if move != 0:
            direction = BUY if move == 1 else SELL
            confidence = min(abs(expected) * cfg.confidence_scale, 1.0)

        return PredictionResult(direction=direction, confidence=confidence, expected_return=expected, features=features)

    def should_retrain(self, retrain_interval: Optional[timedelta] = None, now: Optional[datetime] = None) -> bool:
        with self._lock:
            enough = len(self._samples) >= self.config.min_training_period
            if not self._weights:
                return enough
            interval = retrain_interval or timedelta(minutes=self.config.retraining_period)
            elapsed = (now or datetime.now()) - self.last_training
            return elapsed > interval and enough

    # --- reporting --------------------------------------------------------

    def get_model_info(self) -> ModelInfo:
        with self._lock:
            return ModelInfo(
                training_count=self.training_count,
                data_points=len(self._samples),
                last_training=self.last_training,
                performance=ModelPerformance(**self.performance.to_dict()),
                feature_weights=dict(self._weights),
            )

    def format_performance(self) -> str:
        info = self.get_model_info()
        perf = info.performance
        last = info.last_training.strftime("%Y-%m-%d %H:%M:%S") if info.last_training else "never"
        lines = [
            "=" * 60,
            "              ML MODEL PERFORMANCE",
            "=" * 60,
            "🤖 Model Status:",
            f"   Training Count:       {info.training_count}",
            f"   Data Points:          {info.data_points}",
            f"   Last Training:        {last}",
            "",
            "📊 Performance Metrics:",
            f"   Accuracy:             {perf.accuracy * 100:.2f}%",
            f"   Precision:            {perf.precision:.3f}",
            f"   Recall:               {perf.recall:.3f}",
            f"   F1-Score:             {perf.f1_score:.3f}",
            f"   Training Loss:        {perf.training_loss:.6f}",
            f"   Validation Loss:      {perf.validation_loss:.6f}",
            "",
            "🎯 Feature Weights:",
        ]
        for name, weight in sorted(info.feature_weights.items(), key=lambda kv: abs(kv[1]), reverse=True):
            lines.append(f"   {name:<18}: {weight:+.4f}")
        lines.append("=" * 60)
        return "\n".join(lines)
