import math
import unittest
from datetime import timedelta

import numpy as np

from backtesting.config import MLConfig
from backtesting.core.errors import InsufficientTrainingData
from backtesting.core.features import FeatureVector
from backtesting.core.ml_model import (
    BUY, HOLD, FeatureStats, TrainablePredictor, WEIGHTED_FEATURES, direction_of,
)


def noise_samples(n, seed=0, label_scale=0.01):
    rng = np.random.default_rng(seed)
    return [
        FeatureVector(
            price_change_1=rng.normal(0, 0.01),
            price_change_5=rng.normal(0, 0.02),
            rsi=rng.uniform(20, 80),
            ema_spread=rng.normal(0, 0.005),
            macd_histogram=rng.normal(0, 0.1),
            atr=rng.uniform(0.5, 2.0),
            bollinger_position=rng.uniform(0, 1),
            volume_ratio=rng.uniform(0.5, 1.5),
            future_return=rng.uniform(-label_scale, label_scale),
        )
        for _ in range(n)
    ]


def signal_samples(n, seed=1):
    """future_return tracks the z-score of ema_spread."""
    rng = np.random.default_rng(seed)
    samples = []
    for _ in range(n):
        z = rng.normal()
        samples.append(FeatureVector(ema_spread=0.01 * z, future_return=0.05 * z))
    return samples


class TestTrainablePredictor(unittest.TestCase):
    def setUp(self):
        self.config = MLConfig(min_training_period=100, lookback_period=500)
        self.predictor = TrainablePredictor(self.config)

    def test_untrained_predicts_hold(self):
        result = self.predictor.predict(FeatureVector(rsi=30))
        self.assertEqual(result.direction, HOLD)
        self.assertEqual(result.confidence, 0.0)
        self.assertEqual(result.expected_return, 0.0)

    def test_train_with_too_few_samples_fails_cleanly(self):
        self.predictor.add_samples(noise_samples(50))
        with self.assertRaises(InsufficientTrainingData) as ctx:
            self.predictor.train()
        self.assertEqual(ctx.exception.available, 50)
        self.assertEqual(ctx.exception.required, 100)
        self.assertFalse(self.predictor.is_trained)
        self.assertEqual(self.predictor.weights, {})
        self.assertEqual(self.predictor.feature_stats, {})
        self.assertEqual(self.predictor.training_count, 0)

    def test_buffer_is_bounded(self):
        predictor = TrainablePredictor(MLConfig(lookback_period=10))
        samples = noise_samples(15)
        for s in samples:
            predictor.add_sample(s)
        self.assertEqual(predictor.sample_count, 10)

    def test_training_commits_state(self):
        self.predictor.add_samples(noise_samples(200))
        perf = self.predictor.train()
        self.assertTrue(self.predictor.is_trained)
        self.assertEqual(self.predictor.training_count, 1)
        self.assertIsNotNone(self.predictor.last_training)
        self.assertEqual(perf.training_samples, 160)
        self.assertEqual(perf.validation_samples, 40)
        self.assertEqual(set(self.predictor.weights), set(WEIGHTED_FEATURES) | {"bias"})
        self.assertNotIn("bollinger_width", self.predictor.weights)
        self.assertIn("bollinger_width", self.predictor.feature_stats)
        for w in self.predictor.weights.values():
            self.assertTrue(math.isfinite(w))
        self.assertTrue(0.0 <= perf.accuracy <= 1.0)

    def test_degenerate_split_is_corrected(self):
        self.predictor.add_samples(noise_samples(120))
        with self.assertLogs("backtesting.core.ml_model", level="WARNING"):
            perf = self.predictor.train(train_ratio=1.0)
        self.assertEqual(perf.training_samples, 96)
        self.assertEqual(perf.validation_samples, 24)

    def test_non_finite_inputs_never_reach_weights(self):
        samples = noise_samples(150)
        samples[10] = FeatureVector(rsi=float("inf"), atr=float("nan"), future_return=float("nan"))
        self.predictor.add_samples(samples)
        self.predictor.train()
        for w in self.predictor.weights.values():
            self.assertTrue(math.isfinite(w))
        for stats in self.predictor.feature_stats.values():
            self.assertTrue(all(math.isfinite(v) for v in (stats.mean, stats.std_dev, stats.min, stats.max)))

    def test_validation_loss_on_same_distribution(self):
        predictor = TrainablePredictor(MLConfig(min_training_period=100, initial_weights={}))
        predictor.add_samples(noise_samples(400, seed=3))
        perf = predictor.train()
        self.assertLess(perf.training_loss, 1e-4)
        self.assertLess(perf.validation_loss, 1e-4)

    def test_learns_direction_of_informative_feature(self):
        predictor = TrainablePredictor(MLConfig(min_training_period=100, initial_weights={}))
        predictor.add_samples(signal_samples(400))
        predictor.train()
        self.assertGreater(predictor.weights["ema_spread"], 0.01)

        up = predictor.predict(FeatureVector(ema_spread=0.03))
        down = predictor.predict(FeatureVector(ema_spread=-0.03))
        self.assertEqual(up.direction, BUY)
        self.assertEqual(down.direction, "SELL")
        self.assertTrue(0.0 < up.confidence <= 1.0)

    def test_should_retrain(self):
        self.assertFalse(self.predictor.should_retrain())
        self.predictor.add_samples(noise_samples(120))
        self.assertTrue(self.predictor.should_retrain())

        self.predictor.train()
        last = self.predictor.last_training
        self.assertFalse(self.predictor.should_retrain(now=last + timedelta(minutes=10)))
        self.assertTrue(self.predictor.should_retrain(now=last + timedelta(minutes=61)))
        self.assertFalse(self.predictor.should_retrain(timedelta(hours=2), now=last + timedelta(minutes=61)))

    def test_model_info(self):
        self.predictor.add_samples(noise_samples(150))
        self.predictor.train()
        info = self.predictor.get_model_info()
        self.assertEqual(info.training_count, 1)
        self.assertEqual(info.data_points, 150)
        self.assertEqual(info.feature_weights, self.predictor.weights)
        self.assertIn("performance", info.to_dict())
        self.assertIn("Accuracy", self.predictor.format_performance())


class TestNormalization(unittest.TestCase):
    def test_stats_need_ten_samples(self):
        self.assertEqual(TrainablePredictor.compute_stats(noise_samples(9)), {})
        self.assertEqual(len(TrainablePredictor.compute_stats(noise_samples(10))), 10)

    def test_population_std(self):
        stats = FeatureStats.from_values([2, 4, 4, 4, 5, 5, 7, 9])
        self.assertAlmostEqual(stats.mean, 5.0)
        self.assertAlmostEqual(stats.std_dev, 2.0)
        self.assertEqual((stats.min, stats.max), (2.0, 9.0))

    def test_zero_std_normalizes_to_zero(self):
        predictor = TrainablePredictor()
        flat = [FeatureVector(rsi=50.0) for _ in range(20)]
        stats = TrainablePredictor.compute_stats(flat)
        normalized = predictor.normalize(FeatureVector(rsi=80.0), stats)
        self.assertEqual(normalized["rsi"], 0.0)

    def test_direction_dead_zone(self):
        self.assertEqual(direction_of(0.0005, 0.001), 0)
        self.assertEqual(direction_of(0.002, 0.001), 1)
        self.assertEqual(direction_of(-0.002, 0.001), -1)


if __name__ == '__main__':
    unittest.main()
