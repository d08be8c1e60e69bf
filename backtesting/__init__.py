#!/usr/bin/env python3
"""
🔙 SIGNAL BACKTESTER
====================

Simulation and learning engine for single-asset, long-only strategies.

Modules:
- data: bars, time series and the CSV/DataFrame loader
- core.indicators: causal, cached technical indicators
- core.features: per-bar feature vectors and training labels
- core.ml_model: trainable linear predictor
- core.training: dataset building, training and hold-out evaluation
- strategies: rule-based and model-based signal generators
- core.backtester / core.portfolio: bar-by-bar simulation with fees
- analytics.metrics: performance statistics and reports
- compare_strategies: rule vs model, single symbol or batch
"""

__version__ = "1.0.0"
