class BacktestingError(Exception):
    """Base class for errors raised by the backtesting core."""


class InsufficientTrainingData(BacktestingError):
    """Raised by `TrainablePredictor.train` when the sample buffer is below the configured minimum."""

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"insufficient training data: {available}, need at least {required}")
