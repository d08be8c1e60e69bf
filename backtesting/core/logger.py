import logging
import os
import json
from datetime import datetime
from typing import Dict, Any, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from backtesting.analytics.metrics import BacktestResult
    from backtesting.core.schema import ExecutionResult, Trade
    from backtesting.core.strategy_interface import Signal
    from backtesting.data.schema import Bar

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

RESET = "\x1b[0m"
LEVEL_COLORS = {
    logging.DEBUG: "\x1b[38;20m",     # grey
    logging.INFO: "\x1b[32;20m",      # green
    logging.WARNING: "\x1b[33;20m",   # yellow
    logging.ERROR: "\x1b[31;20m",     # red
    logging.CRITICAL: "\x1b[31;1m",   # bold red
}


class CustomFormatter(logging.Formatter):
    """Console formatter that colours each record by level; plain text when `use_color` is off."""

    def __init__(self, fmt: str = LOG_FORMAT, use_color: bool = True):
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record):
        text = super().format(record)
        color = LEVEL_COLORS.get(record.levelno)
        if not self.use_color or color is None:
            return text
        return f"{color}{text}{RESET}"


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


def _console_handler(cfg: Dict[str, Any]) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(_level(cfg.get("level"), logging.INFO))
    handler.setFormatter(CustomFormatter(use_color=cfg.get("color", True)))
    return handler


def _file_handler(cfg: Dict[str, Any], run_id: str) -> logging.Handler:
    log_path = cfg.get("path", "backtest.log").replace("{timestamp}", run_id)
    folder = os.path.dirname(log_path)
    if folder:
        os.makedirs(folder, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setLevel(_level(cfg.get("level"), logging.DEBUG))
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def setup_logging(log_config: Dict[str, Any], run_id: Optional[str] = None) -> str:
    """
    Replaces the root handlers with the ones described by the `logging`
    section of config.json: `console` (coloured, on by default) and `file`
    (off by default, `{timestamp}` in its path becomes the run id).

    Returns the run id, reused for audit file names.
    """
    run_id = run_id or datetime.now().strftime("%Y%m%d_%H%M%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # handlers filter
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_cfg = log_config.get("console", {})
    if console_cfg.get("enabled", True):
        root_logger.addHandler(_console_handler(console_cfg))

    file_cfg = log_config.get("file", {})
    if file_cfg.get("enabled", False):
        root_logger.addHandler(_file_handler(file_cfg, run_id))

    logging.getLogger("backtesting.logger").info(f"Logging initialized (run {run_id}).")
    return run_id


class AuditTrail:
    """
    Per-run JSON record of what the engine saw and did: run metadata, one
    entry per replayed bar (close, strategy indicators, signal, execution
    outcome, portfolio value), every filled trade and the final metrics.
    Nothing is collected or written unless `audit_log.enabled` is set.
    """

    def __init__(self, log_config: Optional[Dict[str, Any]] = None, timestamp: str = "run",
                 symbol: str = "asset", strategy: str = "strategy"):
        audit_cfg = (log_config or {}).get("audit_log", {})
        self.enabled = bool(audit_cfg.get("enabled", False))
        self.metadata: Dict[str, Any] = {}
        self.bars: List[Dict[str, Any]] = []
        self.trades: List[Dict[str, Any]] = []

        # one file per symbol/strategy so parallel runs do not overwrite each other
        base_path = audit_cfg.get("path", "audit.json")
        ext = os.path.splitext(base_path)[1] or ".json"
        folder = os.path.dirname(base_path)
        self.path = os.path.join(folder, f"audit_{symbol}_{strategy}_{timestamp}{ext}")

    def set_metadata(self, metadata: Dict[str, Any]):
        self.metadata = dict(metadata)

    def record_bar(self, index: int, bar: "Bar", signal: "Signal", outcome: "ExecutionResult",
                   indicators: Dict[str, Any], total_value: float):
        if not self.enabled:
            return
        self.bars.append({
            "index": index,
            "timestamp": bar.timestamp,
            "close": bar.close,
            "indicators": dict(indicators),
            "signal": signal.side.value,
            "confidence": signal.confidence,
            "execution": outcome.value,
            "total_value": total_value,
        })

    def record_trade(self, trade: "Trade"):
        if self.enabled:
            self.trades.append(trade.to_dict())

    def save(self, result: "BacktestResult") -> Optional[str]:
        """Writes the trail with `result`'s summary; returns the path, or None when disabled."""
        if not self.enabled:
            return None
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        payload = {
            "metadata": self.metadata,
            "bars": self.bars,
            "trades": self.trades,
            "final_metrics": result.to_dict(),
        }
        with open(self.path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        logging.getLogger("backtesting.audit").info(
            f"Audit trail saved to {self.path} ({len(self.bars)} bars, {len(self.trades)} trades)"
        )
        return self.path
