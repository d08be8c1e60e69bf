import logging
from datetime import datetime
from typing import Dict, List, Any, Optional

from backtesting.core.schema import ExecutionResult, OrderSide, Trade
from backtesting.core.strategy_interface import SignalSide

logger = logging.getLogger("backtesting.core.portfolio")

QTY_EPSILON = 1e-12


class Portfolio:
    """
    Single-asset, long-only, cash-settled ledger.

    BUY converts all cash into the asset (fee charged on top of the notional),
    SELL liquidates the whole position. Anything else is rejected and leaves
    the ledger untouched.
    """

    def __init__(self, initial_cash: float, fee_rate: float = 0.001):
        self.initial_cash = initial_cash
        self.fee_rate = fee_rate
        self.cash = initial_cash
        self.holdings: Dict[str, float] = {}  # symbol -> quantity
        self.last_prices: Dict[str, float] = {}
        self.trades: List[Trade] = []

        self.equity_curve: List[Dict[str, Any]] = []
        self.returns: List[float] = []

    # --- ledger -----------------------------------------------------------

    def update_price(self, symbol: str, price: float):
        self.last_prices[symbol] = price

    def quantity(self, symbol: str) -> float:
        return self.holdings.get(symbol, 0.0)

    def value(self) -> float:
        """cash + holdings marked to the last known price."""
        total = self.cash
        for symbol, qty in self.holdings.items():
            total += qty * self.last_prices.get(symbol, 0.0)
        return total

    def execute(self, symbol: str, side: SignalSide, price: float,
                timestamp: Optional[datetime] = None) -> ExecutionResult:
        """Applies a signal at `price`. HOLD/WAIT are no-ops."""
        if side == SignalSide.BUY:
            return self._buy(symbol, price, timestamp)
        if side == SignalSide.SELL:
            return self._sell(symbol, price, timestamp)
        return ExecutionResult.NOOP

    def _buy(self, symbol: str, price: float, timestamp: Optional[datetime]) -> ExecutionResult:
        if self.quantity(symbol) > QTY_EPSILON:
            logger.warning(f"[ORDER REJECTED] BUY {symbol}: position already open ({self.quantity(symbol):.6f})")
            return ExecutionResult.REJECTED
        if self.cash <= 0 or price <= 0:
            logger.warning(f"[ORDER REJECTED] BUY {symbol}: no spendable cash (cash=${self.cash:.2f}, price={price})")
            return ExecutionResult.REJECTED

        qty = self.cash / (price + price * self.fee_rate)
        fee = qty * price * self.fee_rate
        cost = qty * price + fee
        # float dust from the division can leave cash a hair below zero
        self.cash = max(0.0, self.cash - cost)
        self.holdings[symbol] = qty
        self.last_prices[symbol] = price

        trade = self._record(symbol, OrderSide.BUY, price, qty, fee, timestamp)
        logger.info(f"+++ [OPEN] LONG {symbol} | Qty: {qty:.6f} @ {price:.2f} | Fee: ${fee:.2f} | Cash: ${self.cash:.2f}")
        logger.debug(f"[TRADE] {trade}")
        return ExecutionResult.FILLED

    def _sell(self, symbol: str, price: float, timestamp: Optional[datetime]) -> ExecutionResult:
        qty = self.quantity(symbol)
        if qty <= QTY_EPSILON:
            logger.warning(f"[ORDER REJECTED] SELL {symbol}: no holdings")
            return ExecutionResult.REJECTED

        fee = qty * price * self.fee_rate
        self.cash += qty * price - fee
        self.holdings.pop(symbol, None)
        self.last_prices[symbol] = price

        self._record(symbol, OrderSide.SELL, price, qty, fee, timestamp)
        logger.info(f"--- [CLOSED] {symbol} | Qty: {qty:.6f} @ {price:.2f} | Fee: ${fee:.2f} | Cash: ${self.cash:.2f}")
        return ExecutionResult.FILLED

    def _record(self, symbol: str, side: OrderSide, price: float, qty: float, fee: float,
                timestamp: Optional[datetime]) -> Trade:
        trade = Trade(
            symbol=symbol,
            side=side,
            price=price,
            quantity=qty,
            fee=fee,
            timestamp=timestamp,
            cash_after=self.cash,
            portfolio_value_after=self.value(),
        )
        self.trades.append(trade)
        return trade

    # --- path -------------------------------------------------------------

    def record_snapshot(self, timestamp: Optional[datetime]) -> Dict[str, Any]:
        """
        Appends the current state to the equity curve and the step return
        to `returns`. Drawdown is derived from the curve by the metrics layer.
        """
        total_value = self.value()
        if self.equity_curve:
            prev = self.equity_curve[-1]["total_value"]
            if prev > 0:
                self.returns.append((total_value - prev) / prev)

        snapshot = {
            "timestamp": timestamp,
            "cash": self.cash,
            "position_value": total_value - self.cash,
            "total_value": total_value,
        }
        self.equity_curve.append(snapshot)
        return snapshot

    def get_context(self) -> Dict[str, Any]:
        """
        Returns the data used by the strategy to make decisions.
        """
        return {
            "cash": self.cash,
            "holdings": self.holdings.copy(),
            "total_value": self.value(),
            "unrealized_pnl": self.value() - self.initial_cash,
        }
