from dataclasses import asdict, dataclass
from enum import Enum
from datetime import datetime
from typing import Any, Dict


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"


class ExecutionResult(Enum):
    FILLED = "FILLED"
    REJECTED = "REJECTED"  # BUY without cash / BUY while holding / SELL without holdings
    NOOP = "NOOP"          # HOLD / WAIT


@dataclass(frozen=True)
class Trade:
    symbol: str
    side: OrderSide
    price: float
    quantity: float
    fee: float
    timestamp: datetime
    cash_after: float
    portfolio_value_after: float

    @property
    def gross_value(self) -> float:
        return self.price * self.quantity

    @property
    def cash_flow(self) -> float:
        """Signed change in cash caused by this fill."""
        if self.side == OrderSide.BUY:
            return -(self.gross_value + self.fee)
        return self.gross_value - self.fee

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["timestamp"] = self.timestamp.isoformat() if self.timestamp else None
        return data
