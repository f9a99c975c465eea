import uuid
from typing import Any, Optional

from strategy.execution_types import OrderTicket


class PaperTradingSimulator:
    """Paper order book-keeping: every order is accepted and filled on the spot."""

    def __init__(self, symbol: str, market: str = "paper") -> None:
        self.symbol = symbol
        self.market = market
        self._net_qty = 0.0

    @property
    def net_position(self) -> float:
        """Signed base quantity filled so far (market orders only)."""
        return self._net_qty

    def create_order(self, order_type: str, side: str, quantity: str, **details: Any) -> Optional[OrderTicket]:
        qty = self._coerce_float(quantity)
        if qty is None or qty <= 0:
            return None
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        status = "FILLED" if order_type == "MARKET" else "NEW"
        ticket = OrderTicket(
            symbol=self.symbol,
            side=side.upper(),
            type=order_type,
            quantity=quantity,
            market=self.market,
            status=status,
            price=details.get("price"),
            stop_price=details.get("stopPrice"),
            client_order_id=order_id,
            raw=details,
        )
        if status == "FILLED":
            self._net_qty += qty if side.upper() == "BUY" else -qty
        return ticket

    @staticmethod
    def _coerce_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
