from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: str
    market: str = ""
    status: Optional[str] = None
    price: Optional[str] = None
    stop_price: Optional[str] = None
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.client_order_id:
            return self.client_order_id
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        return "order"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "market": self.market,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "quantity": self.quantity,
            "price": self.price,
            "stop_price": self.stop_price,
            "exchange_order_id": self.exchange_order_id,
        }
