from typing import Any, Dict, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient, rest_base_url

from strategy.execution_types import OrderTicket


__all__ = ["BinanceTransport", "BinanceAPIError", "ORDER_PATHS", "ACCOUNT_PATHS", "ORDER_TYPES"]


ORDER_PATHS = {
    "spot": "/api/v3/order",
    "usdm": "/fapi/v1/order",
    "coinm": "/dapi/v1/order",
}

ACCOUNT_PATHS = {
    "spot": "/api/v3/account",
    "usdm": "/fapi/v2/account",
    "coinm": "/dapi/v1/account",
}

# Exchange order type per (intent, market family). Spot stop orders trigger a
# market order on the stop price; futures use the *_MARKET variants for the
# same stopPrice-only behaviour.
ORDER_TYPES = {
    "market": {"spot": "MARKET", "usdm": "MARKET", "coinm": "MARKET"},
    "limit": {"spot": "LIMIT", "usdm": "LIMIT", "coinm": "LIMIT"},
    "stop": {"spot": "STOP_LOSS", "usdm": "STOP_MARKET", "coinm": "STOP_MARKET"},
    "take_profit": {"spot": "TAKE_PROFIT", "usdm": "TAKE_PROFIT_MARKET", "coinm": "TAKE_PROFIT_MARKET"},
}


class BinanceTransport:
    """Thin adapter around Binance REST for one market family, with typed responses."""

    def __init__(self, market: str, testnet: bool = False, rest: Optional[BinanceRESTClient] = None) -> None:
        if market not in ORDER_PATHS:
            raise ValueError(f"unsupported market type: {market}")
        self.market = market
        self.testnet = testnet
        self._rest = rest

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient(base_url=rest_base_url(self.market, self.testnet))
        return self._rest

    def build_order_params(
        self,
        symbol: str,
        intent: str,
        side: str,
        quantity: str,
        price: Optional[str] = None,
        stop_price: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side.upper(),
            "type": ORDER_TYPES[intent][self.market],
            "quantity": quantity,
        }
        if intent == "limit":
            params["timeInForce"] = "GTC"
            params["price"] = price
        if stop_price is not None:
            params["stopPrice"] = stop_price
        if self.market != "spot":
            params["newOrderRespType"] = "RESULT"
        return params

    async def place_order(
        self,
        symbol: str,
        intent: str,
        side: str,
        quantity: str,
        price: Optional[str] = None,
        stop_price: Optional[str] = None,
    ) -> Optional[OrderTicket]:
        params = self.build_order_params(symbol, intent, side, quantity, price=price, stop_price=stop_price)
        data = await self._client().post(ORDER_PATHS[self.market], params=params, signed=True)
        return self._parse_order_ack(data, params)

    async def fetch_account(self) -> Dict[str, Any]:
        """Signed account read; succeeds only with a valid key pair."""
        data = await self._client().get(ACCOUNT_PATHS[self.market], signed=True)
        if not isinstance(data, dict):
            raise BinanceAPIError(200, None, "unexpected account payload", str(data))
        return data

    async def close(self) -> None:
        if self._rest:
            try:
                await self._rest.close()
            finally:
                self._rest = None

    def _parse_order_ack(self, payload: Any, params: Dict[str, Any]) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        return OrderTicket(
            symbol=payload.get("symbol") or params["symbol"],
            side=(payload.get("side") or params["side"]).upper(),
            type=payload.get("type") or params["type"],
            quantity=str(payload.get("origQty") or params["quantity"]),
            market=self.market,
            status=payload.get("status"),
            price=params.get("price"),
            stop_price=params.get("stopPrice"),
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
