import logging
import time
from typing import Optional

from api.metrics import metrics
from config import config
from config.profiles import TraderSettings
from strategy.execution_types import OrderTicket
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import ORDER_TYPES, BinanceAPIError, BinanceTransport


logger = logging.getLogger(__name__)


class OrderGateway:
    """Place orders for one pair on one Binance market family, live or on paper.

    Every ``place_*`` call returns the acknowledged ticket, or ``None`` when the
    order failed; failures are logged here and never raised to the caller.
    """

    def __init__(
        self,
        settings: TraderSettings,
        paper_mode: Optional[bool] = None,
        transport: Optional[BinanceTransport] = None,
    ):
        self.settings = settings
        self.symbol = settings.symbol
        self.market = settings.market
        if self.market not in ORDER_TYPES["market"]:
            raise ValueError(f"unsupported market type: {self.market}")
        if paper_mode is None:
            paper_mode = bool(config.section("exchange").get("paper", False))
        self.paper_mode = paper_mode
        self.transport = transport or BinanceTransport(self.market, testnet=settings.use_testnet)
        self.simulator = PaperTradingSimulator(self.symbol, market=self.market)

    async def verify_credentials(self) -> bool:
        if self.paper_mode:
            logger.info("Paper mode; skipping API key validation")
            return True
        try:
            await self.transport.fetch_account()
        except Exception as exc:
            self._log_transport_error("API key validation", exc)
            return False
        logger.info("API key validation successful")
        return True

    async def place_market_order(self, side: str, quantity: str) -> Optional[OrderTicket]:
        return await self._place("market", side, quantity)

    async def place_limit_order(self, side: str, quantity: str, price: str) -> Optional[OrderTicket]:
        return await self._place("limit", side, quantity, price=price)

    async def place_stop_order(self, side: str, quantity: str, stop_price: str) -> Optional[OrderTicket]:
        return await self._place("stop", side, quantity, stop_price=stop_price)

    async def place_take_profit_order(self, side: str, quantity: str, stop_price: str) -> Optional[OrderTicket]:
        return await self._place("take_profit", side, quantity, stop_price=stop_price)

    async def close(self):
        await self.transport.close()

    async def _place(
        self,
        intent: str,
        side: str,
        quantity: str,
        price: Optional[str] = None,
        stop_price: Optional[str] = None,
    ) -> Optional[OrderTicket]:
        if not self._positive(quantity):
            logger.error("Refusing %s order with non-positive quantity %r", intent, quantity)
            metrics.record_order_failed(intent)
            return None

        if self.paper_mode:
            ticket = self.simulator.create_order(
                ORDER_TYPES[intent][self.market],
                side,
                quantity,
                price=price,
                stopPrice=stop_price,
            )
            self._record(intent, ticket)
            logger.debug("Paper net position for %s: %s", self.symbol, self.simulator.net_position)
            return ticket

        started = time.monotonic()
        try:
            ticket = await self.transport.place_order(
                self.symbol,
                intent,
                side,
                quantity,
                price=price,
                stop_price=stop_price,
            )
        except Exception as exc:
            self._log_transport_error(f"{intent} order", exc)
            metrics.record_order_failed(intent)
            return None

        logger.debug("%s %s order ack in %.3fs", intent, side, time.monotonic() - started)
        self._record(intent, ticket)
        return ticket

    def _record(self, intent: str, ticket: Optional[OrderTicket]) -> None:
        if ticket is None:
            logger.error("%s order for %s was not acknowledged", intent, self.symbol)
            metrics.record_order_failed(intent)
            return
        metrics.record_order_placed(intent)
        logger.debug("Order ticket: %s", ticket.as_dict())
        logger.info(
            "%s %s %s qty=%s status=%s id=%s",
            intent,
            ticket.side,
            ticket.symbol,
            ticket.quantity,
            ticket.status,
            ticket.id,
        )

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BinanceAPIError):
            logger.error(
                "Binance %s failed (code=%s, msg=%s)",
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("%s failed: %s", action, error)

    @staticmethod
    def _positive(value: str) -> bool:
        try:
            return float(value) > 0
        except (TypeError, ValueError):
            return False
