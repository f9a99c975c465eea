import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from api.metrics import metrics
from config.profiles import TraderSettings
from .position_phases import IdleHandler, PrimaryEntryHandler, SecondaryEntryHandler
from .position_state import Phase, PositionState


logger = logging.getLogger(__name__)

BUY = 'BUY'
SELL = 'SELL'

# Residual notional below this share of the entry counts as flat.
_DUST_RATIO = 1e-9


def format_quantity(quantity: float) -> str:
    """Eight decimals with trailing zeros and a dangling point removed."""
    text = f"{quantity:.8f}"
    return text.rstrip('0').rstrip('.')


@dataclass
class Transition:
    from_phase: str
    to_phase: str
    action: str
    price: float
    quantity: Optional[str] = None


class PositionStateMachine:
    """Scale into and out of one position from a stream of prices.

    Only the control loop calls :meth:`on_tick`; every order is awaited before
    the in-memory state is touched, so a failed order leaves the state as it
    was and the next tick evaluates the same position again.
    """

    def __init__(self, settings: TraderSettings, gateway, state: Optional[PositionState] = None):
        self.settings = settings
        self.gateway = gateway
        self.state = state or PositionState(is_long=settings.is_long)
        # Direction still to be opened after a pivot whose entry leg failed.
        self.pending_pivot: Optional[bool] = None

        self.handler_map = {
            Phase.IDLE: IdleHandler(self),
            Phase.PRIMARY_ENTRY: PrimaryEntryHandler(self),
            Phase.SECONDARY_ENTRY: SecondaryEntryHandler(self),
        }

    @property
    def phase(self) -> Phase:
        return self.state.phase

    def favorable_move(self, price: float) -> float:
        entry = self.state.entry_price
        if entry <= 0:
            return 0.0
        if self.state.is_long:
            return (price - entry) / entry
        return (entry - price) / entry

    async def on_tick(self, price: float) -> List[Transition]:
        if price <= 0:
            logger.warning("Ignoring non-positive price %s; waiting for valid price data", price)
            return []

        metrics.update_price(price)
        handler = self.handler_map[self.state.phase]
        transitions = await handler.process(price)
        self._publish()
        return transitions

    async def enter_position(self, price: float, is_long: bool, phase: Phase) -> List[Transition]:
        direction = 'long' if is_long else 'short'
        if price <= 0:
            logger.warning("Current price is zero or negative; not entering %s position", direction)
            return []

        size = self.settings.max_position
        quantity = format_quantity(size / price)
        side = BUY if is_long else SELL
        logger.info(
            "Attempting to enter %s position for symbol: %s with quantity: %s",
            direction,
            self.settings.symbol,
            quantity,
        )

        ticket = await self.gateway.place_market_order(side, quantity)
        if ticket is None:
            logger.error("Error entering %s position at %f", direction, price)
            return []

        from_phase = self.state.phase.value
        self.state.open(price, size, is_long, phase)
        self.pending_pivot = None
        logger.info("Entered %s position at price %f", direction, price)
        return [Transition(from_phase, phase.value, f'enter_{direction}', price, quantity)]

    async def reduce_position(self, fraction: float, price: float = 0.0) -> List[Transition]:
        state = self.state
        reduce_size = min(state.entry_size * fraction, state.current_size)
        if reduce_size <= 0:
            return []
        quantity = format_quantity(reduce_size / state.entry_price)
        side = SELL if state.is_long else BUY

        ticket = await self.gateway.place_market_order(side, quantity)
        if ticket is None:
            logger.error("Error reducing position by %.0f%%", fraction * 100)
            return []

        from_phase = state.phase.value
        state.current_size -= reduce_size
        logger.info(
            "Reduced position by %.0f%% of entry (%s remaining)",
            fraction * 100,
            state.current_size,
        )
        if state.current_size <= state.entry_size * _DUST_RATIO:
            state.current_size = 0.0
            state.phase = Phase.IDLE
            logger.info("Position fully scaled out; back to idle")
        return [Transition(from_phase, state.phase.value, 'reduce', price, quantity)]

    async def close_position(self, price: float = 0.0) -> List[Transition]:
        state = self.state
        quantity = format_quantity(state.current_size / state.entry_price)
        side = SELL if state.is_long else BUY

        ticket = await self.gateway.place_market_order(side, quantity)
        if ticket is None:
            logger.error("Error closing position")
            return []

        from_phase = state.phase.value
        state.current_size = 0.0
        if state.phase is Phase.PRIMARY_ENTRY:
            state.phase = Phase.SECONDARY_ENTRY
        else:
            state.phase = Phase.IDLE
        logger.info("Closed position")
        return [Transition(from_phase, state.phase.value, 'close', price, quantity)]

    def _publish(self) -> None:
        metrics.update_position(self.state.phase.value, self.state.current_size, self.state.entry_price)

    def snapshot(self) -> Dict:
        data = self.state.to_dict()
        data['pending_pivot'] = self.pending_pivot
        return data
