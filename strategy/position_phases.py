from __future__ import annotations
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Tuple

from .position_state import Phase

if TYPE_CHECKING:
    from .position_machine import PositionStateMachine, Transition

# (favorable move threshold, fraction of the original entry size to take off),
# checked top-down, first match wins.
PRIMARY_REDUCTIONS: Tuple[Tuple[float, float], ...] = (
    (0.04, 0.25),
    (0.03, 0.25),
    (0.02, 0.25),
    (0.01, 0.25),
)
SECONDARY_REDUCTIONS: Tuple[Tuple[float, float], ...] = (
    (0.03, 0.25),
    (0.02, 0.25),
    (0.01, 0.50),
)
ADVERSE_THRESHOLD = -0.01


class PhaseHandler(ABC):
    def __init__(self, machine: PositionStateMachine):
        self.machine = machine

    @property
    def state(self):
        return self.machine.state

    @abstractmethod
    async def process(self, price: float) -> List[Transition]:
        pass

    async def _scale_out(self, price: float, ladder: Tuple[Tuple[float, float], ...]) -> List[Transition]:
        move = self.machine.favorable_move(price)
        for threshold, fraction in ladder:
            if move >= threshold:
                return await self.machine.reduce_position(fraction, price)
        return []


class IdleHandler(PhaseHandler):
    async def process(self, price: float) -> List[Transition]:
        settings = self.machine.settings
        is_long = settings.is_long
        if settings.is_market_entry:
            return await self.machine.enter_position(price, is_long, Phase.PRIMARY_ENTRY)

        limit = settings.entry_limit_price
        if (is_long and price <= limit) or (not is_long and price >= limit):
            return await self.machine.enter_position(price, is_long, Phase.PRIMARY_ENTRY)
        return []


class PrimaryEntryHandler(PhaseHandler):
    async def process(self, price: float) -> List[Transition]:
        transitions = await self._scale_out(price, PRIMARY_REDUCTIONS)
        if transitions:
            return transitions

        if self.machine.favorable_move(price) <= ADVERSE_THRESHOLD:
            flipped = not self.state.is_long
            transitions = await self.machine.close_position(price)
            if not transitions:
                return []
            self.machine.pending_pivot = flipped
            transitions.extend(
                await self.machine.enter_position(price, flipped, Phase.SECONDARY_ENTRY)
            )
        return transitions


class SecondaryEntryHandler(PhaseHandler):
    async def process(self, price: float) -> List[Transition]:
        if self.machine.pending_pivot is not None:
            # Close leg of the pivot went through but the opposite entry did not.
            return await self.machine.enter_position(
                price, self.machine.pending_pivot, Phase.SECONDARY_ENTRY
            )

        transitions = await self._scale_out(price, SECONDARY_REDUCTIONS)
        if transitions:
            return transitions

        if self.machine.favorable_move(price) <= ADVERSE_THRESHOLD:
            return await self.machine.close_position(price)
        return []
