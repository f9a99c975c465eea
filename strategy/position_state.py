from dataclasses import dataclass
from enum import Enum
from typing import Dict


class Phase(Enum):
    IDLE = "idle"
    PRIMARY_ENTRY = "primary_entry"
    SECONDARY_ENTRY = "secondary_entry"


@dataclass
class PositionState:
    """Open-position bookkeeping owned by the control loop.

    Sizes are quote-currency notionals; ``current_size`` only shrinks within a
    phase and is reset by a fresh entry.
    """

    is_long: bool = True
    phase: Phase = Phase.IDLE
    entry_price: float = 0.0
    entry_size: float = 0.0
    current_size: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.phase is not Phase.IDLE and self.current_size > 0

    @property
    def direction(self) -> str:
        return 'long' if self.is_long else 'short'

    def open(self, price: float, size: float, is_long: bool, phase: Phase) -> None:
        self.entry_price = price
        self.entry_size = size
        self.current_size = size
        self.is_long = is_long
        self.phase = phase

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'direction': self.direction,
            'entry_price': self.entry_price,
            'entry_size': self.entry_size,
            'current_size': self.current_size,
            'open': self.is_open,
        }
