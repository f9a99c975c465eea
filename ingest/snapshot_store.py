"""Latest-market-state store keyed by symbol.

Each symbol owns one ``_SnapshotEntry`` for the life of the process. Writers
mutate the entry's fields under the entry lock and then publish a frozen
``MarketSnapshot`` copy; readers only ever see published copies, so a read
never observes half of an update and never waits on a writer.
"""
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Level = Tuple[float, float]
Listener = Callable[[str], None]


@dataclass(frozen=True)
class TradeEvent:
    event_time: Optional[datetime]
    trade_id: int
    price: float
    quantity: float
    trade_time: Optional[datetime]
    is_buyer_maker: bool


@dataclass(frozen=True)
class AggTradeEvent:
    event_time: Optional[datetime]
    agg_trade_id: int
    price: float
    quantity: float
    first_trade_id: int
    last_trade_id: int
    trade_time: Optional[datetime]
    is_buyer_maker: bool


@dataclass(frozen=True)
class DepthEvent:
    last_update_id: int
    bids: Tuple[Level, ...]
    asks: Tuple[Level, ...]


@dataclass(frozen=True)
class MarketSnapshot:
    symbol: str
    event_time: Optional[datetime] = None
    trade_time: Optional[datetime] = None
    trade_id: int = 0
    agg_trade_id: int = 0
    first_trade_id: int = 0
    last_trade_id: int = 0
    price: float = 0.0
    quantity: float = 0.0
    is_buyer_maker: bool = False
    last_update_id: int = 0
    bids: Tuple[Level, ...] = ()
    asks: Tuple[Level, ...] = ()
    version: int = 0

    @property
    def mid_price(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0][0] + self.asks[0][0]) / 2.0


@dataclass
class _SnapshotEntry:
    symbol: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    view: Optional[MarketSnapshot] = None

    def __post_init__(self):
        self.view = MarketSnapshot(symbol=self.symbol)

    def apply(self, **fields) -> MarketSnapshot:
        with self.lock:
            current = self.view
            self.view = replace(current, version=current.version + 1, **fields)
            return self.view


class MarketSnapshotStore:
    """Thread-safe keyed store of the latest snapshot per symbol. No eviction."""

    def __init__(self):
        self._entries: Dict[str, _SnapshotEntry] = {}
        self._create_lock = threading.Lock()
        self._listeners: List[Listener] = []

    def _entry(self, symbol: str) -> _SnapshotEntry:
        entry = self._entries.get(symbol)
        if entry is not None:
            return entry
        with self._create_lock:
            entry = self._entries.get(symbol)
            if entry is None:
                entry = _SnapshotEntry(symbol)
                self._entries[symbol] = entry
                logger.debug("Created snapshot entry for %s", symbol)
            return entry

    def upsert_trade(self, symbol: str, event: TradeEvent) -> MarketSnapshot:
        snapshot = self._entry(symbol).apply(
            event_time=event.event_time,
            trade_id=event.trade_id,
            price=event.price,
            quantity=event.quantity,
            trade_time=event.trade_time,
            is_buyer_maker=event.is_buyer_maker,
        )
        self._notify(symbol)
        return snapshot

    def upsert_agg_trade(self, symbol: str, event: AggTradeEvent) -> MarketSnapshot:
        snapshot = self._entry(symbol).apply(
            event_time=event.event_time,
            agg_trade_id=event.agg_trade_id,
            price=event.price,
            quantity=event.quantity,
            first_trade_id=event.first_trade_id,
            last_trade_id=event.last_trade_id,
            trade_time=event.trade_time,
            is_buyer_maker=event.is_buyer_maker,
        )
        self._notify(symbol)
        return snapshot

    def upsert_depth(self, symbol: str, event: DepthEvent) -> MarketSnapshot:
        snapshot = self._entry(symbol).apply(
            last_update_id=event.last_update_id,
            bids=tuple(event.bids),
            asks=tuple(event.asks),
        )
        self._notify(symbol)
        return snapshot

    def get(self, symbol: str) -> Optional[MarketSnapshot]:
        entry = self._entries.get(symbol)
        if entry is None:
            return None
        return entry.view

    def symbols(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def add_listener(self, listener: Listener) -> None:
        """Register a callback run with the symbol after every applied update."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _notify(self, symbol: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(symbol)
            except Exception:
                logger.exception("Snapshot listener failed for %s", symbol)
