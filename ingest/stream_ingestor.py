import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterable, Dict, List, Optional, Tuple, Union

from api.metrics import metrics
from .snapshot_store import (
    AggTradeEvent,
    DepthEvent,
    MarketSnapshotStore,
    TradeEvent,
)


logger = logging.getLogger(__name__)

TRADE = 'trade'
AGG_TRADE = 'aggTrade'
DEPTH = 'depth'

_SUFFIX_PATTERNS = (
    (re.compile(r'@trade$'), TRADE),
    (re.compile(r'@aggTrade$'), AGG_TRADE),
    (re.compile(r'@depth\d*(@\d+ms)?$'), DEPTH),
)


class MessageDecodeError(ValueError):
    """A single stream message could not be decoded; the stream itself is fine."""


def classify_stream(stream: str) -> Optional[str]:
    for pattern, kind in _SUFFIX_PATTERNS:
        if pattern.search(stream):
            return kind
    return None


def parse_decimal(value: Any) -> float:
    """Lenient decimal parse: anything unparseable becomes 0.0."""
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data:
        raise MessageDecodeError(f"missing field '{key}'")
    return data[key]


def _as_int(data: Dict[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MessageDecodeError(f"field '{key}' is not numeric: {value!r}")
    return int(value)


def _as_bool(data: Dict[str, Any], key: str) -> bool:
    value = _require(data, key)
    if not isinstance(value, bool):
        raise MessageDecodeError(f"field '{key}' is not a boolean: {value!r}")
    return value


def _as_time(data: Dict[str, Any], key: str) -> datetime:
    millis = _as_int(data, key)
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def parse_levels(levels: Any) -> Tuple[Tuple[float, float], ...]:
    """Convert ``[[priceStr, qtyStr], ...]`` into float pairs, keeping exchange order."""
    if not isinstance(levels, list):
        raise MessageDecodeError(f"depth levels must be a list, got {type(levels).__name__}")
    result: List[Tuple[float, float]] = []
    for level in levels:
        if not isinstance(level, (list, tuple)) or len(level) < 2:
            raise MessageDecodeError(f"malformed depth level: {level!r}")
        result.append((parse_decimal(level[0]), parse_decimal(level[1])))
    return tuple(result)


def decode_trade(data: Dict[str, Any]) -> TradeEvent:
    return TradeEvent(
        event_time=_as_time(data, 'E'),
        trade_id=_as_int(data, 't'),
        price=parse_decimal(_require(data, 'p')),
        quantity=parse_decimal(_require(data, 'q')),
        trade_time=_as_time(data, 'T'),
        is_buyer_maker=_as_bool(data, 'm'),
    )


def decode_agg_trade(data: Dict[str, Any]) -> AggTradeEvent:
    return AggTradeEvent(
        event_time=_as_time(data, 'E'),
        agg_trade_id=_as_int(data, 'a'),
        price=parse_decimal(_require(data, 'p')),
        quantity=parse_decimal(_require(data, 'q')),
        first_trade_id=_as_int(data, 'f'),
        last_trade_id=_as_int(data, 'l'),
        trade_time=_as_time(data, 'T'),
        is_buyer_maker=_as_bool(data, 'm'),
    )


def decode_depth(data: Dict[str, Any]) -> DepthEvent:
    """Spot partial depth uses ``lastUpdateId/bids/asks``; futures uses ``u/b/a``."""
    if 'lastUpdateId' in data:
        update_key, bids_key, asks_key = 'lastUpdateId', 'bids', 'asks'
    else:
        update_key, bids_key, asks_key = 'u', 'b', 'a'
    return DepthEvent(
        last_update_id=_as_int(data, update_key),
        bids=parse_levels(_require(data, bids_key)),
        asks=parse_levels(_require(data, asks_key)),
    )


class StreamIngestor:
    """Route combined-stream messages into the snapshot store.

    Messages are attributed to ``symbol`` when one is given, otherwise to the
    upper-cased stream prefix (``btcusdt@trade`` -> ``BTCUSDT``).
    """

    def __init__(self, store: MarketSnapshotStore, symbol: Optional[str] = None):
        self.store = store
        self.symbol = symbol.upper() if symbol else None
        self.processed: Dict[str, int] = {TRADE: 0, AGG_TRADE: 0, DEPTH: 0}
        self.dropped = 0

    def _symbol_for(self, stream: str) -> str:
        if self.symbol:
            return self.symbol
        return stream.split('@', 1)[0].upper()

    def process_message(self, stream: str, data: Dict[str, Any]) -> bool:
        """Apply one message; returns False when it was dropped."""
        kind = classify_stream(stream)
        if kind is None:
            logger.warning("Unknown stream type: %s", stream)
            self._drop('unknown_stream')
            return False
        if not isinstance(data, dict):
            logger.warning("Dropping %s message with non-object payload", stream)
            self._drop('bad_payload')
            return False

        symbol = self._symbol_for(stream)
        try:
            if kind == TRADE:
                self.store.upsert_trade(symbol, decode_trade(data))
            elif kind == AGG_TRADE:
                self.store.upsert_agg_trade(symbol, decode_agg_trade(data))
            else:
                self.store.upsert_depth(symbol, decode_depth(data))
        except MessageDecodeError as exc:
            logger.warning("Dropping malformed %s message on %s: %s", kind, stream, exc)
            self._drop('decode_error')
            return False

        self.processed[kind] += 1
        metrics.record_stream_message(kind)
        logger.debug("Updated %s data for %s", kind, symbol)
        return True

    def handle_raw(self, raw: Union[str, bytes]) -> bool:
        """Decode a ``{"stream": ..., "data": {...}}`` envelope and apply it."""
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Error unmarshaling message: %s", exc)
            self._drop('bad_json')
            return False
        if not isinstance(envelope, dict):
            logger.warning("Dropping non-object envelope")
            self._drop('bad_envelope')
            return False
        stream = envelope.get('stream')
        data = envelope.get('data')
        if not isinstance(stream, str) or data is None:
            logger.warning("Dropping envelope without stream/data: %.200s", raw)
            self._drop('bad_envelope')
            return False
        return self.process_message(stream, data)

    async def consume(
        self,
        messages: AsyncIterable[Union[str, bytes]],
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Ingest until the source ends, the stop event is set, or the source raises.

        Transport errors raised by ``messages`` propagate to the caller.
        """
        async for raw in messages:
            if stop_event is not None and stop_event.is_set():
                break
            self.handle_raw(raw)

    def _drop(self, reason: str) -> None:
        self.dropped += 1
        metrics.record_drop(reason)
