import asyncio
import logging
import random
import time
from typing import Callable, List, Optional

import websockets

from api.metrics import metrics
from config import config
from config.profiles import TraderSettings
from .stream_ingestor import StreamIngestor


logger = logging.getLogger(__name__)

WS_BASE_URLS = {
    "spot": "stream.binance.com:9443",
    "usdm": "fstream.binance.com",
    "coinm": "dstream.binance.com",
}

TESTNET_WS_BASE_URLS = {
    "spot": "testnet.binance.vision",
    "usdm": "stream.binancefuture.com",
    "coinm": "dstream.binancefuture.com",
}


def stream_names(pair: str, market: str) -> List[str]:
    """Two streams per pair: trades plus a 10-level partial book."""
    pair = pair.lower()
    if market == "spot":
        return [f"{pair}@trade", f"{pair}@depth10"]
    if market in ("usdm", "coinm"):
        return [f"{pair}@aggTrade", f"{pair}@depth10@100ms"]
    raise ValueError(f"unsupported market type: {market}")


def stream_url(pair: str, market: str, testnet: bool = False) -> str:
    hosts = TESTNET_WS_BASE_URLS if testnet else WS_BASE_URLS
    return f"wss://{hosts[market]}/stream?streams={'/'.join(stream_names(pair, market))}"


class WebSocketClient:
    """Own the combined-stream connection and feed every frame to the ingestor.

    The ingestion loop ends whenever the connection fails; this client then
    reconnects with jittered backoff until ``stop`` is called.
    """

    def __init__(
        self,
        settings: TraderSettings,
        ingestor: StreamIngestor,
        stop_event: Optional[asyncio.Event] = None,
        connect: Optional[Callable] = None,
    ):
        ws_cfg = config.section("websocket")
        self.settings = settings
        self.ingestor = ingestor
        self.stop_event = stop_event or asyncio.Event()
        self._connect = connect or websockets.connect
        self.url = stream_url(settings.pair, settings.market, settings.use_testnet)
        self.reconnect_backoff = list(ws_cfg.get("reconnect_backoff", [1, 2, 5, 10, 30]))
        self.max_reconnects = int(ws_cfg.get("max_reconnects_per_minute", 10))
        self.open_timeout = float(ws_cfg.get("open_timeout_s", 10))

        self.reconnect_count = 0
        self.total_reconnects = 0
        self.last_reconnect_window = time.time()
        self._ws = None

    @property
    def running(self) -> bool:
        return not self.stop_event.is_set()

    async def run(self):
        backoff_index = 0
        logger.info("Subscribing to streams: %s", stream_names(self.settings.pair, self.settings.market))

        while self.running:
            try:
                logger.info("Connecting to %s", self.url)
                async with self._connect(self.url, open_timeout=self.open_timeout) as ws:
                    self._ws = ws
                    logger.info("WebSocket connection established")
                    backoff_index = 0
                    await self.ingestor.consume(ws, self.stop_event)
                if self.running:
                    logger.warning("Stream closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Stream read error: %s", e)
            finally:
                self._ws = None

            if not self.running:
                break
            await self._handle_reconnect(backoff_index)
            backoff_index = min(backoff_index + 1, len(self.reconnect_backoff) - 1)

        logger.info("Stream ingestion stopped")

    async def _handle_reconnect(self, backoff_index: int = 0):
        if backoff_index >= len(self.reconnect_backoff):
            backoff_index = len(self.reconnect_backoff) - 1

        now = time.time()
        if now - self.last_reconnect_window > 60:
            self.reconnect_count = 0
            self.last_reconnect_window = now

        self.reconnect_count += 1
        self.total_reconnects += 1
        metrics.record_reconnect()

        if self.reconnect_count > self.max_reconnects:
            logger.warning(
                "%s reconnects in 60s; entering degraded reconnect mode",
                self.reconnect_count,
            )
            self.reconnect_count = 0
            self.last_reconnect_window = now
            delay = self.reconnect_backoff[-1] + random.uniform(0, 0.5)
            logger.info("Reconnecting in %.1fs (extended backoff)", delay)
        else:
            delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
            logger.info("Reconnecting in %.1fs (attempt %s)", delay, self.reconnect_count)

        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def stop(self):
        self.stop_event.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
