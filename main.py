import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from api.metrics import metrics, start_metrics_server
from config import config
from config.config_loader import ConfigError
from config.profiles import TraderSettings, find_profile, list_profiles, load_profile, normalize_entry_signal
from ingest.snapshot_store import MarketSnapshotStore
from ingest.stream_ingestor import StreamIngestor
from ingest.websocket_client import WebSocketClient
from monitoring.async_utils import install_stop_signals, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from strategy.order_gateway import OrderGateway
from strategy.position_machine import PositionStateMachine


logger = logging.getLogger(__name__)


class TradingAgent:
    """Wire the stream, the snapshot store and the position machine for one pair.

    Two tasks run until ``stop`` is called: the websocket ingestion loop and the
    control loop. The control loop is the only code that touches the position
    state; it wakes on every price update for the pair and at least once per
    ``poll_interval`` seconds.
    """

    def __init__(
        self,
        settings: TraderSettings,
        gateway: Optional[OrderGateway] = None,
        store: Optional[MarketSnapshotStore] = None,
        connect: Optional[Callable] = None,
        poll_interval: Optional[float] = None,
    ):
        control_cfg = config.section('control')
        self.settings = settings
        self.symbol = settings.symbol
        self.poll_interval = float(
            poll_interval if poll_interval is not None else control_cfg.get('poll_interval_s', 1.0)
        )
        self.notify_on_update = bool(control_cfg.get('notify_on_update', True))
        self.shutdown_grace = float(control_cfg.get('shutdown_grace_s', 10.0))

        self.stop_event = asyncio.Event()
        self.store = store or MarketSnapshotStore()
        self.ingestor = StreamIngestor(self.store, symbol=self.symbol)
        self.ws_client = WebSocketClient(settings, self.ingestor, self.stop_event, connect=connect)
        self.gateway = gateway or OrderGateway(settings)
        self.machine = PositionStateMachine(settings, self.gateway)

        self.ticks = 0
        self._wakeup: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _on_snapshot(self, symbol: str) -> None:
        # Store listeners may fire from ingestion threads.
        if symbol != self.symbol or self._loop is None or self._wakeup is None:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._wakeup.set)

    async def tick(self) -> None:
        snapshot = self.store.get(self.symbol)
        if snapshot is None or snapshot.trade_time is None:
            logger.debug("No trade data yet for %s", self.symbol)
            return
        self.ticks += 1
        logger.debug("Tick %s: price=%s mid=%s", self.ticks, snapshot.price, snapshot.mid_price)
        try:
            await self.machine.on_tick(snapshot.price)
        except Exception:
            logger.exception("Control tick failed at price %s", snapshot.price)
            metrics.record_tick_error()

    async def control_loop(self) -> None:
        logger.info("Trader started for %s (%s, %s)", self.symbol, self.settings.market, self.machine.state.direction)
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        while not self.stop_event.is_set():
            self._wakeup.clear()
            await self.tick()
            if self.stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Trader stopped; final position %s", self.machine.snapshot())

    def stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stop requested")
        self.stop_event.set()
        if self._wakeup is not None:
            self._wakeup.set()

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        if self.notify_on_update:
            self.store.add_listener(self._on_snapshot)

        control = asyncio.create_task(self.control_loop(), name='control')
        tasks = [asyncio.create_task(self.ws_client.run(), name='stream'), control]

        async def _cleanup():
            self.stop()
            self.store.remove_listener(self._on_snapshot)
            await self.ws_client.stop()
            await self.gateway.close()

        # An order already sent must be reflected in the position before exit.
        await run_tasks_with_cleanup(
            tasks,
            stop_event=self.stop_event,
            cleanup=_cleanup,
            drain=[control],
            grace_period=self.shutdown_grace,
        )


# Console setup -----------------------------------------------------------

InputFn = Callable[[str], str]


def prompt_profile(paths: Sequence[Path], input_fn: InputFn = input) -> Path:
    if not paths:
        raise ConfigError("No profiles available")
    print("Available config files:")
    for i, path in enumerate(paths, start=1):
        print(f"{i}. {path.name}")
    answer = input_fn("Enter the number of the config file to use: ").strip()
    try:
        selection = int(answer)
    except ValueError:
        raise ConfigError(f"Invalid selection: {answer!r}") from None
    if selection < 1 or selection > len(paths):
        raise ConfigError(f"Invalid selection: {selection}")
    return paths[selection - 1]


def prompt_entry_signal(current: str, input_fn: InputFn = input) -> str:
    answer = input_fn(
        "Enter manual entry price (or 'market' for immediate entry, "
        f"or press Enter to keep '{current}'): "
    ).strip()
    if not answer:
        return current
    return normalize_entry_signal(answer)


def prompt_direction(input_fn: InputFn = input) -> bool:
    answer = input_fn("Enter 'long' for buy or 'short' for sell: ").strip().lower()
    return answer == 'long'


def resolve_settings(args: argparse.Namespace, input_fn: InputFn = input, interactive: Optional[bool] = None) -> TraderSettings:
    """Build the session settings from CLI flags, prompting for anything left open."""
    if interactive is None:
        interactive = sys.stdin.isatty()
    profiles_dir = config.section('profiles').get('directory', 'config/profiles')

    if args.profile:
        path = find_profile(args.profile, profiles_dir)
    elif interactive:
        path = prompt_profile(list_profiles(profiles_dir), input_fn)
    else:
        raise ConfigError("--profile is required when not running interactively")
    settings = load_profile(path)
    logger.info("Loaded profile %s: %s", path.name, settings)

    if args.entry:
        settings = settings.with_entry_signal(args.entry)
    elif interactive:
        settings = settings.with_entry_signal(prompt_entry_signal(settings.entry_signal, input_fn))

    if args.direction:
        settings = settings.with_direction(args.direction == 'long')
    elif interactive:
        settings = settings.with_direction(prompt_direction(input_fn))
    return settings


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Scale into and out of a single Binance position.")
    ap.add_argument("--config", help="path to config.yaml (defaults to config/config.yaml)")
    ap.add_argument("--profile", help="profile name in the profiles directory, or a path to one")
    ap.add_argument("--entry", help="'market' or a limit entry price")
    ap.add_argument("--direction", choices=("long", "short"))
    ap.add_argument("--paper", action="store_true", help="route orders to the paper simulator")
    ap.add_argument("--log-level", help="override logging.level from config")
    return ap


async def run_agent(settings: TraderSettings, paper: Optional[bool] = None) -> int:
    gateway = OrderGateway(settings, paper_mode=paper)
    if not await gateway.verify_credentials():
        await gateway.close()
        return 1

    agent = TradingAgent(settings, gateway=gateway)
    install_stop_signals(agent.stop)
    start_metrics_server(int(config.section('monitoring').get('prometheus_port', 0) or 0))
    await agent.run()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.config:
        config.config_path = Path(args.config)
        config.reload()

    logging_cfg = config.section('logging')
    setup_logging(args.log_level or logging_cfg.get('level', 'INFO'), log_file=logging_cfg.get('file'))

    try:
        settings = resolve_settings(args)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    try:
        return asyncio.run(run_agent(settings, paper=True if args.paper else None))
    except KeyboardInterrupt:
        logger.info("System shutting down on interrupt")
        return 0


if __name__ == "__main__":
    sys.exit(main())
