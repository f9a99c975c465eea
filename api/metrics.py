import errno
import logging
from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False

PHASE_CODES = {'idle': 0, 'primary_entry': 1, 'secondary_entry': 2}


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.stream_messages = Counter(
            'stream_messages_total', 'Stream messages applied to the snapshot store', ['kind'],
            registry=self.registry,
        )
        self.dropped_events = Counter(
            'dropped_events_total', 'Total dropped inbound events', ['reason'],
            registry=self.registry,
        )
        self.reconnect_count = Counter(
            'websocket_reconnects_total', 'Total WebSocket reconnects', registry=self.registry,
        )

        self.orders_placed = Counter(
            'orders_placed_total', 'Total orders placed', ['type'], registry=self.registry,
        )
        self.orders_failed = Counter(
            'orders_failed_total', 'Total orders rejected or failed', ['type'], registry=self.registry,
        )
        self.tick_errors = Counter(
            'control_tick_errors_total', 'Control loop ticks that raised', registry=self.registry,
        )

        self.current_price = Gauge('current_price', 'Latest price seen by the control loop', registry=self.registry)
        self.position_phase = Gauge(
            'position_phase', 'Position phase (0=idle, 1=primary, 2=secondary)', registry=self.registry,
        )
        self.position_size = Gauge('position_size_notional', 'Remaining open notional', registry=self.registry)
        self.entry_price = Gauge('position_entry_price', 'Entry price of the open position', registry=self.registry)

    def record_stream_message(self, kind: str):
        self.stream_messages.labels(kind=kind).inc()

    def record_drop(self, reason: str):
        self.dropped_events.labels(reason=reason).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def record_order_placed(self, order_type: str):
        self.orders_placed.labels(type=order_type).inc()

    def record_order_failed(self, order_type: str):
        self.orders_failed.labels(type=order_type).inc()

    def record_tick_error(self):
        self.tick_errors.inc()

    def update_price(self, price: float):
        self.current_price.set(price)

    def update_position(self, phase: str, current_size: float, entry_price: float):
        self.position_phase.set(PHASE_CODES.get(phase, -1))
        self.position_size.set(current_size)
        self.entry_price.set(entry_price)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    if not port:
        logger.info("Prometheus metrics server disabled")
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate, registry=metrics.registry)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
