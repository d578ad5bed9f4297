import errno
import logging
from prometheus_client import Counter, Gauge, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False


def _get_port_scan_limit() -> int:
    try:
        return int(config.get('monitoring', {}).get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.kline_updates = Counter('kline_updates_total', 'Kline deltas applied', ['symbol', 'interval'])
        self.kline_rejected = Counter('kline_updates_rejected_total', 'Malformed kline deltas', ['symbol', 'interval'])
        self.candles_evicted = Counter('chart_candles_evicted_total', 'Candles evicted from rolling windows')
        self.chart_bootstraps = Counter('chart_bootstraps_total', 'Historical bootstraps fetched', ['result'])
        self.transport_connects = Counter('transport_connects_total', 'Websocket connections started', ['kind'])
        self.active_charts = Gauge('chart_streams_active', 'Live chart streams')
        self.chart_subscribers = Gauge('chart_subscribers', 'Subscribers attached to chart streams')

        self.active_sessions = Gauge('user_sessions_active', 'Open user-data sessions')
        self.session_reconnects = Counter('user_session_reconnects_total', 'Listen key expiry reconnections', ['result'])
        self.keepalive_failures = Counter('listen_key_keepalive_failures_total', 'Failed listen key pings', ['reason'])
        self.user_events = Counter('user_events_total', 'Decoded user-data events', ['event'])
        self.position_retries = Counter('position_request_retries_total', 'Position request retries')
        self.position_failures = Counter('position_request_failures_total', 'Position requests exhausted')
        self.callback_errors = Counter('subscriber_callback_errors_total', 'Subscriber callbacks that raised', ['callback'])

    def record_kline(self, symbol: str, interval: str):
        self.kline_updates.labels(symbol=symbol, interval=interval).inc()

    def record_kline_rejected(self, symbol: str, interval: str):
        self.kline_rejected.labels(symbol=symbol, interval=interval).inc()

    def record_eviction(self, count: int = 1):
        self.candles_evicted.inc(count)

    def record_bootstrap(self, ok: bool):
        self.chart_bootstraps.labels(result='ok' if ok else 'failed').inc()

    def record_connect(self, kind: str):
        self.transport_connects.labels(kind=kind).inc()

    def update_charts(self, streams: int, subscribers: int):
        self.active_charts.set(streams)
        self.chart_subscribers.set(subscribers)

    def update_sessions(self, count: int):
        self.active_sessions.set(count)

    def record_reconnect(self, ok: bool = True):
        self.session_reconnects.labels(result='ok' if ok else 'failed').inc()

    def record_keepalive_failure(self, reason: str):
        self.keepalive_failures.labels(reason=reason).inc()

    def record_user_event(self, event: str):
        self.user_events.labels(event=event).inc()

    def record_position_retry(self):
        self.position_retries.inc()

    def record_position_failure(self):
        self.position_failures.inc()

    def record_callback_error(self, callback: str):
        self.callback_errors.labels(callback=callback).inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
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
