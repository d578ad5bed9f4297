import asyncio
import logging
from typing import Dict, List, Optional

from api.metrics import start_metrics_server
from charts.candles import ChartSnapshot
from charts.chart_stream import ChartCallbacks, ChartSubscription
from config import config
from ingest.errors import StreamSyncError
from ingest.user_events import AccountUpdate, MarginCall, OrderUpdate, UserDataEvent
from monitoring.logging_utils import setup_logging
from orchestration.dispatcher import StreamDispatcher
from sessions.user_session import SessionCallbacks, UserDataSession


logger = logging.getLogger(__name__)


class StreamSyncApp:
    """Keep the configured charts and, with credentials, the user stream live."""

    def __init__(self, config_obj=None, dispatcher: Optional[StreamDispatcher] = None):
        self.config = config_obj or config
        self.api_cfg = self.config.get('api', {})
        self.exchange_cfg = self.config.get('exchange', {})
        self.monitoring_cfg = self.config.get('monitoring', {})
        self.dispatcher = dispatcher or StreamDispatcher()
        self.subscriptions: List[ChartSubscription] = []
        self.session: Optional[UserDataSession] = None
        self.last_prices: Dict[str, float] = {}
        self.running = False
        self._stopped: Optional[asyncio.Event] = None

    def _on_chart_update(self, snapshot: ChartSnapshot) -> None:
        key = f"{snapshot.symbol}@{snapshot.interval}"
        previous = self.last_prices.get(key)
        if snapshot.current_price is None or snapshot.current_price == previous:
            return
        self.last_prices[key] = snapshot.current_price
        logger.info("%s price %.8g (%s candles)", key, snapshot.current_price, len(snapshot))

    def _on_user_event(self, event: UserDataEvent) -> None:
        if isinstance(event, OrderUpdate):
            logger.info("Order %s %s %s status=%s", event.order_id, event.symbol, event.side, event.status)
        elif isinstance(event, AccountUpdate):
            logger.info("Account update (%s): %s positions", event.reason, len(event.positions))
        elif isinstance(event, MarginCall):
            logger.warning("Margin call on %s positions", len(event.positions))
        else:
            logger.debug("User event %s", event.event_type)

    async def start(self):
        self.running = True
        self._stopped = asyncio.Event()

        for entry in self.api_cfg.get('charts', []) or []:
            try:
                subscription = await self.dispatcher.subscribe_chart(
                    entry['symbol'],
                    entry['interval'],
                    callbacks=ChartCallbacks(
                        on_update=self._on_chart_update,
                        on_close=lambda: logger.warning("Chart stream closed"),
                        on_error=lambda exc: logger.warning("Chart stream error: %s", exc),
                    ),
                )
                self.subscriptions.append(subscription)
                logger.info(
                    "Chart %s@%s bootstrapped with %s candles",
                    subscription.symbol,
                    subscription.interval,
                    len(subscription.chart),
                )
            except StreamSyncError as exc:
                logger.error("Chart %s@%s unavailable: %s", entry.get('symbol'), entry.get('interval'), exc)

        if self.exchange_cfg.get('api_key'):
            try:
                self.session = await self.dispatcher.open_user_session(
                    callbacks=SessionCallbacks(
                        on_data=self._on_user_event,
                        on_error=lambda exc: logger.error("User stream error: %s", exc),
                        on_reconnecting=lambda session: logger.warning("User stream reconnecting"),
                        on_reconnected=lambda session: logger.info("User stream reconnected"),
                    )
                )
            except StreamSyncError as exc:
                logger.error("User data session unavailable: %s", exc)
        else:
            logger.info("No API key configured; skipping user data stream")

        await self._stopped.wait()

    async def stop(self):
        self.running = False
        for subscription in self.subscriptions:
            await self.dispatcher.unsubscribe_chart(subscription.subscription_id)
        self.subscriptions.clear()
        await self.dispatcher.close()
        if self._stopped is not None:
            self._stopped.set()


async def main():
    start_metrics_server(int(config.get('monitoring', {}).get('prometheus_port', 9090)))
    app = StreamSyncApp(config)
    try:
        await app.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down on interrupt")
    finally:
        await app.stop()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
