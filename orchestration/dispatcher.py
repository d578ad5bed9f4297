import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, TYPE_CHECKING

from api.metrics import metrics
from charts.candles import ChartSnapshot, candles_from_rest
from charts.chart_cache import ChartCache
from charts.chart_stream import ChartCallbacks, ChartStream, ChartSubscription
from config import config
from config.utils import get_config_section
from ingest.binance_rest import BinanceRESTClient
from ingest.errors import ExchangeError, TransportError, ValidationError
from ingest.transport import StreamTransport
from monitoring.async_utils import cancel_task
from sessions.user_session import SessionCallbacks, SessionOptions, SessionRegistry, UserDataSession

if TYPE_CHECKING:
    from ingest.transport import StreamConnection


logger = logging.getLogger(__name__)


@dataclass
class ChartOptions:
    limit: Optional[int] = None
    accumulate: Optional[bool] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None


class StreamDispatcher:
    """Route chart subscriptions and user-data sessions to their owners.

    A chart pair costs one REST bootstrap and one websocket no matter how
    many subscribers attach; the stream is built inside the socket's open
    continuation so no delta can arrive before it exists.
    """

    def __init__(
        self,
        rest: Optional[BinanceRESTClient] = None,
        transport: Optional[StreamTransport] = None,
        cache: Optional[ChartCache] = None,
        registry: Optional[SessionRegistry] = None,
        session_settings: Optional[Dict] = None,
    ):
        self.rest = rest or BinanceRESTClient()
        self.transport = transport or StreamTransport()
        self.cache = cache if cache is not None else ChartCache()
        self.registry = registry if registry is not None else SessionRegistry()
        self.session_settings = session_settings

        charts_cfg = get_config_section(config, 'charts')
        self.default_limit = int(charts_cfg.get('default_limit', 200))
        self.default_accumulate = bool(charts_cfg.get('accumulate', False))

        self._subscriptions: Dict[str, ChartStream] = {}
        self._reapers: Set[asyncio.Task] = set()

    # Charts -------------------------------------------------------------
    async def subscribe_chart(
        self,
        symbol: str,
        interval: str,
        options: Optional[ChartOptions] = None,
        callbacks: Optional[ChartCallbacks] = None,
    ) -> ChartSubscription:
        symbol = symbol.upper()
        options = options or ChartOptions()
        while True:
            try:
                stream = await self.cache.get_or_create(
                    symbol, interval, lambda: self._create_chart(symbol, interval, options)
                )
            except asyncio.CancelledError:
                # The shared creation keeps running; drop its stream if nobody claims it
                self._reap_unclaimed(symbol, interval)
                raise
            if not stream.closed:
                break
            # Closed between creation and attach; build a fresh one
            logger.info("Chart stream %s@%s closed before attach; recreating", symbol, interval)

        subscription = stream.subscribe(callbacks)
        self._subscriptions[subscription.subscription_id] = stream
        self._update_chart_metrics()
        logger.info(
            "Subscriber %s attached to %s@%s (%s subscribers)",
            subscription.subscription_id,
            symbol,
            interval,
            len(stream.subscribers),
        )
        return subscription

    def _reap_unclaimed(self, symbol: str, interval: str) -> None:
        task = asyncio.create_task(
            self._close_if_unclaimed(symbol, interval, self.cache.pending(symbol, interval)),
            name=f"reap:{symbol}@{interval}",
        )
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _close_if_unclaimed(self, symbol: str, interval: str, creation: Optional[asyncio.Task]) -> None:
        if creation is not None:
            await asyncio.wait({creation})
        # Let other waiters on the same creation attach first
        await asyncio.sleep(0)
        stream = self.cache.get(symbol, interval)
        if stream is None or stream.subscribers:
            return
        logger.info("Closing %s@%s: its only subscriber was cancelled during setup", symbol, interval)
        await stream.close()
        self._update_chart_metrics()

    async def unsubscribe_chart(self, subscription_id: str) -> bool:
        stream = self._subscriptions.pop(subscription_id, None)
        if stream is None:
            return False
        removed = await stream.unsubscribe(subscription_id)
        self._update_chart_metrics()
        return removed

    async def _fetch_history(self, symbol: str, interval: str, options: ChartOptions, limit: int):
        try:
            rows = await self.rest.fetch_klines(
                symbol,
                interval,
                limit=limit,
                start_time=options.start_time,
                end_time=options.end_time,
            )
            history = candles_from_rest(symbol, interval, rows, now_ms=int(time.time() * 1000))
        except (ExchangeError, TransportError, ValidationError):
            metrics.record_bootstrap(ok=False)
            logger.error("Bootstrap history for %s@%s failed", symbol, interval)
            raise
        metrics.record_bootstrap(ok=True)
        return history

    async def _create_chart(self, symbol: str, interval: str, options: ChartOptions) -> ChartStream:
        limit = int(options.limit or self.default_limit)
        accumulate = self.default_accumulate if options.accumulate is None else bool(options.accumulate)
        history = await self._fetch_history(symbol, interval, options, limit)

        url = self.transport.url_for(f"{symbol.lower()}@kline_{interval}")
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        holder: Dict[str, ChartStream] = {}

        async def _on_open(conn: 'StreamConnection'):
            stream = ChartStream(
                symbol,
                interval,
                limit,
                bootstrap=history,
                connection=conn,
                accumulate=accumulate,
                cache=self.cache,
            )
            holder['stream'] = stream
            if not ready.done():
                ready.set_result(stream)

        async def _on_message(payload):
            stream = holder.get('stream')
            if stream is None or stream.closed:
                return
            try:
                await stream.apply_update(payload)
            except ValidationError as exc:
                logger.warning("Rejected kline delta for %s@%s: %s", symbol, interval, exc)
                await stream.handle_transport_error(exc)

        async def _on_error(exc):
            stream = holder.get('stream')
            if stream is None:
                if not ready.done():
                    ready.set_exception(exc)
                return
            await stream.handle_transport_error(exc)

        async def _on_close(conn):
            stream = holder.get('stream')
            if stream is None:
                if not ready.done():
                    ready.set_exception(TransportError(f"Kline stream closed before opening: {url}"))
                return
            await stream.handle_transport_close()
            self._forget(stream)

        metrics.record_connect('kline')
        connection = self.transport.connect(
            url,
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )
        try:
            return await ready
        except BaseException:
            await connection.close()
            raise

    def _forget(self, stream: ChartStream) -> None:
        for subscription_id in [sid for sid, owner in self._subscriptions.items() if owner is stream]:
            del self._subscriptions[subscription_id]
        self._update_chart_metrics()

    def _update_chart_metrics(self) -> None:
        metrics.update_charts(len(self.cache), len(self._subscriptions))

    def get_chart(self, symbol: str, interval: str) -> Optional[ChartSnapshot]:
        stream = self.cache.get(symbol.upper(), interval)
        return stream.snapshot() if stream else None

    def charts(self) -> List[ChartSnapshot]:
        return [stream.snapshot() for stream in self.cache.streams()]

    # User data ----------------------------------------------------------
    async def open_user_session(
        self,
        options: Optional[SessionOptions] = None,
        callbacks: Optional[SessionCallbacks] = None,
    ) -> UserDataSession:
        session = UserDataSession(
            self.rest,
            self.transport,
            options=options,
            callbacks=callbacks,
            registry=self.registry,
            settings=self.session_settings,
        )
        return await session.open()

    async def close_user_session(self, session: UserDataSession) -> None:
        await session.close()

    def sessions(self) -> List[UserDataSession]:
        return self.registry.sessions()

    async def close(self) -> None:
        for task in list(self._reapers):
            await cancel_task(task)
        await self.registry.close_all()
        await self.cache.close_all()
        self._subscriptions.clear()
        self._update_chart_metrics()
        await self.rest.close()
