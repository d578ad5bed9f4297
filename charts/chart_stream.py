import dataclasses
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, TYPE_CHECKING

from sortedcontainers import SortedDict

from api.metrics import metrics
from ingest.errors import TransportError, ValidationError
from monitoring.async_utils import invoke_callback
from .candles import Candle, ChartSnapshot, decode_kline

if TYPE_CHECKING:
    from ingest.transport import StreamConnection
    from .chart_cache import ChartCache


logger = logging.getLogger(__name__)


@dataclass
class ChartCallbacks:
    on_update: Optional[Callable[[ChartSnapshot], Any]] = None
    on_close: Optional[Callable[[], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None


@dataclass
class ChartSubscription:
    subscription_id: str
    symbol: str
    interval: str
    chart: ChartSnapshot


class ChartStream:
    """Rolling candle window for one symbol/interval.

    History is seeded once from REST and then kept current by kline deltas.
    Candles are keyed by open time, so retransmitted or out-of-order deltas
    overwrite instead of appending. Only closed candles are stored; the
    in-progress bar lives in ``current_stream``. With ``accumulate`` off the
    window never holds more than ``limit`` candles and the oldest open time
    is evicted first.
    """

    def __init__(
        self,
        symbol: str,
        interval: str,
        limit: int,
        bootstrap: Optional[Iterable[Candle]] = None,
        connection: Optional['StreamConnection'] = None,
        accumulate: bool = False,
        cache: Optional['ChartCache'] = None,
    ):
        if limit is None or int(limit) < 1:
            raise ValueError(f"Chart limit must be positive, got {limit!r}")
        self.symbol = symbol
        self.interval = interval
        self.limit = int(limit)
        self.accumulate = accumulate
        self.connection = connection
        self.current_stream: Optional[Candle] = None
        self.subscribers: Dict[str, ChartCallbacks] = {}
        self.closed = False
        self._cache = cache

        self.candles: SortedDict = SortedDict()
        for candle in bootstrap or ():
            if candle.closed:
                self.candles[candle.open_time] = candle
        if not self.accumulate:
            while len(self.candles) > self.limit:
                self.candles.popitem(0)

    @property
    def key(self):
        return (self.symbol, self.interval)

    def __repr__(self) -> str:
        return (
            f"ChartStream({self.symbol}@{self.interval}, candles={len(self.candles)}, "
            f"subscribers={len(self.subscribers)})"
        )

    # Snapshot -----------------------------------------------------------
    @property
    def last_closed(self) -> Optional[Candle]:
        if not self.candles:
            return None
        return self.candles.peekitem(-1)[1]

    @property
    def current_price(self) -> Optional[float]:
        if self.current_stream is not None:
            return self.current_stream.close
        last = self.last_closed
        return last.close if last else None

    def snapshot(self) -> ChartSnapshot:
        candles = list(self.candles.values())
        current = self.current_stream
        if current is not None and current.open_time not in self.candles:
            candles.append(current)
        candles.sort(key=lambda candle: candle.open_time, reverse=True)
        return ChartSnapshot(
            symbol=self.symbol,
            interval=self.interval,
            candles=candles,
            current_price=self.current_price,
            last_closed=self.last_closed,
        )

    # Deltas -------------------------------------------------------------
    async def apply_update(self, raw_delta: Any) -> Candle:
        try:
            candle = decode_kline(raw_delta, symbol=self.symbol)
        except ValidationError:
            metrics.record_kline_rejected(self.symbol, self.interval)
            raise
        if not candle.interval:
            candle = dataclasses.replace(candle, interval=self.interval)

        self.current_stream = candle
        if candle.closed:
            self.candles[candle.open_time] = candle
            if not self.accumulate and len(self.candles) > self.limit:
                evicted_at, _ = self.candles.popitem(0)
                metrics.record_eviction()
                logger.debug("%s@%s evicted candle %s", self.symbol, self.interval, evicted_at)

        metrics.record_kline(self.symbol, self.interval)
        await self._notify('update', self.snapshot())
        return candle

    # Subscribers --------------------------------------------------------
    def subscribe(self, callbacks: Optional[ChartCallbacks] = None) -> ChartSubscription:
        if self.closed:
            raise TransportError(f"Chart stream {self.symbol}@{self.interval} is closed")
        subscription_id = uuid.uuid4().hex
        self.subscribers[subscription_id] = callbacks or ChartCallbacks()
        logger.debug("%s@%s subscriber %s attached", self.symbol, self.interval, subscription_id)
        return ChartSubscription(subscription_id, self.symbol, self.interval, self.snapshot())

    async def unsubscribe(self, subscription_id: str) -> bool:
        if self.subscribers.pop(subscription_id, None) is None:
            return False
        if not self.subscribers:
            logger.info("Last subscriber left %s@%s; closing stream", self.symbol, self.interval)
            await self.close()
        return True

    async def _notify(self, kind: str, *args: Any) -> None:
        for callbacks in list(self.subscribers.values()):
            callback = getattr(callbacks, f"on_{kind}")
            await invoke_callback(callback, *args, label=f"chart {kind}")

    # Transport events ---------------------------------------------------
    async def handle_transport_error(self, exc: Exception) -> None:
        logger.warning("%s@%s stream error: %s", self.symbol, self.interval, exc)
        await self._notify('error', exc)

    async def handle_transport_close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._evict()
        logger.warning("%s@%s transport closed with %s subscribers", self.symbol, self.interval, len(self.subscribers))
        await self._notify('close')
        self.subscribers.clear()

    def _evict(self) -> None:
        if self._cache is not None:
            self._cache.evict(self.symbol, self.interval, self)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._evict()
        if self.connection is not None:
            await self.connection.close()
        if self.subscribers:
            logger.info("%s@%s closed with %s subscribers", self.symbol, self.interval, len(self.subscribers))
            await self._notify('close')
            self.subscribers.clear()
