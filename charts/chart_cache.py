import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ingest.errors import TransportError
from .chart_stream import ChartStream


logger = logging.getLogger(__name__)

Key = Tuple[str, str]
StreamFactory = Callable[[], Awaitable[ChartStream]]


class ChartCache:
    """Owned registry holding at most one live ChartStream per (symbol, interval).

    Concurrent creation attempts for the same key share one in-flight task,
    so a pair is bootstrapped and connected exactly once.
    """

    def __init__(self):
        self._streams: Dict[Key, ChartStream] = {}
        self._pending: Dict[Key, asyncio.Task] = {}

    def __contains__(self, key: Key) -> bool:
        return key in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def get(self, symbol: str, interval: str) -> Optional[ChartStream]:
        return self._streams.get((symbol, interval))

    def keys(self) -> List[Key]:
        return list(self._streams)

    def streams(self) -> List[ChartStream]:
        return list(self._streams.values())

    def is_pending(self, symbol: str, interval: str) -> bool:
        return (symbol, interval) in self._pending

    def pending(self, symbol: str, interval: str) -> Optional[asyncio.Task]:
        return self._pending.get((symbol, interval))

    async def get_or_create(self, symbol: str, interval: str, factory: StreamFactory) -> ChartStream:
        key = (symbol, interval)
        stream = self._streams.get(key)
        if stream is not None:
            return stream

        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._create(key, factory), name=f"chart:{symbol}@{interval}")
            self._pending[key] = task
        else:
            logger.debug("Joining in-flight creation of %s@%s", symbol, interval)
        return await asyncio.shield(task)

    async def _create(self, key: Key, factory: StreamFactory) -> ChartStream:
        try:
            stream = await factory()
            if stream.closed:
                raise TransportError(f"Chart stream {key[0]}@{key[1]} closed before registration")
            existing = self._streams.get(key)
            if existing is not None and existing is not stream:
                logger.warning("Duplicate chart stream for %s@%s discarded", *key)
                await stream.close()
                return existing
            self._streams[key] = stream
            logger.info("Registered chart stream %s@%s", *key)
            return stream
        finally:
            self._pending.pop(key, None)

    def evict(self, symbol: str, interval: str, stream: Optional[ChartStream] = None) -> bool:
        key = (symbol, interval)
        current = self._streams.get(key)
        if current is None or (stream is not None and current is not stream):
            return False
        del self._streams[key]
        logger.info("Evicted chart stream %s@%s", symbol, interval)
        return True

    async def close_all(self) -> None:
        for task in list(self._pending.values()):
            task.cancel()
        if self._pending:
            await asyncio.gather(*self._pending.values(), return_exceptions=True)
        for stream in self.streams():
            await stream.close()
        self._streams.clear()
