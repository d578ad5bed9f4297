import asyncio
import json
import logging
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosedOK

from config import config
from monitoring.async_utils import cancel_task, invoke_callback
from .errors import TransportError


logger = logging.getLogger(__name__)

Hook = Callable[..., Any]

_DEFAULT = object()


class StreamConnection:
    """One websocket with open/message/error/close hooks and a JSON ``send``.

    The reader task awaits ``on_open`` before the first frame is dispatched,
    so anything built inside the open hook exists before messages arrive.
    ``on_close`` fires exactly once, however the socket ends.
    """

    def __init__(
        self,
        url: str,
        on_open: Optional[Hook] = None,
        on_message: Optional[Hook] = None,
        on_error: Optional[Hook] = None,
        on_close: Optional[Hook] = None,
        stale_timeout_s: Optional[float] = None,
        open_timeout_s: Optional[float] = None,
    ):
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.stale_timeout_s = stale_timeout_s
        self.open_timeout_s = open_timeout_s

        self.opened = False
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._close_notified = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self.opened and not self._closing

    @property
    def closed(self) -> bool:
        return self._close_notified

    def start(self) -> "StreamConnection":
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"stream:{self.url}")
        return self

    async def _recv(self, ws) -> Any:
        if not self.stale_timeout_s:
            return await ws.recv()
        try:
            return await asyncio.wait_for(ws.recv(), timeout=self.stale_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Stream %s stale for %.1fs; closing", self.url, self.stale_timeout_s)
            raise TransportError(f"Stream stale: {self.url}")

    async def _run(self):
        try:
            async with websockets.connect(
                self.url,
                ping_interval=None,
                open_timeout=self.open_timeout_s,
            ) as ws:
                self._ws = ws
                self.opened = True
                logger.info("Stream opened: %s", self.url)
                await invoke_callback(self.on_open, self, label="transport open")

                while not self._closing:
                    raw = await self._recv(ws)
                    try:
                        payload = json.loads(raw)
                    except ValueError:
                        logger.warning("Dropping non-JSON frame on %s", self.url)
                        continue
                    await invoke_callback(self.on_message, payload, label="transport message")

        except asyncio.CancelledError:
            pass
        except ConnectionClosedOK:
            logger.info("Stream closed by peer: %s", self.url)
        except Exception as exc:
            if not self._closing:
                error = exc if isinstance(exc, TransportError) else TransportError(f"{self.url}: {exc}")
                logger.error("Stream %s error: %s", self.url, exc)
                await invoke_callback(self.on_error, error, label="transport error")
        finally:
            self._ws = None
            await self._notify_close()

    async def _notify_close(self):
        if self._close_notified:
            return
        self._close_notified = True
        logger.info("Stream closed: %s", self.url)
        await invoke_callback(self.on_close, self, label="transport close")

    async def send(self, payload: Any) -> None:
        ws = self._ws
        if ws is None or not self.is_open:
            raise TransportError(f"Stream not open: {self.url}")
        try:
            await ws.send(json.dumps(payload))
        except Exception as exc:
            raise TransportError(f"Send failed on {self.url}: {exc}") from exc

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Ignoring close failure on %s: %s", self.url, exc)
        await cancel_task(self._task)
        if self._task is None or self._task is asyncio.current_task():
            await self._notify_close()


class StreamTransport:
    """Factory for websocket connections against the futures stream host."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        stale_timeout_s: Optional[float] = None,
        open_timeout_s: Optional[float] = None,
    ):
        exchange_cfg = config.get('exchange', {})
        ws_cfg = config.get('websocket', {})
        self.base_url = (base_url or exchange_cfg.get('ws_base_url') or 'wss://fstream.binance.com/ws').rstrip('/')
        self.stale_timeout_s = stale_timeout_s if stale_timeout_s is not None else ws_cfg.get('stream_stale_s', 30)
        self.open_timeout_s = open_timeout_s if open_timeout_s is not None else ws_cfg.get('open_timeout_s', 10)

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def connect(
        self,
        url: str,
        on_open: Optional[Hook] = None,
        on_message: Optional[Hook] = None,
        on_error: Optional[Hook] = None,
        on_close: Optional[Hook] = None,
        stale_timeout_s: Any = _DEFAULT,
    ) -> StreamConnection:
        """Start connecting to ``url`` and return the handle immediately."""
        connection = StreamConnection(
            url,
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            on_close=on_close,
            stale_timeout_s=self.stale_timeout_s if stale_timeout_s is _DEFAULT else stale_timeout_s,
            open_timeout_s=self.open_timeout_s,
        )
        return connection.start()
