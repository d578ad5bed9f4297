import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from api.metrics import metrics
from config import config
from config.utils import merged_settings
from ingest.errors import AuthError, ExchangeError, PositionsLoadError, StreamSyncError, TransportError
from ingest.user_events import TokenExpired, decode_user_event
from monitoring.async_utils import cancel_task, invoke_callback

if TYPE_CHECKING:
    from ingest.binance_rest import BinanceRESTClient
    from ingest.transport import StreamConnection, StreamTransport


logger = logging.getLogger(__name__)

PositionsCallback = Callable[[Optional[list], Optional[Exception]], Any]


class SessionState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass
class SessionOptions:
    keep_alive: Optional[bool] = None
    keep_alive_interval_s: Optional[float] = None
    revoke_on_close: Optional[bool] = None


@dataclass
class SessionCallbacks:
    on_open: Optional[Callable] = None
    on_data: Optional[Callable] = None
    on_error: Optional[Callable] = None
    on_close: Optional[Callable] = None
    on_reconnecting: Optional[Callable] = None
    on_reconnected: Optional[Callable] = None


class SessionRegistry:
    """Owned table of active user-data sessions keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, 'UserDataSession'] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def register(self, session: 'UserDataSession') -> None:
        self._sessions[session.session_id] = session
        metrics.update_sessions(len(self._sessions))

    def deregister(self, session: 'UserDataSession') -> bool:
        if self._sessions.get(session.session_id) is not session:
            return False
        del self._sessions[session.session_id]
        metrics.update_sessions(len(self._sessions))
        return True

    def get(self, session_id: str) -> Optional['UserDataSession']:
        return self._sessions.get(session_id)

    def is_active(self, session: 'UserDataSession') -> bool:
        return self._sessions.get(session.session_id) is session

    def sessions(self) -> List['UserDataSession']:
        return list(self._sessions.values())

    async def close_all(self) -> None:
        for session in self.sessions():
            await session.close()


class UserDataSession:
    """Authenticated user-data stream bound to a renewable listen key.

    CONNECTING -> OPEN -> (RECONNECTING <-> OPEN) -> CLOSED. When the venue
    reports the key expired, a fresh key and socket replace the old ones
    under the same session object, so callers keep their handle and
    callbacks. Correlated requests (positions) are retried a bounded number
    of times and always end with exactly one callback invocation.
    """

    def __init__(
        self,
        rest: 'BinanceRESTClient',
        transport: 'StreamTransport',
        options: Optional[SessionOptions] = None,
        callbacks: Optional[SessionCallbacks] = None,
        registry: Optional[SessionRegistry] = None,
        settings: Optional[Dict[str, Any]] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.rest = rest
        self.transport = transport
        self.options = options or SessionOptions()
        self.callbacks = callbacks or SessionCallbacks()
        self.registry = registry
        self._sleep = sleep

        overrides = dict(settings or {})
        for name in ('keep_alive', 'keep_alive_interval_s', 'revoke_on_close'):
            value = getattr(self.options, name)
            if value is not None:
                overrides[name] = value
        cfg = merged_settings(config, 'user_stream', overrides)
        self.keep_alive = bool(cfg.get('keep_alive', True))
        self.keep_alive_interval_s = float(cfg.get('keep_alive_interval_s', 45 * 60))
        self.request_timeout_s = float(cfg.get('request_timeout_s', 5))
        self.retry_delay_s = float(cfg.get('retry_delay_s', 5))
        self.max_request_attempts = int(cfg.get('max_request_attempts', 3))
        self.revoke_on_close = bool(cfg.get('revoke_on_close', True))
        self.token_validity_s = float(cfg.get('token_validity_s', 60 * 60))
        if self.keep_alive and self.keep_alive_interval_s >= self.token_validity_s:
            raise ValueError(
                f"keep_alive_interval_s ({self.keep_alive_interval_s:g}) must be shorter than "
                f"token_validity_s ({self.token_validity_s:g})"
            )

        self.session_id = uuid.uuid4().hex
        self.state = SessionState.CONNECTING
        self.token: Optional[str] = None
        # Lifetime count of token reloads; never reset by a successful reconnect
        self.reload_attempts = 0
        self.pending_requests: Dict[str, asyncio.Future] = {}

        self._connection: Optional['StreamConnection'] = None
        self._keep_alive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._request_tasks: Set[asyncio.Task] = set()
        self._was_open = False

    def __repr__(self) -> str:
        return f"UserDataSession({self.session_id[:8]}, state={self.state.value})"

    @property
    def connection(self) -> Optional['StreamConnection']:
        return self._connection

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def _is_active(self) -> bool:
        return self.registry is None or self.registry.is_active(self)

    # Lifecycle ----------------------------------------------------------
    async def open(self) -> 'UserDataSession':
        if self.state is not SessionState.CONNECTING:
            raise StreamSyncError(f"Session {self.session_id} cannot open from state {self.state.value}")
        if self.registry is not None:
            self.registry.register(self)
        try:
            await self._establish()
        except BaseException:
            await self.close()
            raise
        self.state = SessionState.OPEN
        self._was_open = True
        logger.info("User data session %s open", self.session_id)
        await invoke_callback(self.callbacks.on_open, self, label="session open")
        return self

    async def _issue_token(self) -> str:
        try:
            token = await self.rest.create_listen_key()
        except ExchangeError as exc:
            raise AuthError(f"Listen key request rejected: {exc.msg}", code=exc.code) from exc
        if not token:
            raise AuthError("Venue returned no listen key")
        return token

    async def _establish(self) -> None:
        """Issue a token, open its socket and start the keep-alive timer."""
        token = await self._issue_token()
        url = self.transport.url_for(token)
        opened: asyncio.Future = asyncio.get_running_loop().create_future()
        connection: Optional['StreamConnection'] = None

        async def _on_open(conn):
            if self.state is SessionState.CLOSED:
                if not opened.done():
                    opened.set_exception(TransportError(f"Session {self.session_id} closed while connecting"))
                return
            # Adopt the socket before the reader dispatches its first frame
            self.token = token
            self._connection = conn
            if not opened.done():
                opened.set_result(conn)

        async def _on_message(payload):
            await self._handle_message(connection, payload)

        async def _on_error(exc):
            if not opened.done():
                opened.set_exception(exc)
                return
            await self._handle_transport_error(connection, exc)

        async def _on_close(conn):
            if not opened.done():
                opened.set_exception(TransportError(f"User stream closed before opening: {url}"))
                return
            await self._handle_transport_close(connection)

        metrics.record_connect('user')
        # User streams can be silent for long periods; no stale timeout
        connection = self.transport.connect(
            url,
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
            stale_timeout_s=None,
        )
        try:
            await opened
        except BaseException:
            await connection.close()
            raise

        if self.keep_alive:
            self._start_keep_alive()

    async def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        await cancel_task(self._keep_alive_task)
        self._keep_alive_task = None
        await cancel_task(self._reconnect_task)
        self._reconnect_task = None
        for task in list(self._request_tasks):
            await cancel_task(task)
        for future in self.pending_requests.values():
            if not future.done():
                future.cancel()
        self.pending_requests.clear()

        if self.registry is not None:
            self.registry.deregister(self)

        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

        if self.revoke_on_close and self.token:
            try:
                await self.rest.close_listen_key()
            except Exception as exc:
                logger.warning("Listen key revoke failed for session %s: %s", self.session_id, exc)

        logger.info("User data session %s closed", self.session_id)
        if self._was_open:
            await invoke_callback(self.callbacks.on_close, self, label="session close")

    # Keep-alive ---------------------------------------------------------
    def _start_keep_alive(self) -> None:
        if self._keep_alive_task is not None and not self._keep_alive_task.done():
            return
        self._keep_alive_task = asyncio.create_task(
            self._keep_alive_loop(), name=f"keepalive:{self.session_id[:8]}"
        )

    async def _keep_alive_loop(self) -> None:
        while self.state is not SessionState.CLOSED:
            await asyncio.sleep(self.keep_alive_interval_s)
            if not await self.ping():
                break

    async def ping(self) -> bool:
        """Extend the listen key; False only when the key no longer exists."""
        try:
            await self.rest.keepalive_listen_key()
            logger.debug("Listen key extended for session %s", self.session_id)
            return True
        except ExchangeError as exc:
            if exc.token_missing:
                metrics.record_keepalive_failure('token_missing')
                logger.error("Listen key for session %s no longer exists; keep-alive stopped", self.session_id)
                await invoke_callback(
                    self.callbacks.on_error,
                    AuthError(exc.msg or "Listen key does not exist", code=exc.code),
                    label="session error",
                )
                return False
            metrics.record_keepalive_failure('exchange')
            logger.warning("Listen key ping failed for session %s: %s", self.session_id, exc)
        except TransportError as exc:
            metrics.record_keepalive_failure('transport')
            logger.warning("Listen key ping failed for session %s: %s", self.session_id, exc)
        return True

    # Inbound ------------------------------------------------------------
    async def _handle_message(self, connection: Optional['StreamConnection'], payload: Any) -> None:
        if connection is not self._connection or self.state is SessionState.CLOSED:
            return
        if isinstance(payload, dict) and "id" in payload and "e" not in payload:
            self._resolve_request(payload)
            return

        event = decode_user_event(payload)
        metrics.record_user_event(event.event_type or 'unknown')
        await invoke_callback(self.callbacks.on_data, event, label="session data")
        if isinstance(event, TokenExpired):
            self._schedule_reconnect()

    def _resolve_request(self, payload: Dict[str, Any]) -> None:
        request_id = payload.get("id")
        future = self.pending_requests.pop(request_id, None)
        if future is None:
            logger.debug("Dropping response for unknown request %s", request_id)
            return
        if not future.done():
            future.set_result(payload)

    async def _handle_transport_error(self, connection: Optional['StreamConnection'], exc: Exception) -> None:
        if connection is not self._connection:
            return
        await invoke_callback(self.callbacks.on_error, exc, label="session error")

    async def _handle_transport_close(self, connection: Optional['StreamConnection']) -> None:
        if connection is not self._connection or self.state is not SessionState.OPEN:
            return
        logger.warning("User data stream for session %s closed unexpectedly", self.session_id)
        await self.close()

    # Reconnection -------------------------------------------------------
    def _schedule_reconnect(self) -> None:
        if self.state is not SessionState.OPEN or not self._is_active():
            logger.info("Ignoring token expiry for inactive session %s", self.session_id)
            return
        self.state = SessionState.RECONNECTING
        self._reconnect_task = asyncio.create_task(self._reconnect(), name=f"reconnect:{self.session_id[:8]}")

    async def _reconnect(self) -> None:
        logger.warning("Listen key expired for session %s; reconnecting", self.session_id)
        await invoke_callback(self.callbacks.on_reconnecting, self, label="session reconnecting")
        old_connection = self._connection
        await cancel_task(self._keep_alive_task)
        self._keep_alive_task = None
        self.reload_attempts += 1

        try:
            await self._establish()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            metrics.record_reconnect(ok=False)
            logger.error("Session %s reconnect failed: %s", self.session_id, exc)
            await invoke_callback(self.callbacks.on_error, exc, label="session error")
            await self.close()
            return

        if old_connection is not None:
            await old_connection.close()
        self.state = SessionState.OPEN
        metrics.record_reconnect(ok=True)
        logger.info("Session %s reconnected with a new listen key", self.session_id)
        await invoke_callback(self.callbacks.on_reconnected, self, label="session reconnected")

    # Correlated requests ------------------------------------------------
    async def _send(self, payload: Dict[str, Any]) -> None:
        connection = self._connection
        if connection is None:
            raise TransportError(f"Session {self.session_id} has no open socket")
        await connection.send(payload)

    async def _request_once(self, method: str, params: List[Any]) -> Optional[Any]:
        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.pending_requests[request_id] = future
        try:
            await self._send({"id": request_id, "method": method, "params": params})
            response = await asyncio.wait_for(future, timeout=self.request_timeout_s)
        except (TransportError, asyncio.TimeoutError) as exc:
            logger.warning("Request %s on session %s got no response: %s", method, self.session_id, exc or "timeout")
            return None
        finally:
            self.pending_requests.pop(request_id, None)

        result = response.get("result") if isinstance(response, dict) else None
        if not isinstance(result, list) or not result:
            return None
        return result

    def request_positions(self, callback: PositionsCallback) -> asyncio.Task:
        """Request positions over the socket; ``callback(result, error)`` fires exactly once."""
        task = asyncio.create_task(self._positions_request(callback), name=f"positions:{self.session_id[:8]}")
        self._request_tasks.add(task)
        task.add_done_callback(self._request_tasks.discard)
        return task

    async def _positions_request(self, callback: PositionsCallback) -> Optional[list]:
        attempts = 0
        try:
            while True:
                attempts += 1
                result = await self._request_once("REQUEST", [f"{self.token}@position"])
                if result is not None:
                    await invoke_callback(callback, result, None, label="positions")
                    return result

                logger.warning(
                    "Empty position response on session %s (attempt %s/%s)",
                    self.session_id,
                    attempts,
                    self.max_request_attempts,
                )
                await self._sleep(self.retry_delay_s)
                if attempts >= self.max_request_attempts:
                    metrics.record_position_failure()
                    await invoke_callback(callback, None, PositionsLoadError(attempts), label="positions")
                    return None
                metrics.record_position_retry()
        except asyncio.CancelledError:
            await invoke_callback(
                callback, None, TransportError(f"Session {self.session_id} closed"), label="positions"
            )
            raise

    async def fetch_positions(self) -> list:
        """Awaitable form of ``request_positions``; raises the terminal error."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def _done(result, error):
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)

        self.request_positions(_done)
        return await future
