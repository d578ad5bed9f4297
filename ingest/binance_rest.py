import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from .errors import ExchangeError, TransportError


logger = logging.getLogger(__name__)

LISTEN_KEY_PATH = "/fapi/v1/listenKey"
KLINES_PATH = "/fapi/v1/klines"


class BinanceRESTClient:
    """Signed USDⓈ-M futures REST client returning parsed JSON."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
    ):
        exchange_cfg = config.get('exchange', {})
        self.base_url = (base_url or exchange_cfg.get("rest_base_url") or "https://fapi.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key or exchange_cfg.get("api_key") or None
        self.api_secret: Optional[str] = api_secret or exchange_cfg.get("api_secret") or None
        self.recv_window = int(exchange_cfg.get("recv_window", 5000))
        self.timeout_s = float(exchange_cfg.get("request_timeout_s", 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Binance API key/secret required for signed request")
        params.setdefault("timestamp", int(time.time() * 1000))
        params.setdefault("recvWindow", self.recv_window)
        query = urlencode(params, doseq=True)
        params["signature"] = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        # Optional query values (startTime/endTime) are dropped rather than sent as "None"
        params = {key: value for key, value in (params or {}).items() if value is not None}
        headers: Dict[str, str] = {}

        if signed:
            params = self._sign(params)
        if self.api_key:
            # Listen key endpoints require the API key header without a signature
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method.upper(),
                url,
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                content_type = resp.headers.get("Content-Type", "")
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"{method.upper()} {path} failed: {exc}") from exc

        payload: Any
        if "application/json" in content_type:
            try:
                payload = json.loads(text)
            except ValueError:
                payload = text
        else:
            payload = text

        if status >= 400:
            code = None
            msg = None
            if isinstance(payload, dict):
                code = payload.get("code")
                msg = payload.get("msg")
            raise ExchangeError(status, code, msg, text)

        return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("PUT", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)

    # Endpoint helpers ---------------------------------------------------
    async def fetch_klines(
        self,
        symbol: str,
        interval: str,
        limit: Optional[int] = None,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
    ) -> List[list]:
        params = {
            "symbol": symbol,
            "interval": interval,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        rows = await self.get(KLINES_PATH, params=params)
        if not isinstance(rows, list):
            code = rows.get("code") if isinstance(rows, dict) else None
            msg = rows.get("msg") if isinstance(rows, dict) else str(rows)
            raise ExchangeError(200, code, msg, json.dumps(rows) if isinstance(rows, dict) else str(rows))
        return rows

    async def create_listen_key(self) -> Optional[str]:
        data = await self.post(LISTEN_KEY_PATH)
        if isinstance(data, dict):
            return data.get("listenKey")
        return None

    async def keepalive_listen_key(self) -> Any:
        data = await self.put(LISTEN_KEY_PATH)
        if isinstance(data, dict) and data.get("code") and data.get("msg"):
            raise ExchangeError(200, data.get("code"), data.get("msg"), json.dumps(data))
        return data

    async def close_listen_key(self) -> Any:
        return await self.delete(LISTEN_KEY_PATH)
