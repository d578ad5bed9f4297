from typing import Optional


class StreamSyncError(Exception):
    """Base class for failures scoped to one chart stream or user session."""


class TransportError(StreamSyncError):
    """Socket connect/send/receive failure."""


class AuthError(StreamSyncError):
    """Listen key missing, invalid or expired."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.code = code
        super().__init__(message)


class ValidationError(StreamSyncError):
    """Malformed streaming payload, e.g. a kline event without its ``k`` block."""


class ExchangeError(StreamSyncError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str = ""):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def token_missing(self) -> bool:
        return self.code == -1125 or (self.msg or "") == "This listenKey does not exist."


class PositionsLoadError(StreamSyncError):
    """Terminal failure of a correlated position request after all retries."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed to load positions after {attempts} attempts")
