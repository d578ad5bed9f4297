from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ingest.errors import ValidationError


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar; identity is ``(symbol, interval, open_time)``."""

    symbol: str
    interval: str
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    closed: bool
    trade_count: Optional[int] = None
    quote_volume: Optional[float] = None

    @property
    def key(self):
        return (self.symbol, self.interval, self.open_time)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "openTime": self.open_time,
            "closeTime": self.close_time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "closed": self.closed,
            "tradeCount": self.trade_count,
            "quoteVolume": self.quote_volume,
        }


@dataclass
class ChartSnapshot:
    symbol: str
    interval: str
    candles: List[Candle] = field(default_factory=list)
    current_price: Optional[float] = None
    last_closed: Optional[Candle] = None

    def __len__(self) -> int:
        return len(self.candles)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "interval": self.interval,
            "currentPrice": self.current_price,
            "lastClosed": self.last_closed.as_dict() if self.last_closed else None,
            "candles": [candle.as_dict() for candle in self.candles],
        }


def _number(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid kline field {name}={value!r}") from exc


def _integer(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid kline field {name}={value!r}") from exc


def decode_kline(payload: Any, symbol: Optional[str] = None) -> Candle:
    """Decode a ``<symbol>@kline_<interval>`` event into a Candle.

    Accepts both the raw event and the combined-stream ``{"stream", "data"}`` wrapper.
    """
    event = payload.get("data") if isinstance(payload, dict) and "stream" in payload else payload
    if not isinstance(event, dict):
        raise ValidationError("Kline event is not an object")
    k = event.get("k")
    if not isinstance(k, dict):
        raise ValidationError("Kline event missing 'k' block")
    if k.get("t") is None:
        raise ValidationError("Kline event missing open time")

    trades = k.get("n")
    quote = k.get("q")
    open_time = _integer(k["t"], "t")
    close_time = _integer(k.get("T") or 0, "T")

    return Candle(
        symbol=k.get("s") or event.get("s") or symbol or "",
        interval=k.get("i") or "",
        open_time=open_time,
        close_time=close_time,
        open=_number(k.get("o"), "o"),
        high=_number(k.get("h"), "h"),
        low=_number(k.get("l"), "l"),
        close=_number(k.get("c"), "c"),
        volume=_number(k.get("v"), "v"),
        closed=bool(k.get("x")),
        trade_count=_integer(trades, "n") if trades is not None else None,
        quote_volume=_number(quote, "q") if quote is not None else None,
    )


def candles_from_rest(
    symbol: str,
    interval: str,
    rows: Iterable[list],
    now_ms: Optional[int] = None,
) -> List[Candle]:
    """Map ``/fapi/v1/klines`` rows to candles.

    Row layout: ``[openTime, open, high, low, close, volume, closeTime,
    quoteVolume, trades, ...]``. Every row counts as closed unless ``now_ms``
    is given, in which case a row whose close time is still ahead of it is
    the in-progress bar.
    """
    candles = []
    for row in rows:
        if not isinstance(row, (list, tuple)) or len(row) < 7:
            raise ValidationError(f"Unexpected kline row: {row!r}")
        close_time = _integer(row[6], "closeTime")
        candles.append(
            Candle(
                symbol=symbol,
                interval=interval,
                open_time=_integer(row[0], "openTime"),
                close_time=close_time,
                open=_number(row[1], "open"),
                high=_number(row[2], "high"),
                low=_number(row[3], "low"),
                close=_number(row[4], "close"),
                volume=_number(row[5], "volume"),
                closed=now_ms is None or close_time < now_ms,
                quote_volume=_number(row[7], "quoteVolume") if len(row) > 7 else None,
                trade_count=_integer(row[8], "trades") if len(row) > 8 else None,
            )
        )
    return candles
