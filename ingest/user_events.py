"""Closed set of user-data stream events.

Payloads are discriminated on their ``e`` tag once, at the transport
boundary; downstream code matches on the dataclass type.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


MARGIN_CALL = "MARGIN_CALL"
ACCOUNT_UPDATE = "ACCOUNT_UPDATE"
ORDER_TRADE_UPDATE = "ORDER_TRADE_UPDATE"
ACCOUNT_CONFIG_UPDATE = "ACCOUNT_CONFIG_UPDATE"
TRADE_LITE = "TRADE_LITE"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
# Tag the venue actually sends when a listen key lapses
LISTEN_KEY_EXPIRED = "listenKeyExpired"


def _float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class UserEvent:
    event_type: str
    event_time: Optional[int] = None
    transaction_time: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class MarginCallPosition:
    symbol: str
    position_side: Optional[str]
    position_amount: Optional[float]
    margin_type: Optional[str]
    isolated_wallet: Optional[float]
    mark_price: Optional[float]
    unrealized_pnl: Optional[float]
    maintenance_margin: Optional[float]


@dataclass
class MarginCall(UserEvent):
    cross_wallet_balance: Optional[float] = None
    positions: List[MarginCallPosition] = field(default_factory=list)


@dataclass
class Balance:
    asset: str
    wallet_balance: Optional[float]
    cross_wallet_balance: Optional[float]
    balance_change: Optional[float]


@dataclass
class AccountPosition:
    symbol: str
    position_amount: Optional[float]
    entry_price: Optional[float]
    accumulated_realized: Optional[float]
    unrealized_pnl: Optional[float]
    margin_type: Optional[str]
    isolated_wallet: Optional[float]
    position_side: Optional[str]


@dataclass
class AccountUpdate(UserEvent):
    reason: Optional[str] = None
    balances: List[Balance] = field(default_factory=list)
    positions: List[AccountPosition] = field(default_factory=list)


@dataclass
class OrderUpdate(UserEvent):
    symbol: Optional[str] = None
    client_order_id: Optional[str] = None
    order_id: Optional[int] = None
    side: Optional[str] = None
    order_type: Optional[str] = None
    status: Optional[str] = None
    execution_type: Optional[str] = None
    price: Optional[float] = None
    average_price: Optional[float] = None
    quantity: Optional[float] = None
    filled_quantity: Optional[float] = None
    last_filled_price: Optional[float] = None
    realized_profit: Optional[float] = None
    position_side: Optional[str] = None


@dataclass
class AccountConfigUpdate(UserEvent):
    symbol: Optional[str] = None
    leverage: Optional[int] = None
    multi_assets_mode: Optional[bool] = None


@dataclass
class TradeLite(UserEvent):
    symbol: Optional[str] = None
    client_order_id: Optional[str] = None
    order_id: Optional[int] = None
    trade_id: Optional[int] = None
    side: Optional[str] = None
    original_price: Optional[float] = None
    original_quantity: Optional[float] = None
    last_filled_price: Optional[float] = None
    last_filled_quantity: Optional[float] = None
    is_maker: Optional[bool] = None


@dataclass
class TokenExpired(UserEvent):
    listen_key: Optional[str] = None


@dataclass
class UnknownEvent(UserEvent):
    pass


UserDataEvent = Union[MarginCall, AccountUpdate, OrderUpdate, AccountConfigUpdate, TradeLite, TokenExpired, UnknownEvent]


def _base(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "event_type": event.get("e") or "",
        "event_time": event.get("E"),
        "transaction_time": event.get("T"),
        "raw": event,
    }


def _margin_call(event: Dict[str, Any]) -> MarginCall:
    positions = [
        MarginCallPosition(
            symbol=p.get("s"),
            position_side=p.get("ps"),
            position_amount=_float(p.get("pa")),
            margin_type=p.get("mt"),
            isolated_wallet=_float(p.get("iw")),
            mark_price=_float(p.get("mp")),
            unrealized_pnl=_float(p.get("up")),
            maintenance_margin=_float(p.get("mm")),
        )
        for p in event.get("p") or []
        if isinstance(p, dict)
    ]
    return MarginCall(cross_wallet_balance=_float(event.get("cw")), positions=positions, **_base(event))


def _account_update(event: Dict[str, Any]) -> AccountUpdate:
    data = event.get("a") or {}
    balances = [
        Balance(
            asset=b.get("a"),
            wallet_balance=_float(b.get("wb")),
            cross_wallet_balance=_float(b.get("cw")),
            balance_change=_float(b.get("bc")),
        )
        for b in data.get("B") or []
        if isinstance(b, dict)
    ]
    positions = [
        AccountPosition(
            symbol=p.get("s"),
            position_amount=_float(p.get("pa")),
            entry_price=_float(p.get("ep")),
            accumulated_realized=_float(p.get("cr")),
            unrealized_pnl=_float(p.get("up")),
            margin_type=p.get("mt"),
            isolated_wallet=_float(p.get("iw")),
            position_side=p.get("ps"),
        )
        for p in data.get("P") or []
        if isinstance(p, dict)
    ]
    return AccountUpdate(reason=data.get("m"), balances=balances, positions=positions, **_base(event))


def _order_update(event: Dict[str, Any]) -> OrderUpdate:
    o = event.get("o") or {}
    avg_price = _float(o.get("ap"))
    return OrderUpdate(
        symbol=o.get("s"),
        client_order_id=o.get("c"),
        order_id=o.get("i"),
        side=o.get("S"),
        order_type=o.get("o"),
        status=o.get("X"),
        execution_type=o.get("x"),
        price=_float(o.get("p")),
        # "0" means no fill yet
        average_price=avg_price or None,
        quantity=_float(o.get("q")),
        filled_quantity=_float(o.get("z")),
        last_filled_price=_float(o.get("L")),
        realized_profit=_float(o.get("rp")),
        position_side=o.get("ps"),
        **_base(event),
    )


def _account_config_update(event: Dict[str, Any]) -> AccountConfigUpdate:
    ac = event.get("ac") or {}
    ai = event.get("ai") or {}
    leverage = ac.get("l")
    return AccountConfigUpdate(
        symbol=ac.get("s"),
        leverage=int(leverage) if leverage is not None else None,
        multi_assets_mode=ai.get("j"),
        **_base(event),
    )


def _trade_lite(event: Dict[str, Any]) -> TradeLite:
    return TradeLite(
        symbol=event.get("s"),
        client_order_id=event.get("c"),
        order_id=event.get("i"),
        trade_id=event.get("t"),
        side=event.get("S"),
        original_price=_float(event.get("p")),
        original_quantity=_float(event.get("q")),
        last_filled_price=_float(event.get("L")),
        last_filled_quantity=_float(event.get("l")),
        is_maker=event.get("m"),
        **_base(event),
    )


def _token_expired(event: Dict[str, Any]) -> TokenExpired:
    return TokenExpired(listen_key=event.get("listenKey"), **_base(event))


_DECODERS = {
    MARGIN_CALL: _margin_call,
    ACCOUNT_UPDATE: _account_update,
    ORDER_TRADE_UPDATE: _order_update,
    ACCOUNT_CONFIG_UPDATE: _account_config_update,
    TRADE_LITE: _trade_lite,
    TOKEN_EXPIRED: _token_expired,
    LISTEN_KEY_EXPIRED: _token_expired,
}


def decode_user_event(payload: Any) -> UserDataEvent:
    event = payload.get("data") if isinstance(payload, dict) and "stream" in payload else payload
    if not isinstance(event, dict):
        return UnknownEvent(event_type="", raw={"payload": payload})
    decoder = _DECODERS.get(event.get("e"))
    if decoder is None:
        return UnknownEvent(**_base(event))
    return decoder(event)
