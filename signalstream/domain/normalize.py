"""
Broker payload normalization.

The MetaApi SDK, its REST surface and older exports disagree on field names
(``ticket`` / ``id`` / ``positionId``, ``openPrice`` / ``priceOpen``, ...).
This module is the only place those fallback chains live; everything past
the boundary works with ``Position`` and ``CloseDeal``.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from signalstream.domain.models import CloseDeal, Position, PositionType
from signalstream.exceptions import DataError

DEFAULT_VOLUME = 0.1

_CLOSE_ENTRY_TYPES = ("DEAL_ENTRY_OUT", "DEAL_ENTRY_OUT_BY", 1, "1")


def _field(raw: Any, *names: str) -> Any:
    """First non-empty value among ``names`` (dict keys or attributes)."""
    for name in names:
        if isinstance(raw, dict):
            value = raw.get(name)
        else:
            value = getattr(raw, name, None)
        if value is not None and value != "":
            return value
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Epoch milliseconds vs seconds
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def position_id_of(raw: Any) -> Optional[str]:
    """Broker identity of a position, coerced to string."""
    value = _field(raw, "ticket", "id", "positionId", "position_id")
    return str(value) if value is not None else None


def parse_position_type(value: Any) -> PositionType:
    """
    Map broker type encodings to BUY/SELL.

    Strings containing SELL/BUY (``POSITION_TYPE_SELL``, ``sell``), numeric
    1 = SELL and 0 = BUY. Anything unrecognized is treated as BUY.
    """
    if isinstance(value, PositionType):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return PositionType.SELL if int(value) == 1 else PositionType.BUY
    text = str(value or "").upper()
    if "SELL" in text:
        return PositionType.SELL
    if text == "1":
        return PositionType.SELL
    return PositionType.BUY


def normalize_position(raw: Any, *, partial: bool = False) -> Position:
    """
    Build the canonical ``Position`` from a raw broker payload.

    With ``partial=True`` (an update for a position already tracked) missing
    symbol, volume, open price and profit stay empty so that merging into the
    stored state keeps the known values. SL/TP are always taken as sent.

    Raises:
        DataError: payload has no usable position id, or no symbol when not partial
    """
    position_id = position_id_of(raw)
    if not position_id:
        raise DataError("Broker position payload has no ticket/id/positionId")

    symbol = _field(raw, "symbol", "pair")
    if not symbol and not partial:
        raise DataError(f"Broker position {position_id} has no symbol")

    volume = _to_float(_field(raw, "volume", "lots"))
    if not volume and not partial:
        volume = DEFAULT_VOLUME
    profit = _to_float(_field(raw, "profit", "unrealizedProfit"))
    if profit is None and not partial:
        profit = 0.0

    return Position(
        position_id=position_id,
        symbol=str(symbol or ""),
        type=parse_position_type(_field(raw, "type", "side")),
        volume=volume or None,
        open_price=_to_float(_field(raw, "openPrice", "priceOpen", "open_price")) or 0.0,
        current_price=_to_float(_field(raw, "currentPrice", "priceCurrent", "current_price")),
        stop_loss=_to_float(_field(raw, "stopLoss", "sl", "stop_loss")),
        take_profit=_to_float(_field(raw, "takeProfit", "tp", "take_profit")),
        profit=profit,
        commission=_to_float(_field(raw, "commission")) or 0.0,
        swap=_to_float(_field(raw, "swap")) or 0.0,
        open_time=_to_datetime(_field(raw, "time", "openTime", "open_time", "brokerTime")),
    )


def is_close_deal(raw: Any) -> bool:
    return _field(raw, "entryType", "entry_type") in _CLOSE_ENTRY_TYPES


def find_close_deal(deals: Iterable[Any], position_id: str) -> Optional[CloseDeal]:
    """Pick the closing deal for ``position_id`` out of a deal-history page."""
    for raw in deals:
        deal_position = _field(raw, "positionId", "position_id")
        if deal_position is None or str(deal_position) != str(position_id):
            continue
        if not is_close_deal(raw):
            continue
        price = _to_float(_field(raw, "price"))
        if price is None:
            continue
        deal_id = _field(raw, "id", "ticket")
        return CloseDeal(
            position_id=str(position_id),
            price=price,
            profit=_to_float(_field(raw, "profit")) or 0.0,
            commission=_to_float(_field(raw, "commission")) or 0.0,
            swap=_to_float(_field(raw, "swap")) or 0.0,
            time=_to_datetime(_field(raw, "time", "brokerTime")),
            deal_id=str(deal_id) if deal_id is not None else None,
        )
    return None
