"""
Signal synthesis from broker positions.
"""
from typing import Any, Dict, Optional, Tuple

from signalstream.domain.models import Position, PositionType
from signalstream.domain.pips import get_pip_size
from signalstream.exceptions import InvalidPositionError


def _price_decimals(pip_size: float) -> int:
    if pip_size < 0.001:
        return 5
    if pip_size < 1:
        return 3
    return 2


def derive_levels(
    position: Position,
    *,
    synthesize_default_levels: bool = True,
    default_sl_pips: float = 50.0,
    reward_risk_ratio: float = 2.0,
) -> Tuple[Optional[float], Optional[float]]:
    """
    SL/TP for the signal.

    Broker levels win. A zero level means "not set" on MT5. When enabled,
    a missing SL is placed ``default_sl_pips`` away from entry and a missing
    TP at ``reward_risk_ratio`` times the SL distance.
    """
    entry = position.open_price
    sl = position.stop_loss or None
    tp = position.take_profit or None
    if not synthesize_default_levels:
        return sl, tp

    pip = get_pip_size(position.symbol)
    direction = position.type.direction
    decimals = _price_decimals(pip)

    if sl is None:
        sl = round(entry - direction * default_sl_pips * pip, decimals)
    if tp is None:
        risk = abs(entry - sl)
        tp = round(entry + direction * risk * reward_risk_ratio, decimals)
    return sl, tp


def build_signal_data(
    position: Position,
    *,
    synthesize_default_levels: bool = True,
    default_sl_pips: float = 50.0,
    reward_risk_ratio: float = 2.0,
    category: str = "vip",
    created_by: str = "system",
    created_by_name: str = "MT5 Auto Signal",
) -> Dict[str, Any]:
    """Fields for ``SignalRepository.create_signal``."""
    if not position.open_price or position.open_price <= 0:
        raise InvalidPositionError(f"Position {position.position_id} has invalid entry price {position.open_price!r}")

    sl, tp = derive_levels(
        position,
        synthesize_default_levels=synthesize_default_levels,
        default_sl_pips=default_sl_pips,
        reward_risk_ratio=reward_risk_ratio,
    )
    side = "Long" if position.type is PositionType.BUY else "Short"
    return {
        "pair": position.symbol,
        "type": position.type,
        "entry_price": position.open_price,
        "stop_loss": sl,
        "take_profit1": tp,
        "category": category,
        "title": f"{position.symbol} {position.type.value} Signal",
        "description": f"{side} {position.symbol} from MT5 position #{position.position_id}",
        "notes": f"Volume: {position.volume} lots. Auto-generated from live MT5 position.",
        "created_by": created_by,
        "created_by_name": created_by_name,
        "source_position_id": position.position_id,
        "posted_at": position.open_time,
    }
