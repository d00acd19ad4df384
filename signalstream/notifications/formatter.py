"""
Telegram message formatting for trade lifecycle events.

All messages use Telegram HTML parse mode. Operator templates from
configuration use ``{name}`` placeholders; unknown placeholders are left as
written instead of failing the send.
"""
from typing import Any, Dict, Optional

from signalstream.domain.models import PositionState, PositionType, Signal, SLChange, SLChangeType
from signalstream.domain.pips import calculate_pips, format_pips, get_pip_size, price_distance_pips


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, values: Dict[str, Any]) -> str:
    return template.format_map(_SafeDict({k: ("" if v is None else v) for k, v in values.items()}))


def _price(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:.5f}".rstrip("0").rstrip(".") if value < 1000 else f"{value:.2f}"


def _money(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{value:+.2f}"


# ---------------------------------------------------------------------------
# SL change classification
# ---------------------------------------------------------------------------

def classify_sl_change(
    position_type: PositionType,
    entry_price: float,
    current_price: Optional[float],
    old_sl: Optional[float],
    new_sl: Optional[float],
    symbol: str,
) -> Optional[SLChange]:
    """
    Classify a stop-loss move for presentation.

    breakeven: new SL sits on the entry price (within one pip)
    trailing:  trade in profit, new SL past entry on the profit side and
               moved in the profit direction
    tightened: SL moved toward entry but still on the risk side
    widened:   anything else
    """
    if old_sl is None or new_sl is None or old_sl == new_sl:
        return None

    pip = get_pip_size(symbol)
    pips_moved = round(abs(new_sl - old_sl) / pip, 1)
    direction = position_type.direction

    if entry_price and abs(new_sl - entry_price) <= pip:
        return SLChange(SLChangeType.BREAKEVEN, "BREAKEVEN SET", "🔒", pips_moved, profit_locked=0.0)

    in_profit = current_price is not None and (current_price - entry_price) * direction > 0
    beyond_entry = (new_sl - entry_price) * direction > 0
    moved_up = (new_sl - old_sl) * direction > 0

    if in_profit and beyond_entry and moved_up:
        locked = round(price_distance_pips(symbol, new_sl, entry_price), 1)
        return SLChange(SLChangeType.TRAILING, "TRAILING STOP", "📈", pips_moved, profit_locked=locked)
    if moved_up and not beyond_entry:
        return SLChange(SLChangeType.TIGHTENED, "SL TIGHTENED", "🛡️", pips_moved)
    return SLChange(SLChangeType.WIDENED, "SL WIDENED", "⚠️", pips_moved)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _risk_reward_lines(position_type: PositionType, symbol: str, entry: float, sl: Optional[float], tp: Optional[float]) -> str:
    lines = []
    risk = price_distance_pips(symbol, entry, sl) if sl else None
    reward = price_distance_pips(symbol, entry, tp) if tp else None
    if risk is not None:
        lines.append(f"⚖️ Risk: {risk:.1f} pips")
    if reward is not None:
        lines.append(f"💎 Reward: {reward:.1f} pips")
    if risk and reward:
        lines.append(f"📐 R:R 1:{reward / risk:.1f}")
    return "\n".join(lines)


def format_open_message(signal: Signal, volume: Optional[float], template: Optional[str] = None) -> str:
    values = {
        "symbol": signal.pair,
        "type": signal.type.value,
        "entry": _price(signal.entry_price),
        "sl": _price(signal.stop_loss),
        "tp": _price(signal.take_profit1),
        "volume": volume,
        "signal_id": signal.id,
    }
    if template:
        return render_template(template, values)

    icon = "🟢" if signal.type is PositionType.BUY else "🔴"
    text = (
        f"🚀 <b>NEW TRADE OPENED</b>\n\n"
        f"{icon} <b>{signal.pair}</b> {signal.type.value}\n"
        f"💰 Entry: <code>{values['entry']}</code>\n"
        f"🛑 SL: <code>{values['sl']}</code>\n"
        f"🎯 TP: <code>{values['tp']}</code>"
    )
    rr = _risk_reward_lines(signal.type, signal.pair, signal.entry_price, signal.stop_loss, signal.take_profit1)
    return f"{text}\n\n{rr}" if rr else text


def format_update_message(
    state: PositionState,
    old_sl: Optional[float],
    old_tp: Optional[float],
    change: Optional[SLChange] = None,
    template: Optional[str] = None,
) -> str:
    pips = calculate_pips(state.symbol, state.type, state.open_price, state.current_price)
    values = {
        "symbol": state.symbol,
        "type": state.type.value,
        "entry": _price(state.open_price),
        "current": _price(state.current_price),
        "sl": _price(state.stop_loss),
        "tp": _price(state.take_profit),
        "old_sl": _price(old_sl),
        "old_tp": _price(old_tp),
        "pips": format_pips(pips),
        "profit": _money(state.profit),
        "change": change.label if change else "TP/SL UPDATED",
    }
    if template:
        return render_template(template, values)

    header = f"{change.emoji} <b>{change.label}</b>" if change else "✏️ <b>TP/SL UPDATED</b>"
    sl_line = f"🛑 SL: <code>{values['sl']}</code>"
    if old_sl != state.stop_loss:
        sl_line += f" (was {values['old_sl']})"
    tp_line = f"🎯 TP: <code>{values['tp']}</code>"
    if old_tp != state.take_profit:
        tp_line += f" (was {values['old_tp']})"

    if change is None:
        footer = "Levels adjusted."
    elif change.change_type is SLChangeType.BREAKEVEN:
        footer = "Risk-free trade 🔒"
    elif change.change_type is SLChangeType.TRAILING:
        footer = f"Profit locked: {change.profit_locked:.1f} pips"
    elif change.change_type is SLChangeType.TIGHTENED:
        footer = f"Risk reduced by {change.pips_moved:.1f} pips"
    else:
        footer = f"Risk increased by {change.pips_moved:.1f} pips"

    return (
        f"{header}\n\n"
        f"📊 <b>{state.symbol}</b> {state.type.value}\n"
        f"💰 Entry: <code>{values['entry']}</code>\n"
        f"📍 Current: <code>{values['current']}</code> ({values['pips']} pips)\n"
        f"{sl_line}\n"
        f"{tp_line}\n\n"
        f"{footer}"
    )


def format_closed_message(
    symbol: str,
    position_type: PositionType,
    entry_price: Optional[float],
    close_price: Optional[float],
    pips: float,
    profit: float,
    template: Optional[str] = None,
) -> str:
    """Final text for the original open message once the position is gone."""
    values = {
        "symbol": symbol,
        "type": position_type.value,
        "entry": _price(entry_price),
        "exit": _price(close_price),
        "close_price": _price(close_price),
        "pips": format_pips(pips),
        "profit": _money(profit),
        "result": "WIN" if profit > 0 else "LOSS" if profit < 0 else "BREAKEVEN",
    }
    if template:
        return render_template(template, values)

    icon = "✅" if profit > 0 else "❌" if profit < 0 else "➖"
    return (
        f"🏁 <b>TRADE CLOSED</b> {icon}\n\n"
        f"📊 <b>{symbol}</b> {position_type.value}\n"
        f"💰 Entry: <code>{values['entry']}</code>\n"
        f"🚪 Exit: <code>{values['exit']}</code>\n"
        f"📈 Result: <b>{values['pips']} pips</b>"
    )


def format_close_notification(symbol: str, position_type: PositionType, pips: float, profit: float) -> str:
    """Separate celebratory / consolation message posted after the close edit."""
    if profit > 0:
        title, line = "🏆 <b>TRADE WIN</b>", "Another one in the bag! 🎉"
    elif profit < 0:
        title, line = "📉 <b>TRADE LOSS</b>", "Losses are part of the game. On to the next one 💪"
    else:
        title, line = "➖ <b>TRADE BREAKEVEN</b>", "Capital protected."
    return f"{title}\n\n📊 <b>{symbol}</b> {position_type.value}: <b>{format_pips(pips)} pips</b>\n\n{line}"


def format_update_notification(prefix: str, state: PositionState, change: Optional[SLChange]) -> str:
    """Short supplementary notice sent as a reply to (or copy of) the open message."""
    detail = f"{change.emoji} {change.label}" if change else "Levels adjusted"
    return (
        f"{prefix}\n\n"
        f"<b>{state.symbol}</b> {state.type.value}: {detail}\n"
        f"🛑 SL: <code>{_price(state.stop_loss)}</code> | 🎯 TP: <code>{_price(state.take_profit)}</code>"
    )
