"""
Tests for SL change classification and Telegram message formatting.
"""
import pytest

from signalstream.domain.models import PositionState, PositionType, Signal, SLChangeType
from signalstream.notifications.formatter import (
    classify_sl_change,
    format_close_notification,
    format_closed_message,
    format_open_message,
    format_update_message,
    render_template,
)


class TestClassifySlChange:

    def test_trailing_stop_on_buy(self):
        change = classify_sl_change(PositionType.BUY, 1.0900, 1.1000, 1.0900, 1.0950, "EURUSD")
        assert change.change_type is SLChangeType.TRAILING
        assert change.profit_locked == pytest.approx(50.0)
        assert change.pips_moved == pytest.approx(50.0)

    def test_trailing_stop_on_sell(self):
        change = classify_sl_change(PositionType.SELL, 1.0900, 1.0800, 1.0900, 1.0850, "EURUSD")
        assert change.change_type is SLChangeType.TRAILING
        assert change.profit_locked == pytest.approx(50.0)

    def test_breakeven(self):
        change = classify_sl_change(PositionType.BUY, 1.0900, 1.0950, 1.0850, 1.0900, "EURUSD")
        assert change.change_type is SLChangeType.BREAKEVEN
        assert change.profit_locked == 0.0

    def test_tightened(self):
        change = classify_sl_change(PositionType.BUY, 1.0900, 1.0910, 1.0850, 1.0870, "EURUSD")
        assert change.change_type is SLChangeType.TIGHTENED
        assert change.pips_moved == pytest.approx(20.0)

    def test_widened(self):
        change = classify_sl_change(PositionType.BUY, 1.0900, 1.0910, 1.0850, 1.0800, "EURUSD")
        assert change.change_type is SLChangeType.WIDENED

    @pytest.mark.parametrize("old_sl,new_sl", [(None, 1.09), (1.09, None), (1.09, 1.09)])
    def test_no_classification(self, old_sl, new_sl):
        assert classify_sl_change(PositionType.BUY, 1.09, 1.1, old_sl, new_sl, "EURUSD") is None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def _signal(**overrides) -> Signal:
    data = dict(
        id="sig-1",
        pair="EURUSD",
        type=PositionType.BUY,
        entry_price=1.09,
        stop_loss=1.085,
        take_profit1=1.1,
    )
    data.update(overrides)
    return Signal(**data)


class TestMessages:

    def test_open_message_includes_levels_and_risk_reward(self):
        text = format_open_message(_signal(), 0.1)
        assert "NEW TRADE OPENED" in text
        assert "<code>1.09</code>" in text
        assert "<code>1.085</code>" in text
        assert "Risk: 50.0 pips" in text
        assert "R:R 1:2.0" in text

    def test_open_message_template(self):
        text = format_open_message(_signal(), 0.1, template="{symbol} {type} @ {entry} {unknown}")
        assert text == "EURUSD BUY @ 1.09 {unknown}"

    def test_update_message_shows_previous_levels(self):
        state = PositionState(
            position_id="555",
            symbol="EURUSD",
            type=PositionType.BUY,
            open_price=1.09,
            volume=0.1,
            stop_loss=1.095,
            take_profit=1.1,
            current_price=1.1,
            profit=100.0,
        )
        change = classify_sl_change(PositionType.BUY, 1.09, 1.1, 1.09, 1.095, "EURUSD")
        text = format_update_message(state, 1.09, 1.1, change)
        assert "TRAILING STOP" in text
        assert "(was 1.09)" in text
        assert "Profit locked: 50.0 pips" in text
        assert "+100.0 pips" in text

    def test_closed_message_win_and_loss(self):
        win = format_closed_message("EURUSD", PositionType.BUY, 1.09, 1.1, 100.0, 95.0)
        loss = format_closed_message("EURUSD", PositionType.SELL, 1.09, 1.0925, -25.0, -12.5)
        assert "✅" in win and "+100.0 pips" in win
        assert "❌" in loss and "-25.0 pips" in loss

    def test_closed_template_result(self):
        text = format_closed_message("EURUSD", PositionType.BUY, 1.09, 1.08, -100.0, -50.0, template="{result} {profit}")
        assert text == "LOSS -50.00"

    def test_close_notification(self):
        assert "TRADE WIN" in format_close_notification("EURUSD", PositionType.BUY, 10.0, 5.0)
        assert "TRADE LOSS" in format_close_notification("EURUSD", PositionType.BUY, -10.0, -5.0)
        assert "BREAKEVEN" in format_close_notification("EURUSD", PositionType.BUY, 0.0, 0.0)


def test_render_template_blanks_none():
    assert render_template("[{a}]", {"a": None}) == "[]"
