"""
Trade history archiver.

Writes one ``mt5_trade_history`` row per closed position, combining the
signal record with the close data captured by the router. Callers guard
this with the archive lock; the unique ``position_id`` column is the last
line of defence.
"""
import uuid
from typing import Optional

from signalstream.domain.models import ClosedBy, ClosedTradeRequest, PositionType
from signalstream.domain.pips import closed_trade_pips, get_pip_size
from signalstream.monitoring.logger import get_logger
from signalstream.storage.base import DatabaseStore
from signalstream.storage.repository import TradeHistoryModel, utcnow

logger = get_logger(__name__)


def calculate_risk_reward(
    position_type: PositionType,
    entry: Optional[float],
    stop_loss: Optional[float],
    take_profit: Optional[float],
) -> Optional[float]:
    """Reward:risk ratio rounded to 1 decimal; None when risk is not positive."""
    if not entry or stop_loss is None or take_profit is None:
        return None
    if position_type is PositionType.BUY:
        risk, reward = entry - stop_loss, take_profit - entry
    else:
        risk, reward = stop_loss - entry, entry - take_profit
    if risk <= 0:
        return None
    return round(reward / risk, 1)


def detect_closed_by(
    symbol: str,
    final_price: Optional[float],
    stop_loss: Optional[float],
    take_profit: Optional[float],
) -> ClosedBy:
    """TP or SL when the final price is within one pip of that level, else MANUAL."""
    if final_price is None:
        return ClosedBy.MANUAL
    tolerance = get_pip_size(symbol)
    if take_profit and abs(final_price - take_profit) <= tolerance:
        return ClosedBy.TAKE_PROFIT
    if stop_loss and abs(final_price - stop_loss) <= tolerance:
        return ClosedBy.STOP_LOSS
    return ClosedBy.MANUAL


class SqlTradeHistoryArchiver(DatabaseStore):
    """Archives closed trades into ``mt5_trade_history``."""

    def _archive(self, request: ClosedTradeRequest) -> str:
        signal = request.signal
        state = request.state
        deal = request.close_deal

        symbol = state.symbol if state else signal.pair
        position_type = state.type if state else signal.type
        open_price = (state.open_price if state else None) or signal.entry_price
        stop_loss = state.stop_loss if state and state.stop_loss is not None else signal.stop_loss
        take_profit = state.take_profit if state and state.take_profit is not None else signal.take_profit1
        close_time = request.closed_at or (deal.time if deal and deal.time else None) or utcnow()
        open_time = state.open_time if state else signal.posted_at

        pips = request.pips
        if pips is None:
            pips = closed_trade_pips(symbol, position_type, open_price, request.final_price, request.final_profit)

        duration = int((close_time - open_time).total_seconds()) if open_time else None

        row = TradeHistoryModel(
            id=uuid.uuid4().hex,
            position_id=request.position_id,
            ticket=request.position_id,
            signal_id=signal.id,
            account_id=request.account_id,
            symbol=symbol,
            type=position_type.value,
            volume=(state.volume if state else None) or 0.0,
            open_price=open_price,
            close_price=request.final_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            open_time=open_time,
            close_time=close_time,
            profit=request.final_profit,
            pips=pips,
            swap=deal.swap if deal else 0.0,
            commission=deal.commission if deal else 0.0,
            duration_seconds=duration,
            closed_by=detect_closed_by(symbol, request.final_price, stop_loss, take_profit).value,
            risk_reward=calculate_risk_reward(position_type, open_price, stop_loss, take_profit),
            archived_at=utcnow(),
        )
        with self.db.get_session() as session:
            session.add(row)
            session.flush()
            return row.id

    async def archive_closed_trade(self, request: ClosedTradeRequest) -> str:
        archive_id = await self._run(self._archive, request)
        logger.info(
            "TRADE_ARCHIVED",
            position_id=request.position_id,
            archive_id=archive_id,
            profit=request.final_profit,
        )
        return archive_id
