"""
Position state store.

In-process map from broker position id to the last observed state. The
router is its only writer. Presence in the store is what distinguishes NEW
from UPDATE, and removal from the store is the per-process idempotency guard
for CLOSED.
"""
from typing import Dict, Iterable, Iterator, Optional

from signalstream.domain.models import Position, PositionState
from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)


class PositionStateStore:
    """Last-known state per open position."""

    def __init__(self):
        self._states: Dict[str, PositionState] = {}

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._states))

    def get(self, position_id: str) -> Optional[PositionState]:
        state = self._states.get(position_id)
        return state.copy() if state is not None else None

    def record(self, position: Position) -> PositionState:
        """Store a freshly observed position, replacing any previous entry."""
        state = PositionState.from_position(position)
        self._states[position.position_id] = state
        return state.copy()

    def merge(self, position: Position) -> PositionState:
        """
        Merge an update into the stored state.

        SL/TP, price and profit always take the new observation (a removed
        SL arrives as None and must be kept as None). Identity fields keep
        their first-seen values: open time, open price, volume and symbol.
        """
        current = self._states.get(position.position_id)
        if current is None:
            return self.record(position)

        current.stop_loss = position.stop_loss
        current.take_profit = position.take_profit
        if position.current_price is not None:
            current.current_price = position.current_price
        if position.profit is not None:
            current.profit = position.net_profit
        current.open_time = current.open_time or position.open_time
        current.open_price = current.open_price or position.open_price
        current.volume = current.volume or position.volume
        current.symbol = current.symbol or position.symbol
        return current.copy()

    def pop(self, position_id: str) -> Optional[PositionState]:
        """Remove and return the state; None when already removed."""
        return self._states.pop(position_id, None)

    def seed(self, positions: Iterable[Position]) -> int:
        """Replace the store with a broker snapshot."""
        self._states = {p.position_id: PositionState.from_position(p) for p in positions}
        logger.info("STATE_STORE_SEEDED", positions=len(self._states))
        return len(self._states)

    def clear(self) -> None:
        self._states.clear()

    def snapshot(self) -> Dict[str, PositionState]:
        return {pid: state.copy() for pid, state in self._states.items()}
