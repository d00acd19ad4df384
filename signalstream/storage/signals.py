"""
SQL-backed signal repository.
"""
import uuid
from typing import Any, Dict, Optional

from signalstream.domain.models import PositionType, Signal, SignalStatus
from signalstream.monitoring.logger import get_logger
from signalstream.storage.base import DatabaseStore
from signalstream.storage.repository import SignalModel, as_utc, utcnow

logger = get_logger(__name__)

_UPDATABLE_FIELDS = {
    "stop_loss",
    "take_profit1",
    "entry_price",
    "title",
    "description",
    "notes",
    "category",
}


def _to_domain(row: SignalModel) -> Signal:
    return Signal(
        id=row.id,
        pair=row.pair,
        type=PositionType(row.type),
        entry_price=row.entry_price,
        stop_loss=row.stop_loss,
        take_profit1=row.take_profit1,
        status=SignalStatus(row.status),
        category=row.category,
        title=row.title,
        description=row.description,
        notes=row.notes,
        created_by=row.created_by,
        created_by_name=row.created_by_name,
        source_position_id=row.source_position_id,
        result_pips=row.result_pips,
        close_price=row.close_price,
        posted_at=as_utc(row.posted_at),
        closed_at=as_utc(row.closed_at),
    )


class SqlSignalRepository(DatabaseStore):
    """Persists signals in the ``signals`` table."""

    def _create(self, data: Dict[str, Any]) -> Signal:
        now = utcnow()
        position_type = data["type"]
        row = SignalModel(
            id=data.get("id") or uuid.uuid4().hex,
            pair=data["pair"],
            type=position_type.value if isinstance(position_type, PositionType) else str(position_type),
            entry_price=data["entry_price"],
            stop_loss=data.get("stop_loss"),
            take_profit1=data.get("take_profit1"),
            status=SignalStatus.ACTIVE.value,
            category=data.get("category", "vip"),
            title=data.get("title", ""),
            description=data.get("description", ""),
            notes=data.get("notes", ""),
            created_by=data.get("created_by", "system"),
            created_by_name=data.get("created_by_name", "MT5 Auto Signal"),
            source_position_id=data.get("source_position_id"),
            posted_at=data.get("posted_at") or now,
            updated_at=now,
        )
        with self.db.get_session() as session:
            session.add(row)
            session.flush()
            return _to_domain(row)

    def _update(self, signal_id: str, partial: Dict[str, Any]) -> None:
        unknown = set(partial) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Signal fields not updatable: {sorted(unknown)}")
        with self.db.get_session() as session:
            row = session.get(SignalModel, signal_id)
            if row is None:
                raise KeyError(signal_id)
            for key, value in partial.items():
                setattr(row, key, value)
            row.updated_at = utcnow()

    def _update_status(
        self,
        signal_id: str,
        status: SignalStatus,
        result_pips: Optional[float],
        close_price: Optional[float],
    ) -> None:
        now = utcnow()
        with self.db.get_session() as session:
            row = session.get(SignalModel, signal_id)
            if row is None:
                raise KeyError(signal_id)
            row.status = SignalStatus(status).value
            if result_pips is not None:
                row.result_pips = result_pips
            if close_price is not None:
                row.close_price = close_price
            if row.status == SignalStatus.CLOSED.value and row.closed_at is None:
                row.closed_at = now
            row.updated_at = now

    def _get(self, signal_id: str) -> Optional[Signal]:
        with self.db.get_session() as session:
            row = session.get(SignalModel, signal_id)
            return _to_domain(row) if row is not None else None

    async def create_signal(self, data: Dict[str, Any]) -> Signal:
        signal = await self._run(self._create, data)
        logger.info("SIGNAL_CREATED", signal_id=signal.id, pair=signal.pair, type=signal.type.value)
        return signal

    async def update_signal(self, signal_id: str, partial: Dict[str, Any]) -> None:
        await self._run(self._update, signal_id, partial)

    async def update_signal_status(
        self,
        signal_id: str,
        status: SignalStatus,
        result_pips: Optional[float] = None,
        close_price: Optional[float] = None,
    ) -> None:
        await self._run(self._update_status, signal_id, status, result_pips, close_price)

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        return await self._run(self._get, signal_id)
