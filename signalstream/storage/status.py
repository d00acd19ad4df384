"""
Singleton streaming status record.

Best-effort: read/write failures are logged and swallowed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signalstream.monitoring.logger import get_logger
from signalstream.storage.base import DatabaseStore
from signalstream.storage.repository import StreamingStatusModel, as_utc, utcnow

logger = get_logger(__name__)

STATUS_ROW_ID = 1


@dataclass
class StreamingStatusRecord:
    is_connected: bool
    account_id: Optional[str]
    state: Optional[str]
    last_event: Optional[datetime]
    error: Optional[str]
    total_reconnects: int
    health_score: Optional[int]
    updated_at: Optional[datetime]


class StreamingStatusStore(DatabaseStore):
    """Reader/writer for the ``mt5_streaming_status`` singleton."""

    def _save(self, **fields) -> None:
        with self.db.get_session() as session:
            row = session.get(StreamingStatusModel, STATUS_ROW_ID)
            if row is None:
                row = StreamingStatusModel(id=STATUS_ROW_ID)
                session.add(row)
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = utcnow()

    def _get(self) -> Optional[StreamingStatusRecord]:
        with self.db.get_session() as session:
            row = session.get(StreamingStatusModel, STATUS_ROW_ID)
            if row is None:
                return None
            return StreamingStatusRecord(
                is_connected=row.is_connected,
                account_id=row.account_id,
                state=row.state,
                last_event=as_utc(row.last_event),
                error=row.error,
                total_reconnects=row.total_reconnects or 0,
                health_score=row.health_score,
                updated_at=as_utc(row.updated_at),
            )

    def _delete(self) -> None:
        with self.db.get_session() as session:
            row = session.get(StreamingStatusModel, STATUS_ROW_ID)
            if row is not None:
                session.delete(row)

    async def save(
        self,
        *,
        is_connected: bool,
        account_id: Optional[str],
        state: Optional[str] = None,
        last_event: Optional[datetime] = None,
        error: Optional[str] = None,
        total_reconnects: int = 0,
        health_score: Optional[int] = None,
    ) -> None:
        try:
            await self._run(
                self._save,
                is_connected=is_connected,
                account_id=account_id,
                state=state,
                last_event=last_event,
                error=error,
                total_reconnects=total_reconnects,
                health_score=health_score,
            )
        except Exception as e:
            logger.warning("STREAMING_STATUS_SAVE_FAILED", error=str(e))

    async def get(self) -> Optional[StreamingStatusRecord]:
        try:
            return await self._run(self._get)
        except Exception as e:
            logger.warning("STREAMING_STATUS_READ_FAILED", error=str(e))
            return None

    async def delete(self) -> None:
        try:
            await self._run(self._delete)
        except Exception as e:
            logger.warning("STREAMING_STATUS_DELETE_FAILED", error=str(e))
