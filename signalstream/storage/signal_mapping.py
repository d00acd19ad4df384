"""
Signal mapping store: the atomic per-position creation lock.

One row per broker position ever seen. The row is written with
``status=processing, signal_id=PENDING`` before any signal exists, and
acquisition is a strict create-if-absent: the primary key makes a racing
insert from another replica fail, and that failure is reported as
``existed`` rather than raised.
"""
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from signalstream.domain.models import LockResult, MappingStatus, PENDING_SIGNAL_ID, SignalMapping
from signalstream.monitoring.logger import get_logger
from signalstream.storage.base import DatabaseStore
from signalstream.storage.repository import SignalMappingModel, as_utc, utcnow

logger = get_logger(__name__)


def _to_domain(row: SignalMappingModel) -> SignalMapping:
    return SignalMapping(
        position_id=row.position_id,
        signal_id=row.signal_id,
        pair=row.pair,
        status=MappingStatus(row.status),
        last_known_profit=row.last_known_profit,
        account_id=row.account_id,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        closed_at=as_utc(row.closed_at),
    )


class SignalMappingStore(DatabaseStore):
    """Persistent position -> signal mapping with create-if-absent locking."""

    # ---- sync ---------------------------------------------------------------

    def acquire_sync(self, position_id: str, pair: Optional[str] = None, account_id: Optional[str] = None) -> LockResult:
        now = utcnow()
        try:
            with self.db.get_session() as session:
                existing = session.get(SignalMappingModel, position_id, with_for_update=True)
                if existing is None:
                    session.add(
                        SignalMappingModel(
                            position_id=position_id,
                            signal_id=PENDING_SIGNAL_ID,
                            pair=pair,
                            status=MappingStatus.PROCESSING.value,
                            account_id=account_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    session.flush()
                    return LockResult(acquired=True, existed=False)

                if existing.status != MappingStatus.FAILED.value:
                    return LockResult(acquired=False, existed=True, existing_value=existing.signal_id)

                # A failed attempt released the lock; take it over unless another replica just did
                result = session.execute(
                    update(SignalMappingModel)
                    .where(
                        SignalMappingModel.position_id == position_id,
                        SignalMappingModel.status == MappingStatus.FAILED.value,
                    )
                    .values(status=MappingStatus.PROCESSING.value, signal_id=PENDING_SIGNAL_ID, updated_at=now)
                )
                if result.rowcount == 1:
                    return LockResult(acquired=True, existed=True)
                return LockResult(acquired=False, existed=True, existing_value=PENDING_SIGNAL_ID)
        except IntegrityError:
            # Lost the insert race to another replica
            current = self.get_sync(position_id)
            return LockResult(
                acquired=False,
                existed=True,
                existing_value=current.signal_id if current else PENDING_SIGNAL_ID,
            )

    def finalize_sync(self, position_id: str, signal_id: str, last_known_profit: Optional[float] = None) -> None:
        with self.db.get_session() as session:
            session.execute(
                update(SignalMappingModel)
                .where(SignalMappingModel.position_id == position_id)
                .values(
                    signal_id=signal_id,
                    status=MappingStatus.COMPLETED.value,
                    last_known_profit=last_known_profit,
                    updated_at=utcnow(),
                )
            )

    def release_sync(self, position_id: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                update(SignalMappingModel)
                .where(SignalMappingModel.position_id == position_id)
                .values(signal_id=None, status=MappingStatus.FAILED.value, updated_at=utcnow())
            )

    def get_sync(self, position_id: str) -> Optional[SignalMapping]:
        with self.db.get_session() as session:
            row = session.get(SignalMappingModel, position_id)
            return _to_domain(row) if row is not None else None

    def mark_closed_sync(self, position_id: str, final_profit: Optional[float] = None) -> bool:
        """Set closed_at once. Returns False when another caller already closed it."""
        now = utcnow()
        with self.db.get_session() as session:
            result = session.execute(
                update(SignalMappingModel)
                .where(
                    SignalMappingModel.position_id == position_id,
                    SignalMappingModel.closed_at.is_(None),
                )
                .values(closed_at=now, last_known_profit=final_profit, updated_at=now)
            )
            return result.rowcount == 1

    def sweep_stale_sync(self, max_age_seconds: float) -> int:
        """Delete ``processing`` locks whose holder never finished."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        with self.db.get_session() as session:
            result = session.execute(
                delete(SignalMappingModel).where(
                    SignalMappingModel.status == MappingStatus.PROCESSING.value,
                    SignalMappingModel.updated_at < cutoff,
                )
            )
            count = result.rowcount
        if count:
            logger.warning("SIGNAL_LOCKS_SWEPT", count=count, max_age_seconds=max_age_seconds)
        return count

    def list_open_sync(self) -> List[SignalMapping]:
        """Completed mappings whose closure has not been reconciled."""
        with self.db.get_session() as session:
            rows = session.scalars(
                select(SignalMappingModel).where(
                    SignalMappingModel.status == MappingStatus.COMPLETED.value,
                    SignalMappingModel.closed_at.is_(None),
                )
            ).all()
            return [_to_domain(row) for row in rows]

    # ---- async --------------------------------------------------------------

    async def acquire(self, position_id: str, pair: Optional[str] = None, account_id: Optional[str] = None) -> LockResult:
        return await self._run(self.acquire_sync, position_id, pair, account_id)

    async def finalize(self, position_id: str, signal_id: str, last_known_profit: Optional[float] = None) -> None:
        await self._run(self.finalize_sync, position_id, signal_id, last_known_profit)

    async def release(self, position_id: str) -> None:
        await self._run(self.release_sync, position_id)

    async def get(self, position_id: str) -> Optional[SignalMapping]:
        return await self._run(self.get_sync, position_id)

    async def mark_closed(self, position_id: str, final_profit: Optional[float] = None) -> bool:
        return await self._run(self.mark_closed_sync, position_id, final_profit)

    async def sweep_stale(self, max_age_seconds: float) -> int:
        return await self._run(self.sweep_stale_sync, max_age_seconds)

    async def list_open(self) -> List[SignalMapping]:
        return await self._run(self.list_open_sync)
