"""
Archive lock store.

Guards at-most-once archival of a closed trade. Only the replica that
inserted the lock row may write the trade-history record. Locks are
transient: ``sweep_stale`` purges every lock older than the configured age
(default 5 minutes), finalized or abandoned by a crashed holder. Once the
lock is gone the unique ``position_id`` on the trade-history table still
rejects a second archive.
"""
import os
import socket
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from signalstream.domain.models import LockResult
from signalstream.monitoring.logger import get_logger
from signalstream.storage.base import DatabaseStore
from signalstream.storage.db import Database
from signalstream.storage.repository import ArchiveLockModel, utcnow

logger = get_logger(__name__)


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class ArchiveLockStore(DatabaseStore):
    """Create-if-absent archive locks keyed by position id."""

    def __init__(self, db: Optional[Database] = None, holder_id: Optional[str] = None):
        super().__init__(db)
        self.holder_id = holder_id or default_holder_id()

    def acquire_sync(self, position_id: str) -> LockResult:
        try:
            with self.db.get_session() as session:
                existing = session.get(ArchiveLockModel, position_id, with_for_update=True)
                if existing is not None:
                    return LockResult(acquired=False, existed=True, existing_value=existing.locked_by)
                session.add(ArchiveLockModel(position_id=position_id, locked_at=utcnow(), locked_by=self.holder_id))
                session.flush()
                return LockResult(acquired=True, existed=False)
        except IntegrityError:
            return LockResult(acquired=False, existed=True)

    def finalize_sync(self, position_id: str, archive_id: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                update(ArchiveLockModel)
                .where(ArchiveLockModel.position_id == position_id)
                .values(archive_id=archive_id, archived_at=utcnow())
            )

    def release_sync(self, position_id: str) -> None:
        """Drop a lock whose archive attempt failed so a later delivery may retry."""
        with self.db.get_session() as session:
            session.execute(
                delete(ArchiveLockModel).where(
                    ArchiveLockModel.position_id == position_id,
                    ArchiveLockModel.locked_by == self.holder_id,
                    ArchiveLockModel.archive_id.is_(None),
                )
            )

    def sweep_stale_sync(self, max_age_seconds: float = 300) -> int:
        """Delete every lock older than ``max_age_seconds``."""
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)
        with self.db.get_session() as session:
            result = session.execute(
                delete(ArchiveLockModel).where(
                    ArchiveLockModel.locked_at < cutoff,
                )
            )
            count = result.rowcount
        if count:
            logger.info("ARCHIVE_LOCKS_SWEPT", count=count, max_age_seconds=max_age_seconds)
        return count

    async def acquire(self, position_id: str) -> LockResult:
        return await self._run(self.acquire_sync, position_id)

    async def finalize(self, position_id: str, archive_id: str) -> None:
        await self._run(self.finalize_sync, position_id, archive_id)

    async def release(self, position_id: str) -> None:
        await self._run(self.release_sync, position_id)

    async def sweep_stale(self, max_age_seconds: float = 300) -> int:
        return await self._run(self.sweep_stale_sync, max_age_seconds)
