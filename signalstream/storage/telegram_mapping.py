"""
Trade -> Telegram message mapping.

Created when the open notification is sent, deleted (soft, via
``deleted_at``) when the position closes and its message is finalized.
"""
import json
from typing import Optional, Tuple

from sqlalchemy import update

from signalstream.domain.models import TelegramMapping
from signalstream.storage.base import DatabaseStore
from signalstream.storage.repository import TradeTelegramMappingModel, as_utc, utcnow


def _to_domain(row: TradeTelegramMappingModel) -> TelegramMapping:
    return TelegramMapping(
        position_id=row.position_id,
        telegram_message_id=row.telegram_message_id,
        telegram_chat_id=row.telegram_chat_id,
        update_message_ids=list(json.loads(row.update_message_ids or "[]")),
        created_at=as_utc(row.created_at),
        last_updated=as_utc(row.last_updated),
    )


class TelegramMappingStore(DatabaseStore):
    """Persistent message ids for positions with an outstanding Telegram post."""

    def save_sync(self, position_id: str, message_id: int, chat_id: str) -> Tuple[TelegramMapping, bool]:
        """Create or replace the mapping. Returns (mapping, existed)."""
        now = utcnow()
        with self.db.get_session() as session:
            row = session.get(TradeTelegramMappingModel, position_id, with_for_update=True)
            existed = row is not None and row.deleted_at is None
            if row is None:
                row = TradeTelegramMappingModel(
                    position_id=position_id,
                    telegram_message_id=message_id,
                    telegram_chat_id=str(chat_id),
                    update_message_ids="[]",
                    created_at=now,
                    last_updated=now,
                )
                session.add(row)
            else:
                row.telegram_message_id = message_id
                row.telegram_chat_id = str(chat_id)
                row.last_updated = now
                row.deleted_at = None
            session.flush()
            return _to_domain(row), existed

    def get_sync(self, position_id: str) -> Optional[TelegramMapping]:
        with self.db.get_session() as session:
            row = session.get(TradeTelegramMappingModel, position_id)
            if row is None or row.deleted_at is not None:
                return None
            return _to_domain(row)

    def add_update_message_id_sync(self, position_id: str, message_id: int) -> bool:
        with self.db.get_session() as session:
            row = session.get(TradeTelegramMappingModel, position_id, with_for_update=True)
            if row is None or row.deleted_at is not None:
                return False
            ids = json.loads(row.update_message_ids or "[]")
            ids.append(message_id)
            row.update_message_ids = json.dumps(ids)
            row.last_updated = utcnow()
            return True

    def delete_sync(self, position_id: str) -> bool:
        """Soft-delete. Returns True only for the caller that retired the mapping."""
        now = utcnow()
        with self.db.get_session() as session:
            result = session.execute(
                update(TradeTelegramMappingModel)
                .where(
                    TradeTelegramMappingModel.position_id == position_id,
                    TradeTelegramMappingModel.deleted_at.is_(None),
                )
                .values(deleted_at=now, last_updated=now)
            )
            return result.rowcount == 1

    async def save(self, position_id: str, message_id: int, chat_id: str) -> Tuple[TelegramMapping, bool]:
        return await self._run(self.save_sync, position_id, message_id, chat_id)

    async def get(self, position_id: str) -> Optional[TelegramMapping]:
        return await self._run(self.get_sync, position_id)

    async def add_update_message_id(self, position_id: str, message_id: int) -> bool:
        return await self._run(self.add_update_message_id_sync, position_id, message_id)

    async def delete(self, position_id: str) -> bool:
        return await self._run(self.delete_sync, position_id)
