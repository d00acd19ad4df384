"""
Tests for the SQL-backed lock stores: signal mapping, archive lock and
Telegram message mapping.
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from signalstream.domain.models import MappingStatus, PENDING_SIGNAL_ID
from signalstream.storage.archive_lock import ArchiveLockStore
from signalstream.storage.repository import ArchiveLockModel, SignalMappingModel, utcnow
from signalstream.storage.signal_mapping import SignalMappingStore
from signalstream.storage.telegram_mapping import TelegramMappingStore


def _age_rows(db, model, column: str, seconds: float) -> None:
    with db.get_session() as session:
        session.execute(update(model).values({column: utcnow() - timedelta(seconds=seconds)}))


# ---------------------------------------------------------------------------
# Signal mapping lock
# ---------------------------------------------------------------------------

class TestSignalMappingLock:

    def test_first_acquire_wins(self, db):
        store = SignalMappingStore(db)
        first = store.acquire_sync("555", "EURUSD", "acc-1")
        second = store.acquire_sync("555", "EURUSD", "acc-1")

        assert first.acquired and not first.existed
        assert not second.acquired and second.existed
        assert second.existing_value == PENDING_SIGNAL_ID

        mapping = store.get_sync("555")
        assert mapping.status is MappingStatus.PROCESSING
        assert not mapping.has_signal

    def test_finalize_exposes_signal_id(self, db):
        store = SignalMappingStore(db)
        store.acquire_sync("555")
        store.finalize_sync("555", "sig-1", last_known_profit=10.0)

        again = store.acquire_sync("555")
        assert not again.acquired
        assert again.existing_value == "sig-1"
        mapping = store.get_sync("555")
        assert mapping.status is MappingStatus.COMPLETED
        assert mapping.has_signal
        assert mapping.last_known_profit == 10.0

    def test_released_lock_can_be_taken_over(self, db):
        store = SignalMappingStore(db)
        store.acquire_sync("555")
        store.release_sync("555")
        assert store.get_sync("555").status is MappingStatus.FAILED

        retry = store.acquire_sync("555")
        assert retry.acquired and retry.existed
        assert store.get_sync("555").status is MappingStatus.PROCESSING

    def test_mark_closed_once(self, db):
        store = SignalMappingStore(db)
        store.acquire_sync("555")
        store.finalize_sync("555", "sig-1")

        assert store.mark_closed_sync("555", -12.5) is True
        assert store.mark_closed_sync("555", -12.5) is False
        assert store.get_sync("555").closed_at is not None

    def test_list_open_skips_closed_and_pending(self, db):
        store = SignalMappingStore(db)
        for position_id in ("1", "2", "3"):
            store.acquire_sync(position_id)
        store.finalize_sync("1", "sig-1")
        store.finalize_sync("2", "sig-2")
        store.mark_closed_sync("2")

        assert [m.position_id for m in store.list_open_sync()] == ["1"]

    def test_sweep_removes_only_stale_processing(self, db):
        store = SignalMappingStore(db)
        store.acquire_sync("stuck")
        store.acquire_sync("done")
        store.finalize_sync("done", "sig-1")
        _age_rows(db, SignalMappingModel, "updated_at", 600)

        assert store.sweep_stale_sync(300) == 1
        assert store.get_sync("stuck") is None
        assert store.get_sync("done") is not None

    @pytest.mark.asyncio
    async def test_async_wrappers(self, db):
        store = SignalMappingStore(db)
        result = await store.acquire("555", "EURUSD")
        assert result.acquired
        await store.finalize("555", "sig-1")
        assert (await store.get("555")).signal_id == "sig-1"
        assert await store.mark_closed("555") is True


# ---------------------------------------------------------------------------
# Archive lock
# ---------------------------------------------------------------------------

class TestArchiveLock:

    def test_single_winner(self, db):
        first = ArchiveLockStore(db, holder_id="worker-a").acquire_sync("777")
        second = ArchiveLockStore(db, holder_id="worker-b").acquire_sync("777")

        assert first.acquired
        assert not second.acquired
        assert second.existing_value == "worker-a"

    def test_release_only_by_holder(self, db):
        holder = ArchiveLockStore(db, holder_id="worker-a")
        other = ArchiveLockStore(db, holder_id="worker-b")
        holder.acquire_sync("777")

        other.release_sync("777")
        assert not other.acquire_sync("777").acquired

        holder.release_sync("777")
        assert other.acquire_sync("777").acquired

    def test_finalized_lock_survives_release(self, db):
        store = ArchiveLockStore(db, holder_id="worker-a")
        store.acquire_sync("777")
        store.finalize_sync("777", "arch-1")

        store.release_sync("777")
        assert store.sweep_stale_sync(300) == 0
        assert not store.acquire_sync("777").acquired

    def test_sweep_purges_old_finalized_locks(self, db):
        store = ArchiveLockStore(db, holder_id="worker-a")
        store.acquire_sync("777")
        store.finalize_sync("777", "arch-1")
        store.acquire_sync("778")
        _age_rows(db, ArchiveLockModel, "locked_at", 3600)
        store.acquire_sync("779")

        assert store.sweep_stale_sync(300) == 2
        with db.get_session() as session:
            remaining = [row.position_id for row in session.query(ArchiveLockModel).all()]
        assert remaining == ["779"]

    def test_sweep_stale(self, db):
        store = ArchiveLockStore(db, holder_id="worker-a")
        store.acquire_sync("old")
        _age_rows(db, ArchiveLockModel, "locked_at", 600)
        store.acquire_sync("fresh")

        assert store.sweep_stale_sync(300) == 1
        assert store.acquire_sync("old").acquired
        assert not store.acquire_sync("fresh").acquired

    def test_default_holder_id(self, db):
        assert ":" in ArchiveLockStore(db).holder_id


# ---------------------------------------------------------------------------
# Telegram mapping
# ---------------------------------------------------------------------------

class TestTelegramMapping:

    @pytest.mark.asyncio
    async def test_save_and_get(self, db):
        store = TelegramMappingStore(db)
        mapping, existed = await store.save("555", 1001, "-100123")
        assert not existed
        assert mapping.telegram_message_id == 1001

        fetched = await store.get("555")
        assert fetched.telegram_chat_id == "-100123"
        assert fetched.update_message_ids == []

    @pytest.mark.asyncio
    async def test_update_message_ids_accumulate(self, db):
        store = TelegramMappingStore(db)
        await store.save("555", 1001, "-100123")
        assert await store.add_update_message_id("555", 1002)
        assert await store.add_update_message_id("555", 1003)
        assert (await store.get("555")).update_message_ids == [1002, 1003]

    @pytest.mark.asyncio
    async def test_delete_retires_once(self, db):
        store = TelegramMappingStore(db)
        await store.save("555", 1001, "-100123")

        assert await store.delete("555") is True
        assert await store.delete("555") is False
        assert await store.get("555") is None
        assert await store.add_update_message_id("555", 1002) is False

    @pytest.mark.asyncio
    async def test_save_revives_deleted_mapping(self, db):
        store = TelegramMappingStore(db)
        await store.save("555", 1001, "-100123")
        await store.delete("555")

        mapping, existed = await store.save("555", 2001, "-100123")
        assert not existed
        assert (await store.get("555")).telegram_message_id == 2001

    def test_delete_unknown(self, db):
        assert TelegramMappingStore(db).delete_sync("missing") is False
