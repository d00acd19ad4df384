"""
Tests for the audit log sink and the streaming status record.
"""
from unittest.mock import MagicMock

import pytest

from signalstream.domain.models import StreamingLogType
from signalstream.exceptions import QuotaExceededError
from signalstream.storage.status import StreamingStatusStore
from signalstream.storage.streaming_log import StreamingLogSink, sanitize


class TestStreamingLogSink:

    @pytest.mark.asyncio
    async def test_add_and_read_newest_first(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0)
        await sink.add(StreamingLogType.POSITION_DETECTED, "first", position_id="1")
        await sink.add(StreamingLogType.SIGNAL_CREATED, "second", position_id="1", signal_id="sig-1")

        entries = await sink.get_recent(10)
        assert [e["message"] for e in entries] == ["second", "first"]
        assert entries[0]["type"] == "signal_created"
        assert entries[0]["signal_id"] == "sig-1"

    @pytest.mark.asyncio
    async def test_filter_by_type(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0)
        await sink.add(StreamingLogType.POSITION_DETECTED, "a")
        await sink.add(StreamingLogType.ERROR, "b", success=False, error="boom")

        errors = await sink.get_recent(10, "error")
        assert len(errors) == 1
        assert errors[0]["success"] is False
        assert errors[0]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_exception_details_are_serialized(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0)
        await sink.add(StreamingLogType.ERROR, "failed", success=False, error=ValueError("bad payload"))

        entry = (await sink.get_recent(1))[0]
        assert entry["error"] == "bad payload"
        assert entry["details"]["exception"]["name"] == "ValueError"

    @pytest.mark.asyncio
    async def test_cleanup_keeps_newest(self, db):
        sink = StreamingLogSink(db, max_logs=3, cleanup_probability=1.0, rng=lambda: 0.0)
        for i in range(5):
            await sink.add(StreamingLogType.POSITION_DETECTED, f"entry-{i}")

        entries = await sink.get_recent(10)
        assert [e["message"] for e in entries] == ["entry-4", "entry-3", "entry-2"]

    @pytest.mark.asyncio
    async def test_write_failure_is_swallowed(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0)
        sink._write = MagicMock(side_effect=RuntimeError("db down"))

        await sink.add(StreamingLogType.ERROR, "never stored")
        assert not sink.suppressed

    @pytest.mark.asyncio
    async def test_quota_error_suppresses_writes(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0, quota_backoff_seconds=300)
        calls = []

        def failing_write(*args):
            calls.append(args)
            raise QuotaExceededError("RESOURCE_EXHAUSTED")

        sink._write = failing_write
        await sink.add(StreamingLogType.ERROR, "one")
        await sink.add(StreamingLogType.ERROR, "two")

        assert sink.suppressed
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_clear_all(self, db):
        sink = StreamingLogSink(db, rng=lambda: 1.0)
        await sink.add(StreamingLogType.STREAMING_STARTED, "up")
        await sink.add(StreamingLogType.STREAMING_STOPPED, "down")
        assert await sink.clear_all() == 2
        assert await sink.get_recent() == []


def test_sanitize_drops_none_and_flattens_enums():
    data = sanitize({"type": StreamingLogType.ERROR, "missing": None, "items": (1, 2)})
    assert data == {"type": "error", "items": [1, 2]}


class TestStreamingStatusStore:

    @pytest.mark.asyncio
    async def test_save_overwrites_singleton(self, db):
        store = StreamingStatusStore(db)
        await store.save(is_connected=False, account_id="acc-1", state="connecting")
        await store.save(is_connected=True, account_id="acc-1", state="active", total_reconnects=2, health_score=90)

        record = await store.get()
        assert record.is_connected
        assert record.state == "active"
        assert record.total_reconnects == 2
        assert record.health_score == 90
        assert record.updated_at is not None

    @pytest.mark.asyncio
    async def test_delete(self, db):
        store = StreamingStatusStore(db)
        await store.save(is_connected=True, account_id="acc-1")
        await store.delete()
        assert await store.get() is None

    @pytest.mark.asyncio
    async def test_read_failure_returns_none(self, db):
        store = StreamingStatusStore(db)
        store._get = MagicMock(side_effect=RuntimeError("db down"))
        assert await store.get() is None
