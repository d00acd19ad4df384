"""
Tests for PositionEventRouter: NEW / UPDATE / CLOSED classification and
the per-position error boundaries.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeDealHistory, RecordingTelegram, raw_position
from signalstream.config.config import TelegramConfig
from signalstream.domain.models import MappingStatus, SignalStatus, SLChangeType
from signalstream.domain.normalize import normalize_position
from signalstream.exceptions import QuotaExceededError
from signalstream.storage.archive_lock import ArchiveLockStore
from signalstream.streaming.router import CreateOutcome


async def _log_types(router):
    return [entry["type"] for entry in await router.log_sink.get_recent(200)]


async def _signal_for(router, position_id="555"):
    mapping = await router.signal_mappings.get(position_id)
    return await router.capabilities.signals.get_signal(mapping.signal_id)


def _close_deal(position_id="555", price=1.1, profit=100.0, **extra):
    deal = {
        "id": "d-1",
        "positionId": position_id,
        "entryType": "DEAL_ENTRY_OUT",
        "price": price,
        "profit": profit,
        "time": "2026-01-05T12:00:00Z",
    }
    deal.update(extra)
    return deal


# ---------------------------------------------------------------------------
# NEW
# ---------------------------------------------------------------------------

class TestNewPosition:

    @pytest.mark.asyncio
    async def test_creates_signal_and_open_message(self, make_router, telegram):
        router = make_router(telegram=telegram)

        await router.on_positions_updated([raw_position()], [])

        assert "555" in router.state
        mapping = await router.signal_mappings.get("555")
        assert mapping.status is MappingStatus.COMPLETED
        signal = await _signal_for(router)
        assert signal.pair == "EURUSD"
        assert signal.entry_price == 1.09
        assert signal.stop_loss == 1.085
        assert signal.source_position_id == "555"

        assert len(telegram.sent) == 1
        assert "NEW TRADE OPENED" in telegram.sent[0]
        telegram_mapping = await router.telegram_mappings.get("555")
        assert telegram_mapping.telegram_message_id == 1001

        types = await _log_types(router)
        assert {"position_detected", "signal_created", "telegram_sent"} <= set(types)

    @pytest.mark.asyncio
    async def test_second_replica_sees_duplicate(self, make_router):
        telegram_a, telegram_b = RecordingTelegram(), RecordingTelegram()
        router_a = make_router(telegram=telegram_a, holder_id="a")
        router_b = make_router(telegram=telegram_b, holder_id="b")
        position = normalize_position(raw_position())

        assert await router_a.handle_new(position) is CreateOutcome.CREATED
        assert await router_b.handle_new(position) is CreateOutcome.DUPLICATE

        assert "555" in router_b.state
        assert len(telegram_a.sent) + len(telegram_b.sent) == 1

    @pytest.mark.asyncio
    async def test_pending_lock_held_elsewhere(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.signal_mappings.acquire("555", "EURUSD")

        outcome = await router.handle_new(normalize_position(raw_position()))

        assert outcome is CreateOutcome.DUPLICATE
        assert telegram.sent == []
        assert (await router.signal_mappings.get("555")).status is MappingStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_invalid_entry_price_is_rejected(self, make_router, telegram):
        router = make_router(telegram=telegram)

        outcome = await router.handle_new(normalize_position(raw_position(openPrice=0)))

        assert outcome is CreateOutcome.REJECTED
        assert (await router.signal_mappings.get("555")).status is MappingStatus.FAILED
        assert "555" in router.state
        assert telegram.sent == []
        assert "error" in await _log_types(router)

    @pytest.mark.asyncio
    async def test_failed_creation_is_retried_on_next_delivery(self, make_router):
        router = make_router()
        signals = router.capabilities.signals

        with patch.object(signals, "create_signal", AsyncMock(side_effect=RuntimeError("db down"))):
            await router.on_position_updated(raw_position())

        assert "555" not in router.state
        assert (await router.signal_mappings.get("555")).status is MappingStatus.FAILED

        await router.on_position_updated(raw_position())
        assert "555" in router.state
        assert (await router.signal_mappings.get("555")).has_signal

    @pytest.mark.asyncio
    async def test_signals_disabled(self, make_router, telegram):
        router = make_router(telegram=telegram, signals=False, archive=False)

        outcome = await router.handle_new(normalize_position(raw_position()))

        assert outcome is CreateOutcome.DISABLED
        assert "555" in router.state
        assert telegram.sent == []
        assert await router.signal_mappings.get("555") is None

    @pytest.mark.asyncio
    async def test_telegram_failure_keeps_signal(self, make_router):
        telegram = RecordingTelegram(fail_send=True)
        router = make_router(telegram=telegram)

        outcome = await router.handle_new(normalize_position(raw_position()))

        assert outcome is CreateOutcome.CREATED
        assert await router.telegram_mappings.get("555") is None
        assert "telegram_failed" in await _log_types(router)


# ---------------------------------------------------------------------------
# UPDATE
# ---------------------------------------------------------------------------

class TestUpdate:

    @pytest.mark.asyncio
    async def test_trailing_stop_edits_message_and_signal(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.on_position_updated(raw_position())

        await router.on_position_updated(raw_position(stopLoss=1.0950, currentPrice=1.1000))

        assert router.state.get("555").stop_loss == 1.095
        assert len(telegram.edits) == 1
        message_id, text = telegram.edits[0]
        assert message_id == 1001
        assert "TRAILING STOP" in text
        assert (await _signal_for(router)).stop_loss == 1.095
        assert "position_tp_sl_changed" in await _log_types(router)

    @pytest.mark.asyncio
    async def test_unchanged_levels_do_nothing(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.on_position_updated(raw_position())

        await router.on_position_updated(raw_position(currentPrice=1.0950, profit=50.0))

        assert telegram.edits == []
        assert router.state.get("555").current_price == 1.095
        assert "position_tp_sl_changed" not in await _log_types(router)

    @pytest.mark.asyncio
    async def test_removed_stop_loss(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.on_position_updated(raw_position())

        change = await router.handle_update(normalize_position(raw_position(stopLoss=None), partial=True))

        assert change is None
        assert router.state.get("555").stop_loss is None
        assert "TP/SL UPDATED" in telegram.edits[0][1]
        assert (await _signal_for(router)).stop_loss is None

    @pytest.mark.asyncio
    async def test_take_profit_only_change(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.on_position_updated(raw_position())

        await router.on_position_updated(raw_position(takeProfit=1.1050))

        signal = await _signal_for(router)
        assert signal.take_profit1 == 1.105
        assert signal.stop_loss == 1.085

    @pytest.mark.asyncio
    async def test_update_notification_as_reply(self, make_router, telegram, telegram_config):
        router = make_router(telegram=telegram)
        router.telegram_config = telegram_config.model_copy(update={"send_update_notification": True})
        await router.on_position_updated(raw_position())

        change = await router.handle_update(
            normalize_position(raw_position(stopLoss=1.0900, currentPrice=1.0950), partial=True)
        )

        assert change.change_type is SLChangeType.BREAKEVEN
        assert telegram.replies[0][0] == 1001
        assert (await router.telegram_mappings.get("555")).update_message_ids == [1002]

    @pytest.mark.asyncio
    async def test_update_notification_as_copy(self, make_router, telegram, telegram_config):
        router = make_router(telegram=telegram)
        router.telegram_config = telegram_config.model_copy(
            update={"send_update_notification": True, "update_notification_style": "copy"}
        )
        await router.on_position_updated(raw_position())

        await router.on_position_updated(raw_position(stopLoss=1.0800))

        assert telegram.copies == [1001]
        assert telegram.replies == []

    @pytest.mark.asyncio
    async def test_untracked_update_is_ignored(self, make_router):
        router = make_router()
        assert await router.handle_update(normalize_position(raw_position(), partial=True)) is None


# ---------------------------------------------------------------------------
# CLOSED
# ---------------------------------------------------------------------------

class TestClose:

    @pytest.mark.asyncio
    async def test_close_with_deal(self, make_router, telegram, db):
        history = FakeDealHistory(deals=[_close_deal()])
        router = make_router(telegram=telegram, deal_history=history)
        await router.on_position_updated(raw_position())

        await router.on_positions_updated([], ["555"])

        assert "555" not in router.state
        signal = await _signal_for(router)
        assert signal.status is SignalStatus.CLOSED
        assert signal.result_pips == pytest.approx(100.0)
        assert signal.close_price == 1.1

        assert "TRADE CLOSED" in telegram.edits[-1][1]
        assert telegram.gifs == ["https://example.com/win.gif"]
        assert "TRADE WIN" in telegram.sent[-1]
        assert await router.telegram_mappings.get("555") is None

        assert (await router.signal_mappings.get("555")).closed_at is not None
        assert not ArchiveLockStore(db, holder_id="other").acquire_sync("555").acquired
        assert history.calls == 1

    @pytest.mark.asyncio
    async def test_close_without_deal_uses_snapshot(self, make_router):
        telegram = RecordingTelegram()
        history = FakeDealHistory(deals=[])
        router = make_router(telegram=telegram, deal_history=history)
        await router.on_position_updated(raw_position(profit=-20.0, currentPrice=1.0880))

        assert await router.handle_closed("555") is True

        assert history.calls == router.config.close_lookup_attempts
        signal = await _signal_for(router)
        assert signal.result_pips == pytest.approx(-20.0)
        assert signal.close_price == 1.088
        assert telegram.gifs == ["https://example.com/loss.gif"]

    @pytest.mark.asyncio
    async def test_quota_error_stops_deal_lookup(self, make_router):
        history = FakeDealHistory(error=QuotaExceededError("RESOURCE_EXHAUSTED"))
        router = make_router(deal_history=history)
        await router.on_position_updated(raw_position())

        assert await router.handle_closed("555") is True
        assert history.calls == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_router, telegram):
        router = make_router(telegram=telegram)
        await router.on_position_updated(raw_position())

        assert await router.handle_closed("555") is True
        assert await router.handle_closed("555") is False
        assert sum("TRADE WIN" in text or "TRADE LOSS" in text for text in telegram.sent) == 1

    @pytest.mark.asyncio
    async def test_untracked_close(self, make_router):
        router = make_router()
        assert await router.handle_closed("999") is False
        assert await _log_types(router) == []

    @pytest.mark.asyncio
    async def test_no_close_notification_when_disabled(self, make_router, telegram, telegram_config):
        router = make_router(telegram=telegram)
        router.telegram_config = telegram_config.model_copy(update={"send_close_notification": False})
        await router.on_position_updated(raw_position())

        await router.handle_closed("555")

        assert len(telegram.sent) == 1
        assert telegram.gifs == []
        assert "TRADE CLOSED" in telegram.edits[-1][1]

    @pytest.mark.asyncio
    async def test_missing_signal_keeps_archive_lock(self, make_router, db):
        router = make_router()
        await router.on_position_updated(raw_position())

        with patch.object(router.capabilities.signals, "get_signal", AsyncMock(return_value=None)):
            await router.handle_closed("555")

        assert not ArchiveLockStore(db, holder_id="worker-1").acquire_sync("555").acquired
        assert "error" in await _log_types(router)

    @pytest.mark.asyncio
    async def test_archive_failure_releases_lock(self, make_router, db):
        router = make_router()
        await router.on_position_updated(raw_position())

        with patch.object(
            router.capabilities.archiver, "archive_closed_trade", AsyncMock(side_effect=RuntimeError("db down"))
        ):
            await router.handle_closed("555")

        assert ArchiveLockStore(db, holder_id="worker-2").acquire_sync("555").acquired
        # Signal closure is independent of the archive
        assert (await _signal_for(router)).status is SignalStatus.CLOSED

    @pytest.mark.asyncio
    async def test_removal_during_creation_closes_after_record(self, make_router, telegram):
        router = make_router(telegram=telegram, deal_history=FakeDealHistory(deals=[]))
        signals = router.capabilities.signals
        create_signal = signals.create_signal
        entered, gate = asyncio.Event(), asyncio.Event()

        async def slow_create(data):
            entered.set()
            await gate.wait()
            return await create_signal(data)

        with patch.object(signals, "create_signal", slow_create):
            new_task = asyncio.create_task(router.on_position_updated(raw_position(position_id="901")))
            await entered.wait()
            await router.on_position_removed("901")
            assert "901" not in router.state
            gate.set()
            await new_task

        assert "901" not in router.state
        mapping = await router.signal_mappings.get("901")
        assert mapping.closed_at is not None
        signal = await _signal_for(router, "901")
        assert signal.status is SignalStatus.CLOSED
        assert telegram.gifs == ["https://example.com/win.gif"]
        assert "position_closed" in await _log_types(router)

    @pytest.mark.asyncio
    async def test_removal_during_failed_creation_is_dropped(self, make_router):
        router = make_router(deal_history=FakeDealHistory(deals=[]))
        signals = router.capabilities.signals
        entered, gate = asyncio.Event(), asyncio.Event()

        async def failing_create(data):
            entered.set()
            await gate.wait()
            raise RuntimeError("db down")

        with patch.object(signals, "create_signal", failing_create):
            new_task = asyncio.create_task(router.on_position_updated(raw_position(position_id="902")))
            await entered.wait()
            await router.on_position_removed("902")
            gate.set()
            await new_task

        assert "902" not in router.state
        assert not router._pending_closes
        assert (await router.signal_mappings.get("902")).status is MappingStatus.FAILED


# ---------------------------------------------------------------------------
# Stream plumbing
# ---------------------------------------------------------------------------

class TestStreamEvents:

    @pytest.mark.asyncio
    async def test_bad_position_does_not_break_batch(self, make_router):
        router = make_router()
        bad = raw_position("666", symbol=None)

        await router.on_positions_updated([bad, raw_position("555")], [])

        assert "555" in router.state
        assert "666" not in router.state
        errors = await router.log_sink.get_recent(10, "error")
        assert errors[0]["position_id"] == "666"

    @pytest.mark.asyncio
    async def test_payload_without_id_is_skipped(self, make_router):
        router = make_router()
        await router.on_position_updated({"symbol": "EURUSD"})
        assert len(router.state) == 0

    @pytest.mark.asyncio
    async def test_inactive_router_ignores_events(self, make_router):
        router = make_router()
        router._is_active = lambda: False

        await router.on_positions_updated([raw_position()], [])
        await router.on_disconnected()

        assert len(router.state) == 0
        assert router.last_event_at is None
        assert await _log_types(router) == []

    @pytest.mark.asyncio
    async def test_in_flight_position_is_skipped(self, make_router):
        router = make_router()
        router._in_flight.add("555")

        await router.on_position_updated(raw_position())

        assert "555" not in router.state

    @pytest.mark.asyncio
    async def test_events_refresh_health(self, make_router):
        router = make_router()
        await router.on_synchronized()
        assert router.health.last_successful_event is not None
        assert router.last_event_at is not None

    @pytest.mark.asyncio
    async def test_connection_audit_entries(self, make_router):
        router = make_router()
        await router.on_connected()
        await router.on_disconnected()
        types = await _log_types(router)
        assert types == ["connection_lost", "connection_restored"]

    @pytest.mark.asyncio
    async def test_reset_clears_in_flight(self, make_router):
        router = make_router()
        router._in_flight.add("555")
        router.reset()
        assert router._in_flight == set()
