"""
Tests for the terminal synchronization listener adapter.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from signalstream.streaming.listener import PositionStreamListener


@pytest.fixture
def router():
    mock = MagicMock()
    for name in (
        "on_connected",
        "on_disconnected",
        "on_synchronized",
        "on_positions_updated",
        "on_position_updated",
        "on_position_removed",
    ):
        setattr(mock, name, AsyncMock())
    return mock


class TestPositionStreamListener:

    @pytest.mark.asyncio
    async def test_forwards_batches(self, router):
        listener = PositionStreamListener(router)
        await listener.on_positions_updated("0", [{"id": "1"}], ["2"])
        await listener.on_positions_updated("0", None, None)

        router.on_positions_updated.assert_any_await([{"id": "1"}], ["2"])
        router.on_positions_updated.assert_any_await([], [])

    @pytest.mark.asyncio
    async def test_forwards_single_events(self, router):
        listener = PositionStreamListener(router)
        await listener.on_position_updated("0", {"id": "1"})
        await listener.on_position_removed("0", "1")
        await listener.on_connected("0", 1)
        await listener.on_disconnected("0")
        await listener.on_synchronized("0", "sync-1")

        router.on_position_updated.assert_awaited_once_with({"id": "1"})
        router.on_position_removed.assert_awaited_once_with("1")
        router.on_connected.assert_awaited_once()
        router.on_disconnected.assert_awaited_once()
        router.on_synchronized.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_router_errors_are_contained(self, router):
        router.on_position_updated.side_effect = RuntimeError("boom")
        router.on_disconnected.side_effect = RuntimeError("boom")
        listener = PositionStreamListener(router)

        await listener.on_position_updated("0", {"id": "1"})
        await listener.on_disconnected("0")
