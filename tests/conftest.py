"""
Pytest configuration and shared fixtures.
"""
import os

# Keep dotenv files and prod defaults out of the test run
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from signalstream.config.config import Config, RouterConfig, TelegramConfig
from signalstream.storage.archive_lock import ArchiveLockStore
from signalstream.storage.db import Database
from signalstream.storage.signal_mapping import SignalMappingStore
from signalstream.storage.signals import SqlSignalRepository
from signalstream.storage.status import StreamingStatusStore
from signalstream.storage.streaming_log import StreamingLogSink
from signalstream.storage.telegram_mapping import TelegramMappingStore
from signalstream.storage.trade_history import SqlTradeHistoryArchiver
from signalstream.streaming.health import ConnectionHealthTracker
from signalstream.streaming.router import PositionEventRouter, RouterCapabilities
from signalstream.streaming.session import SessionStores, StreamingSession
from signalstream.streaming.state_store import PositionStateStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


async def no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fakes for external collaborators
# ---------------------------------------------------------------------------

class RecordingTelegram:
    """TelegramGateway that records every call and hands out message ids."""

    def __init__(self, chat_id: str = "-100123", fail_send: bool = False):
        self._chat_id = chat_id
        self.fail_send = fail_send
        self.sent: List[str] = []
        self.edits: List[tuple] = []
        self.gifs: List[str] = []
        self.replies: List[tuple] = []
        self.copies: List[int] = []
        self._next_id = 1000

    @property
    def chat_id(self) -> str:
        return self._chat_id

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    async def send_message(self, text: str) -> Optional[int]:
        if self.fail_send:
            return None
        self.sent.append(text)
        return self._new_id()

    async def edit_message(self, message_id: int, text: str) -> Optional[bool]:
        self.edits.append((message_id, text))
        return True

    async def send_gif(self, gif_url: str, caption: Optional[str] = None) -> Optional[int]:
        self.gifs.append(gif_url)
        return self._new_id()

    async def send_reply(self, reply_to_message_id: int, text: str) -> Optional[int]:
        self.replies.append((reply_to_message_id, text))
        return self._new_id()

    async def copy_message(self, message_id: int) -> Optional[int]:
        self.copies.append(message_id)
        return self._new_id()


class FakeDealHistory:
    """DealHistoryClient returning canned deals, or failing every call."""

    def __init__(self, deals: Optional[List[Dict[str, Any]]] = None, positions=None, error: Optional[Exception] = None):
        self.deals = deals or []
        self.positions = positions or []
        self.error = error
        self.calls = 0

    async def get_positions(self) -> List[Dict[str, Any]]:
        return list(self.positions)

    async def get_deals_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.deals)

    async def get_history_orders_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return []


class FakeConnection:
    """StreamingConnection with a scripted terminal snapshot."""

    def __init__(self, positions=None, sync_error: Optional[Exception] = None):
        self.terminal_state = SimpleNamespace(positions=list(positions or []))
        self.sync_error = sync_error
        self.listeners: List[Any] = []
        self.connected = False
        self.closed = False
        self.synchronized = False

    async def connect(self) -> None:
        self.connected = True

    async def wait_synchronized(self, timeout_seconds: float) -> None:
        if self.sync_error is not None:
            raise self.sync_error
        self.synchronized = True

    def add_synchronization_listener(self, listener: Any) -> None:
        self.listeners.append(listener)

    def remove_synchronization_listener(self, listener: Any) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def close(self) -> None:
        self.closed = True
        self.synchronized = False


class FakeAccount:
    def __init__(self, connection: FakeConnection, state: str = "DEPLOYED", connection_status: str = "CONNECTED"):
        self.state = state
        self.connection_status = connection_status
        self.connection = connection
        self.deployed = False
        self.waited = False

    async def deploy(self) -> None:
        self.deployed = True
        self.state = "DEPLOYED"

    async def wait_connected(self) -> None:
        self.waited = True
        self.connection_status = "CONNECTED"

    def get_streaming_connection(self) -> FakeConnection:
        return self.connection


class FakeGateway:
    """TerminalGateway handing out FakeAccount; ``errors`` are raised first, in order."""

    def __init__(self, account: FakeAccount, errors: Optional[List[Exception]] = None):
        self.account = account
        self.errors = list(errors or [])
        self.calls = 0

    async def get_account(self, account_id: str) -> FakeAccount:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.account


def raw_position(position_id="555", symbol="EURUSD", type_="POSITION_TYPE_BUY", **overrides) -> Dict[str, Any]:
    """Broker-shaped position payload."""
    data = {
        "id": position_id,
        "symbol": symbol,
        "type": type_,
        "volume": 0.1,
        "openPrice": 1.0900,
        "currentPrice": 1.0910,
        "stopLoss": 1.0850,
        "takeProfit": 1.1000,
        "profit": 10.0,
        "commission": 0.0,
        "swap": 0.0,
        "time": "2026-01-05T10:00:00Z",
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_session_registry():
    StreamingSession._active_accounts.clear()
    yield
    StreamingSession._active_accounts.clear()


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'signalstream.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def stores(db) -> SessionStores:
    return SessionStores(
        signal_mappings=SignalMappingStore(db),
        archive_locks=ArchiveLockStore(db, holder_id="test-worker"),
        telegram_mappings=TelegramMappingStore(db),
        log_sink=StreamingLogSink(db, rng=lambda: 1.0),
        status=StreamingStatusStore(db),
    )


@pytest.fixture
def telegram() -> RecordingTelegram:
    return RecordingTelegram()


@pytest.fixture
def router_config() -> RouterConfig:
    return RouterConfig(pending_recheck_seconds=0.0, close_lookup_delay_seconds=0.0)


@pytest.fixture
def telegram_config() -> TelegramConfig:
    return TelegramConfig(
        bot_token="123:abc",
        channel_id="-100123",
        win_gif_url="https://example.com/win.gif",
        loss_gif_url="https://example.com/loss.gif",
    )


@pytest.fixture
def make_router(db, router_config, telegram_config):
    """Factory for routers sharing one database (one router per simulated replica)."""

    def _make(
        *,
        telegram=None,
        deal_history=None,
        signals: bool = True,
        archive: bool = True,
        holder_id: str = "worker-1",
        state_store: Optional[PositionStateStore] = None,
    ) -> PositionEventRouter:
        capabilities = RouterCapabilities(
            signals=SqlSignalRepository(db) if signals else None,
            telegram=telegram,
            archiver=SqlTradeHistoryArchiver(db) if archive else None,
            deal_history=deal_history,
        )
        return PositionEventRouter(
            "acc-1",
            state_store or PositionStateStore(),
            SignalMappingStore(db),
            ArchiveLockStore(db, holder_id=holder_id),
            TelegramMappingStore(db),
            StreamingLogSink(db, rng=lambda: 1.0),
            ConnectionHealthTracker(sleep=no_sleep),
            capabilities,
            router_config=router_config,
            telegram_config=telegram_config,
            sleep=no_sleep,
        )

    return _make


@pytest.fixture
def streaming_config() -> Config:
    config = Config(
        broker={"account_id": "acc-1", "token": "secret-token", "region_url": "https://mt-client.example"},
        router={"pending_recheck_seconds": 0.0, "close_lookup_delay_seconds": 0.0},
        telegram={"bot_token": "123:abc", "channel_id": "-100123"},
        storage={"database_url": "sqlite://"},
    )
    return config


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
