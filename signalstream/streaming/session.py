"""
Streaming session manager.

Owns exactly one live position subscription for one MT5 account:

    Uninitialized -> Connecting -> Synchronizing -> Active -> (Disconnected | Stopped)

``start()`` is idempotent and never leaves a half-built session registered as
active. ``stop()`` always succeeds from the caller's point of view. Transient
failures are handed to the ``ConnectionHealthTracker`` for backoff-scheduled
reconnects; configuration errors are reported and not retried.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional, Set

from signalstream.broker.region import RegionResolver
from signalstream.config.config import Config
from signalstream.domain.models import Position, StreamingLogType
from signalstream.domain.normalize import normalize_position
from signalstream.domain.protocols import DealHistoryClient, StreamingConnection, TerminalGateway
from signalstream.exceptions import (
    BrokerConnectionError,
    ConfigurationError,
    DataError,
    SessionConflictError,
    SyncTimeoutError,
    is_quota_error,
)
from signalstream.monitoring.logger import get_logger
from signalstream.storage.archive_lock import ArchiveLockStore
from signalstream.storage.db import Database
from signalstream.storage.signal_mapping import SignalMappingStore
from signalstream.storage.status import StreamingStatusStore
from signalstream.storage.streaming_log import StreamingLogSink
from signalstream.storage.telegram_mapping import TelegramMappingStore
from signalstream.streaming.health import ConnectionHealthTracker
from signalstream.streaming.listener import PositionStreamListener
from signalstream.streaming.router import PositionEventRouter, RouterCapabilities
from signalstream.streaming.state_store import PositionStateStore

logger = get_logger(__name__)

DEPLOYED_STATE = "DEPLOYED"
CONNECTED_STATUS = "CONNECTED"

DealHistoryFactory = Callable[[str, str, str], DealHistoryClient]


class _StartAborted(Exception):
    """A connect attempt outlived the stop() that fenced it."""


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    SYNCHRONIZING = "synchronizing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


@dataclass
class SessionStatus:
    """In-process view of the session; no broker round-trip."""
    connected: bool
    account_id: Optional[str]
    last_event: Optional[datetime]
    state: SessionState
    health: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "account_id": self.account_id,
            "last_event": self.last_event.isoformat() if self.last_event else None,
            "state": self.state.value,
            "health": self.health,
        }


@dataclass
class SessionStores:
    """Persistent stores shared by the session and its router."""
    signal_mappings: SignalMappingStore
    archive_locks: ArchiveLockStore
    telegram_mappings: TelegramMappingStore
    log_sink: StreamingLogSink
    status: StreamingStatusStore

    @classmethod
    def from_db(cls, db: Optional[Database] = None, storage_config=None) -> "SessionStores":
        kwargs = {}
        if storage_config is not None:
            kwargs = {
                "max_logs": storage_config.max_logs,
                "cleanup_probability": storage_config.log_cleanup_probability,
                "quota_backoff_seconds": storage_config.quota_backoff_seconds,
            }
        return cls(
            signal_mappings=SignalMappingStore(db),
            archive_locks=ArchiveLockStore(db),
            telegram_mappings=TelegramMappingStore(db),
            log_sink=StreamingLogSink(db, **kwargs),
            status=StreamingStatusStore(db),
        )


class StreamingSession:
    """One live position stream for one account."""

    _active_accounts: ClassVar[Set[str]] = set()

    def __init__(
        self,
        config: Config,
        gateway: TerminalGateway,
        stores: SessionStores,
        capabilities: Optional[RouterCapabilities] = None,
        *,
        deal_history_factory: Optional[DealHistoryFactory] = None,
        region_resolver_factory: Callable[..., RegionResolver] = RegionResolver,
        health: Optional[ConnectionHealthTracker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.gateway = gateway
        self.stores = stores
        self.capabilities = capabilities or RouterCapabilities()
        self.account_id: Optional[str] = config.broker.account_id
        self.health = health or ConnectionHealthTracker.from_config(config.reconnect)
        self.state_store = PositionStateStore()
        self.state = SessionState.UNINITIALIZED
        self.region_url: Optional[str] = config.broker.region_url
        self.connected_at: Optional[datetime] = None

        self._deal_history_factory = deal_history_factory
        self._region_resolver_factory = region_resolver_factory
        self._sleep = sleep
        self._active = False
        self._fatal_error: Optional[str] = None
        self._registered = False
        self._connection: Optional[StreamingConnection] = None
        self._listener: Optional[PositionStreamListener] = None
        self._start_lock = asyncio.Lock()
        self._epoch = 0
        self._keeper_task: Optional[asyncio.Task] = None

        self.router = PositionEventRouter(
            self.account_id or "",
            self.state_store,
            stores.signal_mappings,
            stores.archive_locks,
            stores.telegram_mappings,
            stores.log_sink,
            self.health,
            self.capabilities,
            router_config=config.router,
            telegram_config=config.telegram,
            is_active=lambda: self._active,
            sleep=sleep,
        )
        self._register()

    # -- registry ---------------------------------------------------------------

    def _register(self) -> None:
        if self._registered or not self.account_id:
            return
        if self.account_id in StreamingSession._active_accounts:
            raise SessionConflictError(f"A streaming session for account {self.account_id} already exists")
        StreamingSession._active_accounts.add(self.account_id)
        self._registered = True

    def _unregister(self) -> None:
        if self._registered:
            StreamingSession._active_accounts.discard(self.account_id)
            self._registered = False

    # -- public API -------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._active

    def is_live(self) -> bool:
        """Active, holding a connection and still synchronized."""
        connection = self._connection
        if not self._active or connection is None or self.state is not SessionState.ACTIVE:
            return False
        return bool(getattr(connection, "synchronized", True))

    async def start(self) -> None:
        """
        Establish the stream. No-op when a live session already exists.

        A manual start clears an open circuit breaker and any previous fatal
        configuration error.

        Raises:
            ConfigurationError: credentials missing or account unusable (not retried)
            OperationalError: connect/sync failure (a reconnect has been scheduled)
        """
        async with self._start_lock:
            if self.is_live():
                logger.debug("STREAMING_ALREADY_ACTIVE", account_id=self.account_id)
                return
            self._register()
            if self.health.is_circuit_open:
                logger.warning("CIRCUIT_RESET_BY_MANUAL_START", account_id=self.account_id)
                self.health.reset_circuit()
            self._fatal_error = None
            self.health.cancel_reconnect()

            epoch = self._epoch
            try:
                await self._connect(epoch)
            except _StartAborted:
                await self._abandon_start()
                return
            except Exception as e:
                if epoch != self._epoch:
                    await self._abandon_start(error=e)
                    return
                await self._handle_start_failure(e)
                raise

    async def stop(self) -> None:
        """
        Tear everything down. Never raises.

        Also fences any start or reconnect still in flight: it aborts at its
        next await without touching state, status or the reconnect schedule.
        """
        self._epoch += 1
        self._active = False
        if self.state in (SessionState.STOPPED, SessionState.UNINITIALIZED) and self._connection is None:
            self._unregister()
            return

        self.health.cancel_reconnect()
        self._cancel_keeper()
        await self._teardown()
        self.state_store.clear()
        self.router.reset()
        self.health.reset()
        self.state = SessionState.STOPPED
        self.connected_at = None
        await self.stores.status.delete()
        logger.info("STREAMING_STOPPED", account_id=self.account_id)
        await self.stores.log_sink.add(
            StreamingLogType.STREAMING_STOPPED,
            "Streaming stopped",
            account_id=self.account_id,
        )
        self._unregister()

    def status(self) -> SessionStatus:
        return SessionStatus(
            connected=self.is_live(),
            account_id=self.account_id,
            last_event=self.router.last_event_at or self.health.last_successful_event,
            state=self.state,
            health=self.health.get_health().to_dict(),
        )

    async def check_liveness(self) -> bool:
        """
        Keeper tick. Returns True when the session is live; otherwise marks it
        disconnected and schedules a backoff reconnect unless the circuit is
        open or the last failure was a configuration error.
        """
        if self.state in (SessionState.STOPPED, SessionState.UNINITIALIZED):
            return False
        if self.is_live():
            await self._save_status(is_connected=True)
            return True
        if self.state in (SessionState.CONNECTING, SessionState.SYNCHRONIZING):
            return False

        if self.state is SessionState.ACTIVE:
            logger.warning("STREAMING_CONNECTION_LOST", account_id=self.account_id)
            await self._teardown()
            self.state = SessionState.DISCONNECTED
            self.health.on_failure(BrokerConnectionError("streaming connection lost synchronization"))
            await self.stores.log_sink.add(
                StreamingLogType.CONNECTION_LOST,
                "Streaming connection lost synchronization",
                success=False,
                account_id=self.account_id,
            )
            await self._save_status(is_connected=False, error="connection lost")

        if self._fatal_error:
            logger.debug("RECONNECT_SUPPRESSED_FATAL_ERROR", error=self._fatal_error)
        elif self.health.is_circuit_open:
            logger.warning("RECONNECT_WAITING_FOR_MANUAL_RESET", account_id=self.account_id)
        elif not self.health.reconnect_pending:
            self.health.schedule_reconnect(self._reconnect)
        return False

    async def run_keeper(self, interval_seconds: Optional[float] = None) -> None:
        """Periodic liveness checks until the session is stopped."""
        interval = interval_seconds or self.config.reconnect.keeper_interval_seconds
        while self.state is not SessionState.STOPPED:
            await self._sleep(interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error("KEEPER_TICK_FAILED", error=str(e), exc_info=True)

    def start_keeper(self, interval_seconds: Optional[float] = None) -> asyncio.Task:
        if self._keeper_task is None or self._keeper_task.done():
            self._keeper_task = asyncio.create_task(self.run_keeper(interval_seconds))
        return self._keeper_task

    # -- connect / teardown -------------------------------------------------------

    async def _reconnect(self) -> None:
        """Reconnect callback for the health tracker; failures propagate to it."""
        async with self._start_lock:
            if self.is_live() or self.state is SessionState.STOPPED:
                return
            epoch = self._epoch
            try:
                await self._connect(epoch)
            except _StartAborted:
                await self._abandon_start()
                return
            except Exception as e:
                if epoch != self._epoch:
                    await self._abandon_start(error=e)
                    return
                await self._teardown()
                self.state = SessionState.DISCONNECTED
                if isinstance(e, ConfigurationError):
                    self._fatal_error = str(e)
                if not is_quota_error(e):
                    await self._save_status(is_connected=False, error=str(e))
                raise

    def _check_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise _StartAborted()

    async def _connect(self, epoch: int) -> None:
        await self._teardown()
        self._check_epoch(epoch)
        self.state = SessionState.CONNECTING
        account_id, token = self.config.require_broker_credentials()
        self.account_id = account_id
        logger.info("STREAMING_CONNECTING", account_id=account_id)

        await self._ensure_deal_history(account_id, token)
        self._check_epoch(epoch)

        account = await self.gateway.get_account(account_id)
        self._check_epoch(epoch)
        if account.state != DEPLOYED_STATE:
            if not self.config.broker.deploy_if_needed:
                raise BrokerConnectionError(f"Account {account_id} is {account.state}, deployment disabled")
            logger.info("TERMINAL_DEPLOYING", account_id=account_id, state=account.state)
            await account.deploy()
            self._check_epoch(epoch)
        if account.connection_status != CONNECTED_STATUS:
            logger.info("TERMINAL_WAITING_FOR_BROKER", account_id=account_id, status=account.connection_status)
            await account.wait_connected()
            self._check_epoch(epoch)

        connection = account.get_streaming_connection()
        listener = PositionStreamListener(self.router)
        self._connection = connection
        self._listener = listener
        connection.add_synchronization_listener(listener)

        await self._sweep_stale_locks()
        self._check_epoch(epoch)
        await connection.connect()
        self._check_epoch(epoch)

        self.state = SessionState.SYNCHRONIZING
        timeout = self.config.broker.sync_timeout_seconds
        try:
            await asyncio.wait_for(connection.wait_synchronized(timeout), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SyncTimeoutError(f"Terminal did not synchronize within {timeout}s") from e
        self._check_epoch(epoch)

        seeded = self.state_store.seed(self._snapshot_positions(connection))
        self._active = True
        self.state = SessionState.ACTIVE
        self.connected_at = datetime.now(timezone.utc)
        self.health.on_success()
        await self._save_status(is_connected=True)
        self._check_epoch(epoch)
        logger.info("STREAMING_STARTED", account_id=account_id, seeded_positions=seeded)
        await self.stores.log_sink.add(
            StreamingLogType.STREAMING_STARTED,
            f"Streaming started with {seeded} open positions",
            account_id=account_id,
            details={"seeded_positions": seeded, "region_url": self.region_url},
        )

    async def _abandon_start(self, error: Optional[Exception] = None) -> None:
        """Undo whatever a fenced connect attempt built; the stop already ran."""
        await self._teardown()
        self.state_store.clear()
        self.state = SessionState.STOPPED
        self.connected_at = None
        # A status write racing the stop's delete may have landed after it
        await self.stores.status.delete()
        logger.info(
            "STREAMING_START_ABORTED_BY_STOP",
            account_id=self.account_id,
            error=str(error) if error else None,
        )

    async def _handle_start_failure(self, error: Exception) -> None:
        await self._teardown()
        self.state = SessionState.DISCONNECTED
        self.health.on_failure(error)
        quota = is_quota_error(error)
        logger.error(
            "STREAMING_START_FAILED",
            account_id=self.account_id,
            error=str(error),
            error_type=type(error).__name__,
            quota_exceeded=quota,
        )
        if not quota:
            await self._save_status(is_connected=False, error=str(error))
            await self.stores.log_sink.add(
                StreamingLogType.ERROR,
                "Streaming start failed",
                success=False,
                error=error,
                account_id=self.account_id,
            )
        if isinstance(error, ConfigurationError):
            self._fatal_error = str(error)
            return
        if quota:
            # The keeper retries on its own slower cadence
            return
        self.health.schedule_reconnect(self._reconnect)

    async def _teardown(self) -> None:
        connection, listener = self._connection, self._listener
        self._connection = None
        self._listener = None
        self._active = False
        if connection is None:
            return
        if listener is not None:
            try:
                connection.remove_synchronization_listener(listener)
            except Exception as e:
                logger.warning("LISTENER_REMOVE_FAILED", error=str(e))
        try:
            await connection.close()
        except Exception as e:
            logger.warning("CONNECTION_CLOSE_FAILED", error=str(e))

    def _cancel_keeper(self) -> None:
        task = self._keeper_task
        self._keeper_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _ensure_deal_history(self, account_id: str, token: str) -> None:
        if self.capabilities.deal_history is not None or self._deal_history_factory is None:
            return
        resolver = self._region_resolver_factory(account_id, token, self.config.broker.rest_timeout_seconds)
        lookup = await resolver.resolve(self.config.broker.region_url)
        self.region_url = lookup.region_url
        self.capabilities.deal_history = self._deal_history_factory(lookup.region_url, account_id, token)

    async def _sweep_stale_locks(self) -> None:
        storage = self.config.storage
        try:
            archive = await self.stores.archive_locks.sweep_stale(storage.archive_lock_max_age_seconds)
            signal = await self.stores.signal_mappings.sweep_stale(storage.signal_lock_max_age_seconds)
        except Exception as e:
            logger.warning("STALE_LOCK_SWEEP_FAILED", error=str(e))
            return
        if archive or signal:
            logger.info("STALE_LOCKS_SWEPT", archive_locks=archive, signal_locks=signal)

    def _snapshot_positions(self, connection: StreamingConnection) -> List[Position]:
        terminal_state = getattr(connection, "terminal_state", None)
        raw_positions = getattr(terminal_state, "positions", None) or []
        positions = []
        for raw in raw_positions:
            try:
                positions.append(normalize_position(raw))
            except DataError as e:
                logger.warning("SEED_POSITION_SKIPPED", error=str(e))
        return positions

    async def _save_status(self, *, is_connected: bool, error: Optional[str] = None) -> None:
        health = self.health.get_health()
        await self.stores.status.save(
            is_connected=is_connected,
            account_id=self.account_id,
            state=self.state.value,
            last_event=self.router.last_event_at or self.health.last_successful_event,
            error=error,
            total_reconnects=health.total_reconnects,
            health_score=health.score,
        )


def create_session(
    config: Config,
    db: Optional[Database] = None,
    gateway: Optional[TerminalGateway] = None,
) -> StreamingSession:
    """Wire a session from configuration with the production adapters."""
    from signalstream.broker.metaapi_gateway import MetaApiTerminalGateway
    from signalstream.broker.rest_client import MetaApiRestClient
    from signalstream.notifications.telegram_client import TelegramClient
    from signalstream.storage.signals import SqlSignalRepository
    from signalstream.storage.trade_history import SqlTradeHistoryArchiver

    features = config.features
    signals = SqlSignalRepository(db) if features.signals_enabled else None
    capabilities = RouterCapabilities(
        signals=signals,
        telegram=TelegramClient.from_config(config.telegram) if features.telegram_enabled else None,
        archiver=SqlTradeHistoryArchiver(db) if features.archive_enabled else None,
    )
    if gateway is None:
        _, token = config.require_broker_credentials()
        gateway = MetaApiTerminalGateway(token, application=config.broker.application)

    timeout = config.broker.rest_timeout_seconds

    def deal_history_factory(region_url: str, account_id: str, token: str) -> DealHistoryClient:
        return MetaApiRestClient(region_url, account_id, token, timeout_seconds=timeout)

    return StreamingSession(
        config,
        gateway,
        SessionStores.from_db(db, config.storage),
        capabilities,
        deal_history_factory=deal_history_factory,
    )
