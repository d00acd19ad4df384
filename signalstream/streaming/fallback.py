"""
REST fallback sweep.

Reconciles positions over the REST API when no streaming session is running
(cron jobs, request-scoped execution). It goes through the same router, so
locks and idempotency guarantees are identical to the streaming path:

- open positions without a signal mapping -> NEW (through the signal lock)
- open mappings whose position is gone    -> CLOSED (deal lookup, archive, close)
"""
from typing import Any, Dict, Optional, Set

from signalstream.config.config import Config
from signalstream.domain.models import Position, SignalMapping
from signalstream.domain.normalize import normalize_position, position_id_of
from signalstream.domain.protocols import DealHistoryClient
from signalstream.exceptions import DataError
from signalstream.monitoring.logger import get_logger
from signalstream.storage.db import Database
from signalstream.streaming.health import ConnectionHealthTracker
from signalstream.streaming.router import CreateOutcome, PositionEventRouter, RouterCapabilities
from signalstream.streaming.state_store import PositionStateStore

logger = get_logger(__name__)


class FallbackReconciler:
    """Periodic REST reconciliation driving ``PositionEventRouter``."""

    def __init__(self, router: PositionEventRouter, client: DealHistoryClient):
        self.router = router
        self.client = client

    async def _open_positions(self) -> Dict[str, Any]:
        raw_positions = await self.client.get_positions()
        out: Dict[str, Any] = {}
        for raw in raw_positions or []:
            position_id = position_id_of(raw)
            if position_id:
                out[position_id] = raw
        return out

    async def sync_open_positions(self) -> Dict[str, int]:
        """Create signals for open positions that have none yet."""
        summary = {"open": 0, "created": 0, "existing": 0, "rejected": 0, "failed": 0}
        open_positions = await self._open_positions()
        summary["open"] = len(open_positions)

        for position_id, raw in open_positions.items():
            mapping = await self.router.signal_mappings.get(position_id)
            if mapping is not None and mapping.has_signal:
                summary["existing"] += 1
                continue
            try:
                outcome = await self.router.handle_new(normalize_position(raw))
            except DataError as e:
                logger.warning("FALLBACK_POSITION_INVALID", position_id=position_id, error=str(e))
                summary["rejected"] += 1
                continue
            except Exception as e:
                logger.error("FALLBACK_POSITION_FAILED", position_id=position_id, error=str(e), exc_info=True)
                summary["failed"] += 1
                continue
            if outcome is CreateOutcome.CREATED:
                summary["created"] += 1
            elif outcome is CreateOutcome.FAILED:
                summary["failed"] += 1
            elif outcome is CreateOutcome.REJECTED:
                summary["rejected"] += 1
            else:
                summary["existing"] += 1

        logger.info("FALLBACK_SYNC_SUMMARY", **summary)
        return summary

    async def detect_closed_positions(self, open_ids: Optional[Set[str]] = None) -> Dict[str, int]:
        """Close mappings whose position no longer exists on the terminal."""
        summary = {"tracked": 0, "closed": 0, "failed": 0}
        if open_ids is None:
            open_ids = set(await self._open_positions())
        mappings = await self.router.signal_mappings.list_open()
        summary["tracked"] = len(mappings)

        for mapping in mappings:
            if mapping.position_id in open_ids:
                continue
            try:
                restored = await self._restore_state(mapping)
                if restored is None:
                    summary["failed"] += 1
                    continue
                self.router.state.record(restored)
                if await self.router.handle_closed(mapping.position_id):
                    summary["closed"] += 1
            except Exception as e:
                logger.error("FALLBACK_CLOSE_FAILED", position_id=mapping.position_id, error=str(e), exc_info=True)
                summary["failed"] += 1

        logger.info("FALLBACK_CLOSE_SUMMARY", **summary)
        return summary

    async def _restore_state(self, mapping: SignalMapping) -> Optional[Position]:
        """Rebuild the last known position from its mapping and signal."""
        signals = self.router.capabilities.signals
        signal = await signals.get_signal(mapping.signal_id) if signals is not None else None
        if signal is None:
            logger.warning("FALLBACK_SIGNAL_MISSING", position_id=mapping.position_id, signal_id=mapping.signal_id)
            return None
        return Position(
            position_id=mapping.position_id,
            symbol=mapping.pair or signal.pair,
            type=signal.type,
            volume=None,
            open_price=signal.entry_price,
            current_price=None,
            stop_loss=signal.stop_loss,
            take_profit=signal.take_profit1,
            profit=mapping.last_known_profit or 0.0,
            open_time=signal.posted_at,
        )

    async def run(self) -> Dict[str, Any]:
        """Open sweep, then the close sweep against a fresh positions list."""
        opened = await self.sync_open_positions()
        open_ids = set(await self._open_positions())
        closed = await self.detect_closed_positions(open_ids)
        return {"open": opened, "closed": closed}


async def create_fallback(
    config: Config,
    db: Optional[Database] = None,
    client: Optional[DealHistoryClient] = None,
) -> FallbackReconciler:
    """Wire a reconciler with the production adapters."""
    from signalstream.broker.rest_client import MetaApiRestClient
    from signalstream.broker.region import RegionResolver
    from signalstream.notifications.telegram_client import TelegramClient
    from signalstream.storage.signals import SqlSignalRepository
    from signalstream.storage.trade_history import SqlTradeHistoryArchiver
    from signalstream.streaming.session import SessionStores

    account_id, token = config.require_broker_credentials()
    if client is None:
        timeout = config.broker.rest_timeout_seconds
        lookup = await RegionResolver(account_id, token, timeout).resolve(config.broker.region_url)
        client = MetaApiRestClient(
            lookup.region_url,
            account_id,
            token,
            timeout_seconds=timeout,
        )

    features = config.features
    stores = SessionStores.from_db(db, config.storage)
    router = PositionEventRouter(
        account_id,
        PositionStateStore(),
        stores.signal_mappings,
        stores.archive_locks,
        stores.telegram_mappings,
        stores.log_sink,
        ConnectionHealthTracker.from_config(config.reconnect),
        RouterCapabilities(
            signals=SqlSignalRepository(db) if features.signals_enabled else None,
            telegram=TelegramClient.from_config(config.telegram) if features.telegram_enabled else None,
            archiver=SqlTradeHistoryArchiver(db) if features.archive_enabled else None,
            deal_history=client,
        ),
        router_config=config.router,
        telegram_config=config.telegram,
    )
    return FallbackReconciler(router, client)
