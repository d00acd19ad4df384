"""
Position event router.

Classifies each streamed position event as NEW, UPDATE or CLOSED against the
in-memory state store and runs the matching effects:

- NEW:     exactly-once signal creation under the shared signal-mapping lock,
           Telegram open message, then the state is recorded.
- UPDATE:  SL/TP diff against the stored state; Telegram edit (and optional
           notification), signal level sync; the state is merged.
- CLOSED:  close-deal lookup, pip computation, Telegram finalize, archive
           under the archive lock, signal closure claimed atomically.

Every position is processed inside its own error boundary: a failure is
logged and written to the audit log, never propagated to the stream.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Set, Tuple

from signalstream.config.config import RouterConfig, TelegramConfig
from signalstream.domain.models import (
    PENDING_SIGNAL_ID,
    CloseDeal,
    ClosedTradeRequest,
    Position,
    PositionState,
    Signal,
    SignalMapping,
    SignalStatus,
    SLChange,
    StreamingLogType,
)
from signalstream.domain.normalize import find_close_deal, normalize_position, position_id_of
from signalstream.domain.pips import closed_trade_pips
from signalstream.domain.protocols import (
    DealHistoryClient,
    SignalRepository,
    TelegramGateway,
    TradeHistoryArchiver,
)
from signalstream.domain.signal_factory import build_signal_data
from signalstream.exceptions import (
    DataError,
    IntegrityError,
    MissingSignalError,
    MissingSignalMappingError,
    is_quota_error,
)
from signalstream.monitoring.logger import get_logger
from signalstream.notifications.formatter import (
    classify_sl_change,
    format_close_notification,
    format_closed_message,
    format_open_message,
    format_update_message,
    format_update_notification,
)
from signalstream.storage.archive_lock import ArchiveLockStore
from signalstream.storage.signal_mapping import SignalMappingStore
from signalstream.storage.streaming_log import StreamingLogSink
from signalstream.storage.telegram_mapping import TelegramMappingStore
from signalstream.streaming.health import ConnectionHealthTracker
from signalstream.streaming.state_store import PositionStateStore

logger = get_logger(__name__)


class CreateOutcome(Enum):
    """Result of the exactly-once signal creation step."""
    CREATED = "created"
    DUPLICATE = "duplicate"  # Another worker owns (or already finished) the signal
    REJECTED = "rejected"  # Position data unusable; not retried
    FAILED = "failed"  # Transient; retried on the next delivery
    DISABLED = "disabled"


@dataclass
class RouterCapabilities:
    """Optional collaborators. A None capability is switched off."""
    signals: Optional[SignalRepository] = None
    telegram: Optional[TelegramGateway] = None
    archiver: Optional[TradeHistoryArchiver] = None
    deal_history: Optional[DealHistoryClient] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PositionEventRouter:
    """Routes streamed position events to signal, Telegram and archive effects."""

    def __init__(
        self,
        account_id: str,
        state_store: PositionStateStore,
        signal_mappings: SignalMappingStore,
        archive_locks: ArchiveLockStore,
        telegram_mappings: TelegramMappingStore,
        log_sink: StreamingLogSink,
        health: ConnectionHealthTracker,
        capabilities: Optional[RouterCapabilities] = None,
        *,
        router_config: Optional[RouterConfig] = None,
        telegram_config: Optional[TelegramConfig] = None,
        is_active: Callable[[], bool] = lambda: True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.account_id = account_id
        self.state = state_store
        self.signal_mappings = signal_mappings
        self.archive_locks = archive_locks
        self.telegram_mappings = telegram_mappings
        self.log_sink = log_sink
        self.health = health
        self.capabilities = capabilities or RouterCapabilities()
        self.config = router_config or RouterConfig()
        self.telegram_config = telegram_config or TelegramConfig()
        self._is_active = is_active
        self._sleep = sleep

        self._in_flight: Set[str] = set()
        self._pending_closes: Set[str] = set()
        self.last_event_at: Optional[datetime] = None

    def reset(self) -> None:
        self._in_flight.clear()
        self._pending_closes.clear()

    async def _audit(self, log_type: StreamingLogType, message: str, **kwargs: Any) -> None:
        await self.log_sink.add(log_type, message, account_id=self.account_id, **kwargs)

    def _accept_event(self, kind: str) -> bool:
        if not self._is_active():
            logger.debug("STREAM_EVENT_IGNORED_INACTIVE", kind=kind)
            return False
        self.health.on_event()
        self.last_event_at = _utcnow()
        return True

    # -- stream entry points ----------------------------------------------------

    async def on_positions_updated(self, positions: Iterable[Any], removed_ids: Iterable[Any] = ()) -> None:
        """Batch of upserts followed by removals."""
        if not self._accept_event("positions_updated"):
            return
        upserts = list(positions or [])
        removals = [str(pid) for pid in (removed_ids or []) if pid is not None]
        if upserts:
            await asyncio.gather(*(self._guarded_upsert(raw) for raw in upserts))
        if removals:
            await asyncio.gather(*(self._guarded_removal(pid) for pid in removals))

    async def on_position_updated(self, position: Any) -> None:
        if not self._accept_event("position_updated"):
            return
        await self._guarded_upsert(position)

    async def on_position_removed(self, position_id: Any) -> None:
        if not self._accept_event("position_removed"):
            return
        if position_id is None:
            return
        await self._guarded_removal(str(position_id))

    async def on_connected(self) -> None:
        if not self._accept_event("connected"):
            return
        logger.info("STREAM_CONNECTED", account_id=self.account_id)
        await self._audit(StreamingLogType.CONNECTION_RESTORED, "Streaming connection established")

    async def on_disconnected(self) -> None:
        # Reconnection belongs to the session keeper, not to this callback
        if not self._is_active():
            return
        logger.warning("STREAM_DISCONNECTED", account_id=self.account_id)
        await self._audit(StreamingLogType.CONNECTION_LOST, "Streaming connection lost", success=False)

    async def on_synchronized(self) -> None:
        if not self._accept_event("synchronized"):
            return
        logger.debug("STREAM_POSITIONS_SYNCHRONIZED", tracked=len(self.state))

    # -- error boundaries -------------------------------------------------------

    async def _guarded_upsert(self, raw: Any) -> None:
        position_id = position_id_of(raw)
        if not position_id:
            logger.warning("POSITION_EVENT_WITHOUT_ID")
            return
        try:
            await self._process_upsert(position_id, raw)
        except Exception as e:
            await self._report_failure(position_id, "upsert", e)

    async def _guarded_removal(self, position_id: str) -> None:
        if position_id in self._in_flight and position_id not in self.state:
            # Creation still running; handle_new closes it once the state is recorded
            logger.info("POSITION_CLOSE_DEFERRED_IN_FLIGHT", position_id=position_id)
            self._pending_closes.add(position_id)
            return
        try:
            await self.handle_closed(position_id)
        except Exception as e:
            await self._report_failure(position_id, "close", e)

    async def _report_failure(self, position_id: str, stage: str, error: Exception) -> None:
        logger.error(
            "POSITION_PROCESSING_FAILED",
            position_id=position_id,
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=True,
        )
        await self._audit(
            StreamingLogType.ERROR,
            f"Failed to process position {position_id} ({stage})",
            success=False,
            error=error,
            position_id=position_id,
        )

    async def _process_upsert(self, position_id: str, raw: Any) -> None:
        if position_id in self._in_flight:
            logger.debug("POSITION_EVENT_SKIPPED_IN_FLIGHT", position_id=position_id)
            return
        if position_id in self.state:
            await self.handle_update(normalize_position(raw, partial=True))
        else:
            await self.handle_new(normalize_position(raw))

    # -- NEW ----------------------------------------------------------------

    async def handle_new(self, position: Position) -> CreateOutcome:
        """
        First sighting of a position.

        The state is recorded unless signal creation failed transiently, so
        that the next delivery retries creation. A removal that arrived while
        creation was running is processed right after the state is recorded.
        """
        position_id = position.position_id
        self._in_flight.add(position_id)
        try:
            logger.info(
                "POSITION_DETECTED",
                position_id=position_id,
                symbol=position.symbol,
                type=position.type.value,
                volume=position.volume,
                open_price=position.open_price,
            )
            outcome, signal = await self._create_signal_once(position)
            if outcome is CreateOutcome.FAILED:
                return outcome
            if outcome is CreateOutcome.CREATED and signal is not None:
                await self._notify_open(position, signal)
            self.state.record(position)
        finally:
            self._in_flight.discard(position_id)
            close_pending = position_id in self._pending_closes
            self._pending_closes.discard(position_id)

        if close_pending:
            await self.handle_closed(position_id)
        return outcome

    async def _create_signal_once(self, position: Position) -> Tuple[CreateOutcome, Optional[Signal]]:
        signals = self.capabilities.signals
        if signals is None:
            return CreateOutcome.DISABLED, None

        position_id = position.position_id
        lock = await self.signal_mappings.acquire(position_id, position.symbol, self.account_id)
        if not lock.acquired:
            if lock.existing_value and lock.existing_value != PENDING_SIGNAL_ID:
                logger.debug("SIGNAL_ALREADY_EXISTS", position_id=position_id, signal_id=lock.existing_value)
                return CreateOutcome.DUPLICATE, None

            # Another worker holds the lock; give it a moment to finish
            await self._sleep(self.config.pending_recheck_seconds)
            mapping = await self.signal_mappings.get(position_id)
            if mapping is not None and mapping.has_signal:
                logger.debug("SIGNAL_RESOLVED_BY_OTHER_WORKER", position_id=position_id, signal_id=mapping.signal_id)
            else:
                logger.info("SIGNAL_LOCK_PENDING_ABORT", position_id=position_id)
            return CreateOutcome.DUPLICATE, None

        await self._audit(
            StreamingLogType.POSITION_DETECTED,
            f"New position {position.symbol} {position.type.value}",
            position_id=position_id,
            details={"volume": position.volume, "open_price": position.open_price},
        )

        try:
            data = build_signal_data(
                position,
                synthesize_default_levels=self.config.synthesize_default_levels,
                default_sl_pips=self.config.default_sl_pips,
                reward_risk_ratio=self.config.reward_risk_ratio,
                category=self.config.signal_category,
                created_by=self.config.created_by,
                created_by_name=self.config.created_by_name,
            )
            signal = await signals.create_signal(data)
        except DataError as e:
            await self.signal_mappings.release(position_id)
            logger.warning("SIGNAL_REJECTED_INVALID_POSITION", position_id=position_id, error=str(e))
            await self._audit(
                StreamingLogType.ERROR,
                "Position rejected for signal creation",
                success=False,
                error=e,
                position_id=position_id,
            )
            return CreateOutcome.REJECTED, None
        except Exception as e:
            await self.signal_mappings.release(position_id)
            logger.error("SIGNAL_CREATE_FAILED", position_id=position_id, error=str(e), exc_info=True)
            await self._audit(
                StreamingLogType.ERROR,
                "Signal creation failed",
                success=False,
                error=e,
                position_id=position_id,
            )
            return CreateOutcome.FAILED, None

        await self.signal_mappings.finalize(position_id, signal.id, position.net_profit)
        await self._audit(
            StreamingLogType.SIGNAL_CREATED,
            f"Signal created for {signal.pair} {signal.type.value}",
            position_id=position_id,
            signal_id=signal.id,
            details={"entry": signal.entry_price, "sl": signal.stop_loss, "tp": signal.take_profit1},
        )
        return CreateOutcome.CREATED, signal

    async def _notify_open(self, position: Position, signal: Signal) -> None:
        telegram = self.capabilities.telegram
        if telegram is None:
            return
        position_id = position.position_id
        try:
            text = format_open_message(signal, position.volume, self.telegram_config.open_trade_template)
            message_id = await telegram.send_message(text)
            if message_id is None:
                logger.warning("TELEGRAM_OPEN_FAILED", position_id=position_id)
                await self._audit(
                    StreamingLogType.TELEGRAM_FAILED,
                    "Telegram open message was not sent",
                    success=False,
                    position_id=position_id,
                    signal_id=signal.id,
                )
                return
            _, existed = await self.telegram_mappings.save(position_id, message_id, telegram.chat_id)
            if existed:
                logger.warning("TELEGRAM_MAPPING_REPLACED", position_id=position_id, message_id=message_id)
            await self._audit(
                StreamingLogType.TELEGRAM_SENT,
                "Telegram open message sent",
                position_id=position_id,
                signal_id=signal.id,
                details={"message_id": message_id},
            )
        except Exception as e:
            # Telegram never rolls back the signal
            logger.error("TELEGRAM_OPEN_ERROR", position_id=position_id, error=str(e), exc_info=True)
            await self._audit(
                StreamingLogType.TELEGRAM_FAILED,
                "Telegram open message failed",
                success=False,
                error=e,
                position_id=position_id,
                signal_id=signal.id,
            )

    # -- UPDATE ---------------------------------------------------------------

    async def handle_update(self, position: Position) -> Optional[SLChange]:
        """Diff SL/TP against the stored state; a removed level counts as a change."""
        position_id = position.position_id
        previous = self.state.get(position_id)
        if previous is None:
            logger.debug("POSITION_UPDATE_UNTRACKED", position_id=position_id)
            return None

        sl_changed = previous.stop_loss != position.stop_loss
        tp_changed = previous.take_profit != position.take_profit
        merged = self.state.merge(position)
        if not (sl_changed or tp_changed):
            return None

        change = None
        if sl_changed:
            change = classify_sl_change(
                merged.type,
                merged.open_price,
                merged.current_price,
                previous.stop_loss,
                merged.stop_loss,
                merged.symbol,
            )
        logger.info(
            "POSITION_TP_SL_CHANGED",
            position_id=position_id,
            old_sl=previous.stop_loss,
            new_sl=merged.stop_loss,
            old_tp=previous.take_profit,
            new_tp=merged.take_profit,
            change=change.change_type.value if change else None,
        )
        await self._audit(
            StreamingLogType.POSITION_TP_SL_CHANGED,
            f"TP/SL changed on {merged.symbol}",
            position_id=position_id,
            details={
                "old_sl": previous.stop_loss,
                "new_sl": merged.stop_loss,
                "old_tp": previous.take_profit,
                "new_tp": merged.take_profit,
                "change": change.change_type if change else None,
            },
        )

        await self._notify_update(merged, previous, change)
        await self._sync_signal_levels(merged, sl_changed, tp_changed)
        return change

    async def _notify_update(self, merged: PositionState, previous: PositionState, change: Optional[SLChange]) -> None:
        telegram = self.capabilities.telegram
        if telegram is None:
            return
        position_id = merged.position_id
        try:
            mapping = await self.telegram_mappings.get(position_id)
            if mapping is None:
                logger.debug("TELEGRAM_MAPPING_MISSING", position_id=position_id)
                return

            text = format_update_message(
                merged,
                previous.stop_loss,
                previous.take_profit,
                change,
                self.telegram_config.update_trade_template,
            )
            edited = await telegram.edit_message(mapping.telegram_message_id, text)
            if edited:
                await self._audit(
                    StreamingLogType.TELEGRAM_UPDATED,
                    "Telegram message updated",
                    position_id=position_id,
                    details={"message_id": mapping.telegram_message_id},
                )
            else:
                await self._audit(
                    StreamingLogType.TELEGRAM_FAILED,
                    "Telegram message edit failed",
                    success=False,
                    position_id=position_id,
                )

            if self.telegram_config.send_update_notification:
                if self.telegram_config.update_notification_style == "copy":
                    notice_id = await telegram.copy_message(mapping.telegram_message_id)
                else:
                    notice = format_update_notification(
                        self.telegram_config.update_notification_prefix, merged, change
                    )
                    notice_id = await telegram.send_reply(mapping.telegram_message_id, notice)
                if notice_id is not None:
                    await self.telegram_mappings.add_update_message_id(position_id, notice_id)
                    await self._audit(
                        StreamingLogType.TELEGRAM_NOTIFICATION,
                        "Update notification sent",
                        position_id=position_id,
                        details={"message_id": notice_id},
                    )
        except Exception as e:
            logger.error("TELEGRAM_UPDATE_ERROR", position_id=position_id, error=str(e), exc_info=True)
            await self._audit(
                StreamingLogType.TELEGRAM_FAILED,
                "Telegram update failed",
                success=False,
                error=e,
                position_id=position_id,
            )

    async def _sync_signal_levels(self, merged: PositionState, sl_changed: bool, tp_changed: bool) -> None:
        signals = self.capabilities.signals
        if signals is None:
            return
        position_id = merged.position_id
        try:
            mapping = await self.signal_mappings.get(position_id)
            if mapping is None or not mapping.has_signal:
                logger.debug("SIGNAL_MAPPING_MISSING_FOR_UPDATE", position_id=position_id)
                return
            partial = {}
            if sl_changed:
                partial["stop_loss"] = merged.stop_loss
            if tp_changed:
                partial["take_profit1"] = merged.take_profit
            await signals.update_signal(mapping.signal_id, partial)
            await self._audit(
                StreamingLogType.SIGNAL_UPDATED,
                "Signal levels updated",
                position_id=position_id,
                signal_id=mapping.signal_id,
                details=partial,
            )
        except Exception as e:
            logger.warning("SIGNAL_LEVEL_SYNC_FAILED", position_id=position_id, error=str(e))

    # -- CLOSED ---------------------------------------------------------------

    async def handle_closed(self, position_id: str) -> bool:
        """
        Position left the terminal. Returns False when it was not tracked
        (already closed or never seen), in which case nothing happens.
        """
        snapshot = self.state.pop(position_id)
        if snapshot is None:
            logger.debug("POSITION_CLOSE_UNTRACKED", position_id=position_id)
            return False

        deal = await self._fetch_close_deal(position_id)
        if deal is not None:
            final_price: Optional[float] = deal.price
            final_profit = deal.net_profit
        else:
            final_price = snapshot.current_price
            final_profit = snapshot.profit
            logger.info("CLOSE_DEAL_UNAVAILABLE_USING_SNAPSHOT", position_id=position_id, profit=final_profit)

        pips = closed_trade_pips(snapshot.symbol, snapshot.type, snapshot.open_price, final_price, final_profit)
        logger.info(
            "POSITION_CLOSED",
            position_id=position_id,
            symbol=snapshot.symbol,
            close_price=final_price,
            profit=final_profit,
            pips=pips,
            from_deal=deal is not None,
        )
        await self._audit(
            StreamingLogType.POSITION_CLOSED,
            f"Position closed {snapshot.symbol} {pips:+.1f} pips",
            position_id=position_id,
            details={"close_price": final_price, "profit": final_profit, "pips": pips, "from_deal": deal is not None},
        )

        mapping = await self.signal_mappings.get(position_id)
        await self._finalize_telegram(snapshot, final_price, final_profit, pips)
        await self._archive(snapshot, mapping, deal, final_price, final_profit, pips)
        await self._close_signal(position_id, mapping, final_price, final_profit, pips)
        return True

    async def _fetch_close_deal(self, position_id: str) -> Optional[CloseDeal]:
        history = self.capabilities.deal_history
        if history is None:
            return None
        window = timedelta(minutes=self.config.close_lookup_window_minutes)
        attempts = self.config.close_lookup_attempts
        for attempt in range(1, attempts + 1):
            now = _utcnow()
            try:
                deals = await history.get_deals_by_time_range(now - window, now + window)
                deal = find_close_deal(deals or [], position_id)
                if deal is not None:
                    return deal
                logger.debug("CLOSE_DEAL_NOT_FOUND", position_id=position_id, attempt=attempt)
            except Exception as e:
                if is_quota_error(e):
                    logger.warning("CLOSE_DEAL_LOOKUP_QUOTA_EXCEEDED", position_id=position_id)
                    return None
                logger.warning("CLOSE_DEAL_LOOKUP_FAILED", position_id=position_id, attempt=attempt, error=str(e))
            if attempt < attempts:
                await self._sleep(self.config.close_lookup_delay_seconds)
        return None

    async def _finalize_telegram(
        self,
        snapshot: PositionState,
        final_price: Optional[float],
        final_profit: float,
        pips: float,
    ) -> None:
        telegram = self.capabilities.telegram
        if telegram is None:
            return
        position_id = snapshot.position_id
        try:
            mapping = await self.telegram_mappings.get(position_id)
            if mapping is None:
                logger.debug("TELEGRAM_MAPPING_MISSING", position_id=position_id)
                return

            text = format_closed_message(
                snapshot.symbol,
                snapshot.type,
                snapshot.open_price,
                final_price,
                pips,
                final_profit,
                self.telegram_config.close_trade_template,
            )
            await telegram.edit_message(mapping.telegram_message_id, text)

            # Only the worker that retires the mapping sends the notifications
            if not await self.telegram_mappings.delete(position_id):
                logger.debug("TELEGRAM_CLOSE_ALREADY_HANDLED", position_id=position_id)
                return
            await self._audit(
                StreamingLogType.TELEGRAM_UPDATED,
                "Telegram message finalized",
                position_id=position_id,
                details={"message_id": mapping.telegram_message_id},
            )

            if not self.telegram_config.send_close_notification:
                return
            gif_url = None
            if final_profit > 0:
                gif_url = self.telegram_config.win_gif_url
            elif final_profit < 0:
                gif_url = self.telegram_config.loss_gif_url
            if gif_url:
                await telegram.send_gif(gif_url)
            notice_id = await telegram.send_message(
                format_close_notification(snapshot.symbol, snapshot.type, pips, final_profit)
            )
            await self._audit(
                StreamingLogType.TELEGRAM_NOTIFICATION,
                "Close notification sent",
                success=notice_id is not None,
                position_id=position_id,
                details={"message_id": notice_id, "gif": bool(gif_url)},
            )
        except Exception as e:
            logger.error("TELEGRAM_CLOSE_ERROR", position_id=position_id, error=str(e), exc_info=True)
            await self._audit(
                StreamingLogType.TELEGRAM_FAILED,
                "Telegram close handling failed",
                success=False,
                error=e,
                position_id=position_id,
            )

    async def _archive(
        self,
        snapshot: PositionState,
        mapping: Optional[SignalMapping],
        deal: Optional[CloseDeal],
        final_price: Optional[float],
        final_profit: float,
        pips: float,
    ) -> None:
        archiver = self.capabilities.archiver
        if archiver is None:
            return
        position_id = snapshot.position_id
        lock = await self.archive_locks.acquire(position_id)
        if not lock.acquired:
            logger.debug("ARCHIVE_ALREADY_CLAIMED", position_id=position_id, archive_id=lock.existing_value)
            return

        try:
            if mapping is None or not mapping.has_signal:
                raise MissingSignalMappingError(f"No signal mapping for closed position {position_id}")
            signals = self.capabilities.signals
            signal = await signals.get_signal(mapping.signal_id) if signals is not None else None
            if signal is None:
                raise MissingSignalError(f"Signal {mapping.signal_id} not found for position {position_id}")

            archive_id = await archiver.archive_closed_trade(
                ClosedTradeRequest(
                    position_id=position_id,
                    signal=signal,
                    final_profit=final_profit,
                    final_price=final_price,
                    account_id=self.account_id,
                    state=snapshot,
                    close_deal=deal,
                    pips=pips,
                    closed_at=deal.time if deal is not None and deal.time else _utcnow(),
                )
            )
            await self.archive_locks.finalize(position_id, archive_id)
            logger.info("TRADE_ARCHIVED", position_id=position_id, archive_id=archive_id)
        except IntegrityError as e:
            # The lock stays until the stale sweep so other workers skip it too
            logger.error("ARCHIVE_INTEGRITY_ERROR", position_id=position_id, error=str(e))
            await self._audit(
                StreamingLogType.ERROR,
                "Trade archive skipped: missing signal data",
                success=False,
                error=e,
                position_id=position_id,
            )
        except Exception as e:
            logger.error("ARCHIVE_FAILED", position_id=position_id, error=str(e), exc_info=True)
            try:
                await self.archive_locks.release(position_id)
            except Exception as release_error:
                logger.warning("ARCHIVE_LOCK_RELEASE_FAILED", position_id=position_id, error=str(release_error))
            await self._audit(
                StreamingLogType.ERROR,
                "Trade archive failed",
                success=False,
                error=e,
                position_id=position_id,
            )

    async def _close_signal(
        self,
        position_id: str,
        mapping: Optional[SignalMapping],
        final_price: Optional[float],
        final_profit: float,
        pips: float,
    ) -> None:
        signals = self.capabilities.signals
        if signals is None:
            return
        if mapping is None or not mapping.has_signal:
            logger.warning("SIGNAL_MAPPING_MISSING_ON_CLOSE", position_id=position_id)
            return
        if not await self.signal_mappings.mark_closed(position_id, final_profit):
            logger.debug("SIGNAL_CLOSE_ALREADY_CLAIMED", position_id=position_id)
            return
        try:
            await signals.update_signal_status(mapping.signal_id, SignalStatus.CLOSED, pips, final_price)
        except Exception as e:
            logger.error("SIGNAL_CLOSE_FAILED", position_id=position_id, signal_id=mapping.signal_id, error=str(e))
            await self._audit(
                StreamingLogType.ERROR,
                "Signal close failed",
                success=False,
                error=e,
                position_id=position_id,
                signal_id=mapping.signal_id,
            )
            return
        await self._audit(
            StreamingLogType.SIGNAL_UPDATED,
            f"Signal closed with {pips:+.1f} pips",
            position_id=position_id,
            signal_id=mapping.signal_id,
            details={"status": SignalStatus.CLOSED, "result_pips": pips, "close_price": final_price},
        )
