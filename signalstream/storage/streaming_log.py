"""
Streaming audit log sink.

Append-only, bounded to ``max_logs`` rows by a probabilistic oldest-first
cleanup. Writes are best-effort: a failing write is logged and swallowed,
and after a quota error further writes are suppressed for a cool-down so the
exhausted quota is not consumed by the audit trail itself.
"""
import json
import random
import time
import traceback
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select

from signalstream.domain.models import StreamingLogType
from signalstream.exceptions import is_quota_error
from signalstream.monitoring.logger import get_logger
from signalstream.monitoring.redaction import redact, scrub_text
from signalstream.storage.base import DatabaseStore
from signalstream.storage.db import Database
from signalstream.storage.repository import StreamingLogModel, as_utc, utcnow

logger = get_logger(__name__)

MAX_LOGS = 1000


def sanitize(value: Any) -> Any:
    """Make details JSON-safe; exceptions become {name, message, stack}."""
    if isinstance(value, BaseException):
        return {
            "name": type(value).__name__,
            "message": str(value),
            "stack": "".join(traceback.format_exception(type(value), value, value.__traceback__))[-4000:],
        }
    if isinstance(value, dict):
        return {str(k): sanitize(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple, set)):
        return [sanitize(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class StreamingLogSink(DatabaseStore):
    """Best-effort writer/reader for ``mt5_streaming_logs``."""

    def __init__(
        self,
        db: Optional[Database] = None,
        max_logs: int = MAX_LOGS,
        cleanup_probability: float = 0.01,
        quota_backoff_seconds: float = 300,
        rng: Callable[[], float] = random.random,
    ):
        super().__init__(db)
        self.max_logs = max_logs
        self.cleanup_probability = cleanup_probability
        self.quota_backoff_seconds = quota_backoff_seconds
        self._rng = rng
        self._suppressed_until = 0.0

    @property
    def suppressed(self) -> bool:
        return time.monotonic() < self._suppressed_until

    def _write(
        self,
        log_type: str,
        message: str,
        success: bool,
        error: Optional[str],
        position_id: Optional[str],
        signal_id: Optional[str],
        account_id: Optional[str],
        details: Dict[str, Any],
    ) -> None:
        with self.db.get_session() as session:
            session.add(
                StreamingLogModel(
                    timestamp=utcnow(),
                    type=log_type,
                    message=message,
                    success=success,
                    error=scrub_text(error) if error else None,
                    position_id=position_id,
                    signal_id=signal_id,
                    account_id=account_id,
                    details=json.dumps(redact(sanitize(details))),
                )
            )

    async def add(
        self,
        log_type: StreamingLogType | str,
        message: str,
        *,
        success: bool = True,
        error: Optional[BaseException | str] = None,
        position_id: Optional[str] = None,
        signal_id: Optional[str] = None,
        account_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an audit entry. Never raises."""
        if self.suppressed:
            return
        type_value = log_type.value if isinstance(log_type, StreamingLogType) else str(log_type)
        payload = dict(details or {})
        if isinstance(error, BaseException):
            payload.setdefault("exception", error)
        try:
            await self._run(
                self._write,
                type_value,
                message,
                success,
                str(error) if error is not None else None,
                position_id,
                signal_id,
                account_id,
                payload,
            )
        except Exception as e:
            if is_quota_error(e):
                self._suppressed_until = time.monotonic() + self.quota_backoff_seconds
                logger.warning("STREAMING_LOG_QUOTA_EXCEEDED", error=str(e), suppress_seconds=self.quota_backoff_seconds)
            else:
                logger.warning("STREAMING_LOG_WRITE_FAILED", log_type=type_value, error=str(e))
            return

        if self._rng() < self.cleanup_probability:
            await self.cleanup()

    def cleanup_sync(self) -> int:
        """Delete the oldest rows beyond ``max_logs``."""
        with self.db.get_session() as session:
            total = session.scalar(select(func.count()).select_from(StreamingLogModel)) or 0
            excess = total - self.max_logs
            if excess <= 0:
                return 0
            oldest_ids = session.scalars(
                select(StreamingLogModel.id)
                .order_by(StreamingLogModel.timestamp.asc(), StreamingLogModel.id.asc())
                .limit(excess)
            ).all()
            session.execute(delete(StreamingLogModel).where(StreamingLogModel.id.in_(oldest_ids)))
            return len(oldest_ids)

    async def cleanup(self) -> int:
        try:
            deleted = await self._run(self.cleanup_sync)
        except Exception as e:
            logger.warning("STREAMING_LOG_CLEANUP_FAILED", error=str(e))
            return 0
        if deleted:
            logger.debug("STREAMING_LOG_CLEANUP", deleted=deleted, max_logs=self.max_logs)
        return deleted

    def get_recent_sync(self, limit: int = 50, log_type: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.get_session() as session:
            query = select(StreamingLogModel)
            if log_type:
                query = query.where(StreamingLogModel.type == log_type)
            rows = session.scalars(
                query.order_by(StreamingLogModel.timestamp.desc(), StreamingLogModel.id.desc()).limit(limit)
            ).all()
            return [
                {
                    "id": row.id,
                    "timestamp": as_utc(row.timestamp).isoformat(),
                    "type": row.type,
                    "message": row.message,
                    "success": row.success,
                    "error": row.error,
                    "position_id": row.position_id,
                    "signal_id": row.signal_id,
                    "account_id": row.account_id,
                    "details": json.loads(row.details or "{}"),
                }
                for row in rows
            ]

    async def get_recent(self, limit: int = 50, log_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self._run(self.get_recent_sync, limit, log_type)

    def clear_all_sync(self) -> int:
        with self.db.get_session() as session:
            return session.execute(delete(StreamingLogModel)).rowcount

    async def clear_all(self) -> int:
        return await self._run(self.clear_all_sync)
