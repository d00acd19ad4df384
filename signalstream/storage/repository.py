"""
ORM models for the streaming engine.

Every table the router, lock stores and sinks persist to is declared here so
``Database.create_all`` sees the full schema.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from signalstream.storage.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; re-attach UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SignalMappingModel(Base):
    """Position -> signal mapping; the row itself is the creation lock."""
    __tablename__ = "mt5_signal_mappings"
    __table_args__ = (
        Index("idx_signal_mapping_status", "status", "updated_at"),
        Index("idx_signal_mapping_open", "closed_at"),
    )

    position_id = Column(String, primary_key=True)
    signal_id = Column(String, nullable=True)
    pair = Column(String, nullable=True)
    status = Column(String, nullable=False)
    last_known_profit = Column(Float, nullable=True)
    account_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)


class ArchiveLockModel(Base):
    """Per-position archive lock."""
    __tablename__ = "mt5_archive_locks"
    __table_args__ = (
        Index("idx_archive_lock_age", "locked_at"),
    )

    position_id = Column(String, primary_key=True)
    locked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    locked_by = Column(String, nullable=False)
    archive_id = Column(String, nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)


class TradeTelegramMappingModel(Base):
    """Outstanding Telegram message per open position (soft-deleted on close)."""
    __tablename__ = "trade_telegram_mappings"

    position_id = Column(String, primary_key=True)
    telegram_message_id = Column(Integer, nullable=False)
    telegram_chat_id = Column(String, nullable=False)
    update_message_ids = Column(Text, nullable=False, default="[]")  # JSON list
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class StreamingLogModel(Base):
    """Bounded audit trail of streaming activity."""
    __tablename__ = "mt5_streaming_logs"
    __table_args__ = (
        Index("idx_streaming_log_time", "timestamp"),
        Index("idx_streaming_log_type_time", "type", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
    position_id = Column(String, nullable=True)
    signal_id = Column(String, nullable=True)
    account_id = Column(String, nullable=True)
    details = Column(Text, nullable=False, default="{}")  # JSON string


class StreamingStatusModel(Base):
    """Singleton status record (id=1)."""
    __tablename__ = "mt5_streaming_status"

    id = Column(Integer, primary_key=True)
    is_connected = Column(Boolean, nullable=False, default=False)
    account_id = Column(String, nullable=True)
    state = Column(String, nullable=True)
    last_event = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
    total_reconnects = Column(Integer, nullable=False, default=0)
    health_score = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SignalModel(Base):
    """Signals synthesized from broker positions."""
    __tablename__ = "signals"
    __table_args__ = (
        Index("idx_signal_status_posted", "status", "posted_at"),
        Index("idx_signal_source_position", "source_position_id"),
    )

    id = Column(String, primary_key=True)
    pair = Column(String, nullable=False)
    type = Column(String, nullable=False)
    entry_price = Column(Float, nullable=False)
    stop_loss = Column(Float, nullable=True)
    take_profit1 = Column(Float, nullable=True)
    status = Column(String, nullable=False)
    category = Column(String, nullable=False)
    title = Column(String, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=False, default="")
    created_by = Column(String, nullable=False)
    created_by_name = Column(String, nullable=False)
    source_position_id = Column(String, nullable=True)
    result_pips = Column(Float, nullable=True)
    close_price = Column(Float, nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)


class TradeHistoryModel(Base):
    """Archived closed trades."""
    __tablename__ = "mt5_trade_history"
    __table_args__ = (
        Index("idx_trade_history_close", "close_time"),
        Index("idx_trade_history_symbol", "symbol", "close_time"),
    )

    id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False, unique=True)
    ticket = Column(String, nullable=True)
    signal_id = Column(String, nullable=True)
    account_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    type = Column(String, nullable=False)
    volume = Column(Float, nullable=False)
    open_price = Column(Float, nullable=False)
    close_price = Column(Float, nullable=True)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    open_time = Column(DateTime(timezone=True), nullable=True)
    close_time = Column(DateTime(timezone=True), nullable=False)
    profit = Column(Float, nullable=False)
    pips = Column(Float, nullable=False)
    swap = Column(Float, nullable=False, default=0.0)
    commission = Column(Float, nullable=False, default=0.0)
    duration_seconds = Column(Integer, nullable=True)
    closed_by = Column(String, nullable=False)
    risk_reward = Column(Float, nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
