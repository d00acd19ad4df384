"""
Domain models for the streaming engine.

These are the core business objects passed between the router, the stores
and the notification/archival collaborators.
All timestamps use UTC timezone-aware datetimes.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


PENDING_SIGNAL_ID = "PENDING"


class PositionType(str, Enum):
    """Position direction."""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def direction(self) -> int:
        return 1 if self is PositionType.BUY else -1


class MappingStatus(str, Enum):
    """Signal mapping lock status."""
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SignalStatus(str, Enum):
    """Signal lifecycle status."""
    ACTIVE = "active"
    CLOSED = "closed"


class ClosedBy(str, Enum):
    """How a trade was closed, inferred from the final price."""
    TAKE_PROFIT = "TP"
    STOP_LOSS = "SL"
    MANUAL = "MANUAL"


class SLChangeType(str, Enum):
    """Classification of a stop-loss move."""
    BREAKEVEN = "breakeven"
    TRAILING = "trailing"
    TIGHTENED = "tightened"
    WIDENED = "widened"


class StreamingLogType(str, Enum):
    """Audit trail entry types."""
    POSITION_DETECTED = "position_detected"
    POSITION_TP_SL_CHANGED = "position_tp_sl_changed"
    POSITION_CLOSED = "position_closed"
    SIGNAL_CREATED = "signal_created"
    SIGNAL_UPDATED = "signal_updated"
    TELEGRAM_SENT = "telegram_sent"
    TELEGRAM_UPDATED = "telegram_updated"
    TELEGRAM_NOTIFICATION = "telegram_notification"
    TELEGRAM_FAILED = "telegram_failed"
    ERROR = "error"
    STREAMING_STARTED = "streaming_started"
    STREAMING_STOPPED = "streaming_stopped"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_RESTORED = "connection_restored"


@dataclass(frozen=True)
class Position:
    """
    Canonical broker position.

    Built only by ``normalize_position`` at the broker boundary; business
    logic never reads raw broker field names.
    """
    position_id: str
    symbol: str
    type: PositionType
    volume: Optional[float]
    open_price: float
    current_price: Optional[float]
    stop_loss: Optional[float]
    take_profit: Optional[float]
    profit: Optional[float] = 0.0
    commission: float = 0.0
    swap: float = 0.0
    open_time: Optional[datetime] = None

    @property
    def net_profit(self) -> float:
        return (self.profit or 0.0) + self.commission + self.swap


@dataclass
class PositionState:
    """Last observed state of an open position (in-memory only)."""
    position_id: str
    symbol: str
    type: PositionType
    open_price: float
    volume: Optional[float]
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    current_price: Optional[float] = None
    profit: float = 0.0
    open_time: Optional[datetime] = None

    @classmethod
    def from_position(cls, position: Position) -> "PositionState":
        return cls(
            position_id=position.position_id,
            symbol=position.symbol,
            type=position.type,
            open_price=position.open_price,
            volume=position.volume,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            current_price=position.current_price,
            profit=position.net_profit,
            open_time=position.open_time,
        )

    def copy(self) -> "PositionState":
        return replace(self)


@dataclass(frozen=True)
class CloseDeal:
    """Authoritative close data from the broker's deal history."""
    position_id: str
    price: float
    profit: float
    commission: float = 0.0
    swap: float = 0.0
    time: Optional[datetime] = None
    deal_id: Optional[str] = None

    @property
    def net_profit(self) -> float:
        return self.profit + self.commission + self.swap


@dataclass
class Signal:
    """A trading signal synthesized from a broker position."""
    id: str
    pair: str
    type: PositionType
    entry_price: float
    stop_loss: Optional[float]
    take_profit1: Optional[float]
    status: SignalStatus = SignalStatus.ACTIVE
    category: str = "vip"
    title: str = ""
    description: str = ""
    notes: str = ""
    created_by: str = "system"
    created_by_name: str = "MT5 Auto Signal"
    source_position_id: Optional[str] = None
    result_pips: Optional[float] = None
    close_price: Optional[float] = None
    posted_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass
class SignalMapping:
    """Persistent position -> signal mapping (also the creation lock)."""
    position_id: str
    signal_id: Optional[str]
    pair: Optional[str]
    status: MappingStatus
    last_known_profit: Optional[float] = None
    account_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def has_signal(self) -> bool:
        return bool(self.signal_id) and self.signal_id != PENDING_SIGNAL_ID


@dataclass(frozen=True)
class LockResult:
    """Outcome of a create-if-absent lock acquisition."""
    acquired: bool
    existed: bool
    existing_value: Optional[str] = None


@dataclass
class TelegramMapping:
    """Outstanding Telegram message for an open position."""
    position_id: str
    telegram_message_id: int
    telegram_chat_id: str
    update_message_ids: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class SLChange:
    """Presentation classification of a stop-loss move."""
    change_type: SLChangeType
    label: str
    emoji: str
    pips_moved: float
    profit_locked: Optional[float] = None


@dataclass(frozen=True)
class ClosedTradeRequest:
    """Everything the archiver needs to write one trade-history row."""
    position_id: str
    signal: Signal
    final_profit: float
    final_price: Optional[float]
    account_id: Optional[str]
    state: Optional[PositionState] = None
    close_deal: Optional[CloseDeal] = None
    pips: Optional[float] = None
    closed_at: Optional[datetime] = None


@dataclass
class ConnectionHealth:
    """Snapshot of the connection health tracker."""
    score: int
    consecutive_failures: int
    reconnect_attempts: int
    total_reconnects: int
    last_successful_event: Optional[datetime]
    uptime_seconds: float
    is_circuit_open: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "consecutive_failures": self.consecutive_failures,
            "reconnect_attempts": self.reconnect_attempts,
            "total_reconnects": self.total_reconnects,
            "last_successful_event": self.last_successful_event.isoformat() if self.last_successful_event else None,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "is_circuit_open": self.is_circuit_open,
        }
