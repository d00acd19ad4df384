"""
Domain protocols (interfaces) for dependency inversion.

The router and session depend on these contracts, not on the MetaApi SDK,
aiohttp clients or SQLAlchemy stores directly. Tests substitute in-memory
fakes; production wires the adapters in ``signalstream.broker``,
``signalstream.notifications`` and ``signalstream.storage``.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from signalstream.domain.models import ClosedTradeRequest, Signal, SignalStatus


@runtime_checkable
class TerminalState(Protocol):
    positions: Sequence[Any]


@runtime_checkable
class StreamingConnection(Protocol):
    """Live subscription to one account's terminal."""

    terminal_state: TerminalState

    @property
    def synchronized(self) -> bool: ...

    async def connect(self) -> None: ...

    async def wait_synchronized(self, timeout_seconds: float) -> None: ...

    def add_synchronization_listener(self, listener: Any) -> None: ...

    def remove_synchronization_listener(self, listener: Any) -> None: ...

    async def close(self) -> None: ...


@runtime_checkable
class TerminalAccount(Protocol):
    """Remote MT5 terminal instance for one account."""

    state: str
    connection_status: str

    async def deploy(self) -> None: ...

    async def wait_connected(self) -> None: ...

    def get_streaming_connection(self) -> StreamingConnection: ...


@runtime_checkable
class TerminalGateway(Protocol):
    """Entry point to the trading terminal provider."""

    async def get_account(self, account_id: str) -> TerminalAccount: ...


@runtime_checkable
class DealHistoryClient(Protocol):
    """REST surface used for close reconciliation and the fallback sweep."""

    async def get_positions(self) -> List[Dict[str, Any]]: ...

    async def get_deals_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]: ...

    async def get_history_orders_by_time_range(self, start: datetime, end: datetime) -> List[Dict[str, Any]]: ...


@runtime_checkable
class SignalRepository(Protocol):
    """Persistence for synthesized signals."""

    async def create_signal(self, data: Dict[str, Any]) -> Signal: ...

    async def update_signal(self, signal_id: str, partial: Dict[str, Any]) -> None: ...

    async def update_signal_status(
        self,
        signal_id: str,
        status: SignalStatus,
        result_pips: Optional[float] = None,
        close_price: Optional[float] = None,
    ) -> None: ...

    async def get_signal(self, signal_id: str) -> Optional[Signal]: ...


@runtime_checkable
class TelegramGateway(Protocol):
    """
    Telegram channel publisher.

    Every method returns the resulting message id (or True for edits) and
    None on failure. Implementations never raise.
    """

    async def send_message(self, text: str) -> Optional[int]: ...

    async def edit_message(self, message_id: int, text: str) -> Optional[bool]: ...

    async def send_gif(self, gif_url: str, caption: Optional[str] = None) -> Optional[int]: ...

    async def send_reply(self, reply_to_message_id: int, text: str) -> Optional[int]: ...

    async def copy_message(self, message_id: int) -> Optional[int]: ...

    @property
    def chat_id(self) -> str: ...


@runtime_checkable
class TradeHistoryArchiver(Protocol):
    """Writes one historical trade row per closed position."""

    async def archive_closed_trade(self, request: ClosedTradeRequest) -> str: ...
