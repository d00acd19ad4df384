"""
Synchronization listener registered on the streaming connection.

Receives terminal callbacks in the SDK's shape (instance index first) and
hands them to the router. Errors never reach the SDK's dispatch loop.
"""
from typing import Any, List, Optional

from signalstream.monitoring.logger import get_logger
from signalstream.streaming.router import PositionEventRouter

logger = get_logger(__name__)


class PositionStreamListener:
    """Adapter from terminal synchronization callbacks to ``PositionEventRouter``."""

    def __init__(self, router: PositionEventRouter):
        self.router = router

    async def on_connected(self, instance_index: Optional[str] = None, replicas: Optional[int] = None) -> None:
        try:
            await self.router.on_connected()
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_connected", error=str(e))

    async def on_disconnected(self, instance_index: Optional[str] = None) -> None:
        try:
            await self.router.on_disconnected()
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_disconnected", error=str(e))

    async def on_synchronized(self, instance_index: Optional[str] = None, synchronization_id: Optional[str] = None) -> None:
        try:
            await self.router.on_synchronized()
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_synchronized", error=str(e))

    async def on_positions_updated(
        self,
        instance_index: Optional[str],
        positions: Optional[List[Any]],
        removed_position_ids: Optional[List[Any]] = None,
    ) -> None:
        try:
            await self.router.on_positions_updated(positions or [], removed_position_ids or [])
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_positions_updated", error=str(e))

    async def on_position_updated(self, instance_index: Optional[str], position: Any) -> None:
        try:
            await self.router.on_position_updated(position)
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_position_updated", error=str(e))

    async def on_position_removed(self, instance_index: Optional[str], position_id: Any) -> None:
        try:
            await self.router.on_position_removed(position_id)
        except Exception as e:
            logger.error("LISTENER_CALLBACK_FAILED", callback="on_position_removed", error=str(e))
