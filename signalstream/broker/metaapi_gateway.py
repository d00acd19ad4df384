"""
MetaApi terminal gateway.

Adapts the ``metaapi-cloud-sdk`` package to the ``TerminalGateway`` protocol.
The SDK is an optional dependency (``pip install signalstream[metaapi]``)
and is imported when the gateway is first used.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

from signalstream.exceptions import BrokerConnectionError, ConfigurationError
from signalstream.monitoring.logger import get_logger

logger = get_logger(__name__)


def _import_sdk():
    try:
        import metaapi_cloud_sdk
    except ImportError as e:
        raise ConfigurationError(
            "metaapi-cloud-sdk is not installed; install the 'metaapi' extra to stream from MetaApi"
        ) from e
    return metaapi_cloud_sdk


@lru_cache(maxsize=1)
def _bridge_class():
    """SDK listener subclass forwarding position callbacks to our listener."""
    from metaapi_cloud_sdk.clients.metaapi.synchronization_listener import SynchronizationListener

    class SdkListenerBridge(SynchronizationListener):
        def __init__(self, target):
            super().__init__()
            self.target = target

        async def on_connected(self, instance_index: str, replicas: int):
            await self.target.on_connected(instance_index, replicas)

        async def on_disconnected(self, instance_index: str):
            await self.target.on_disconnected(instance_index)

        async def on_positions_synchronized(self, instance_index: str, synchronization_id: str):
            await self.target.on_synchronized(instance_index, synchronization_id)

        async def on_positions_updated(self, instance_index: str, positions, removed_position_ids):
            await self.target.on_positions_updated(instance_index, positions, removed_position_ids)

        async def on_position_updated(self, instance_index: str, position):
            await self.target.on_position_updated(instance_index, position)

        async def on_position_removed(self, instance_index: str, position_id: str):
            await self.target.on_position_removed(instance_index, position_id)

    return SdkListenerBridge


class MetaApiStreamingConnection:
    """Wraps an SDK streaming connection instance."""

    def __init__(self, connection: Any):
        self._connection = connection
        self._bridges: Dict[int, Any] = {}

    @property
    def terminal_state(self):
        return self._connection.terminal_state

    @property
    def synchronized(self) -> bool:
        return bool(getattr(self._connection, "synchronized", True))

    async def connect(self) -> None:
        await self._connection.connect()

    async def wait_synchronized(self, timeout_seconds: float) -> None:
        await self._connection.wait_synchronized({"timeoutInSeconds": timeout_seconds})

    def add_synchronization_listener(self, listener: Any) -> None:
        bridge = _bridge_class()(listener)
        self._bridges[id(listener)] = bridge
        self._connection.add_synchronization_listener(bridge)

    def remove_synchronization_listener(self, listener: Any) -> None:
        bridge = self._bridges.pop(id(listener), None)
        if bridge is not None:
            self._connection.remove_synchronization_listener(bridge)

    async def close(self) -> None:
        await self._connection.close()


class MetaApiAccount:
    """Wraps an SDK ``MetatraderAccount``."""

    def __init__(self, account: Any):
        self._account = account

    @property
    def state(self) -> str:
        return self._account.state

    @property
    def connection_status(self) -> str:
        return self._account.connection_status

    async def deploy(self) -> None:
        await self._account.deploy()

    async def wait_connected(self) -> None:
        await self._account.wait_connected()

    def get_streaming_connection(self) -> MetaApiStreamingConnection:
        return MetaApiStreamingConnection(self._account.get_streaming_connection())


class MetaApiTerminalGateway:
    """TerminalGateway backed by the MetaApi cloud SDK."""

    def __init__(self, token: str, application: str = "MetaApi", opts: Optional[Dict[str, Any]] = None):
        self._token = token
        self._opts = {"application": application, **(opts or {})}
        self._api = None

    def _client(self):
        if self._api is None:
            sdk = _import_sdk()
            self._api = sdk.MetaApi(self._token, self._opts)
        return self._api

    async def get_account(self, account_id: str) -> MetaApiAccount:
        try:
            account = await self._client().metatrader_account_api.get_account(account_id)
        except ConfigurationError:
            raise
        except Exception as e:
            if type(e).__name__ in ("NotFoundException", "UnauthorizedException"):
                raise ConfigurationError(f"MetaApi account {account_id} unavailable: {e}") from e
            raise BrokerConnectionError(f"Failed to load MetaApi account {account_id}: {e}") from e
        logger.debug("METAAPI_ACCOUNT_LOADED", account_id=account_id, state=account.state)
        return MetaApiAccount(account)

    def close(self) -> None:
        if self._api is not None:
            self._api.close()
            self._api = None
