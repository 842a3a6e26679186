"""
Device connection: owns the protocol client and the derived per-device state.

States:
    UNCONFIGURED -> INITIALIZING -> CONNECTED <-> DISCONNECTED

A watchdog probes the device every check_interval seconds. Capabilities,
profiles and cached snapshot URIs are only readable while CONNECTED and are
published before CONNECTED is announced.
"""

import asyncio
import logging
import os
from typing import Callable, List, Mapping, Optional, Tuple

from camlink.core.capabilities import DEFAULT_UNGATED_SERVICES, CapabilityRegistry, ServiceCapabilitySet
from camlink.core.errors import CamlinkError, ConfigurationError
from camlink.core.operations import AnyOperation, Operation
from camlink.core.orchestrator import CallOrchestrator, CallRequest, CallResult
from camlink.core.profiles import ProfileCache
from camlink.core.snapshot import SnapshotCache
from camlink.models.device import ConnectionState, DeviceConfig, Profile, credential_env_key

logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionState], None]


def default_client_factory(config: DeviceConfig, username: str, password: str):
    """Build the onvif-zeep backed client for a device."""
    from camlink.api.onvif_client import OnvifClient

    # Transport timeout covers pull-point long polls; call deadlines are enforced above it
    return OnvifClient(config.address, config.port, username, password,
                       timeout=max(config.timeout, config.connect_timeout))


class DeviceConnection:
    """
    One logical connection to one ONVIF device.

    Usage:
        connection = DeviceConnection(DeviceConfig(address="10.0.0.5", username="cam", password="pass"))
        await connection.initialize()
        if connection.supports("ptz"):
            ...
        await connection.close()
    """

    def __init__(self, config: DeviceConfig,
                 client_factory: Optional[Callable] = None,
                 call_timeout: float = 7.0,
                 call_retries: int = 1,
                 call_backoff: float = 0.3,
                 serialize_calls: bool = True,
                 ungated_services=DEFAULT_UNGATED_SERVICES,
                 snapshot_ttl: float = 60.0,
                 environ: Optional[Mapping[str, str]] = None):
        self.config = config
        self._client_factory = client_factory or default_client_factory
        self._environ = environ if environ is not None else os.environ

        self._client = None
        self._state = ConnectionState.UNCONFIGURED
        self._initializing = False
        self._checking = False
        self._watchdog: Optional[asyncio.Task] = None
        self._status_listeners: List[StatusListener] = []

        self.capabilities = CapabilityRegistry(ungated_services)
        self.profiles = ProfileCache()
        self.snapshots = SnapshotCache(ttl=snapshot_ttl)
        self.orchestrator = CallOrchestrator(
            self,
            timeout=call_timeout,
            retries=call_retries,
            backoff=call_backoff,
            serialize=serialize_calls,
        )

        self.last_error: Optional[Exception] = None

    # === Queries ===

    @property
    def address(self) -> str:
        return self.config.device_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def client(self):
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def supports(self, service: str) -> bool:
        """Whether the connected device advertises a service. False unless connected."""
        return self.is_connected and self.capabilities.supports(service)

    def get_profiles(self) -> List[Profile]:
        if not self.is_connected:
            return []
        return self.profiles.all()

    def resolve_profile_token(self, name: str) -> Optional[str]:
        """Token of the first profile with this name, or None."""
        if not self.is_connected:
            return None
        return self.profiles.resolve(name)

    def resolve_credentials(self) -> Optional[Tuple[str, str]]:
        return self.config.resolve_credentials(self._environ)

    # === Status listeners ===

    def add_status_listener(self, listener: StatusListener):
        if listener not in self._status_listeners:
            self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener):
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    def _set_state(self, state: ConnectionState):
        if state is self._state:
            return

        previous = self._state
        self._state = state
        logger.info(f"{self.config.label}: {previous.value} -> {state.value}")

        if state is not ConnectionState.CONNECTED:
            self.capabilities.clear()
            self.profiles.clear()
            self.snapshots.clear()

        for listener in list(self._status_listeners):
            try:
                listener(state)
            except Exception:
                logger.exception(f"Status listener failed for {self.address}")

    # === Lifecycle ===

    def _credentials(self) -> Tuple[str, str]:
        if not self.config.address:
            error = ConfigurationError("No device address configured", address=self.address)
        else:
            credentials = self.resolve_credentials()
            if credentials is not None:
                return credentials
            error = ConfigurationError(
                f"No credentials configured; set username/password or "
                f"{credential_env_key('username', self.config.address)} / "
                f"{credential_env_key('password', self.config.address)}",
                address=self.address,
            )

        self.last_error = error
        self._set_state(ConnectionState.UNCONFIGURED)
        logger.error(str(error))
        raise error

    async def initialize(self) -> ConnectionState:
        """
        Connect to the device. No-op while connected, while a connect is in
        progress, or while the watchdog owns recovery.

        Raises:
            ConfigurationError: address or credentials missing
        """
        if self._initializing or self._client is not None:
            return self._state

        credentials = self._credentials()
        return await self._connect(credentials)

    async def reconnect(self) -> ConnectionState:
        """Drop the current client and connect again."""
        if self._initializing:
            return self._state

        credentials = self._credentials()
        await self._stop_watchdog()
        self._release()
        return await self._connect(credentials)

    async def _connect(self, credentials: Tuple[str, str]) -> ConnectionState:
        self._initializing = True
        self._set_state(ConnectionState.INITIALIZING)

        client = self._client_factory(self.config, *credentials)
        try:
            await self.orchestrator.run(
                client.connect,
                label="device.connect",
                timeout=self.config.connect_timeout,
                retries=0,
            )
            self._publish(client)
        except CamlinkError as e:
            self.last_error = e
            logger.error(f"Failed to connect to {self.address}: {e}")
            self._close_client(client)
            self._set_state(ConnectionState.DISCONNECTED)
            return self._state
        finally:
            self._initializing = False

        self._client = client
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        self._start_watchdog()
        return self._state

    def _publish(self, client):
        self.capabilities.publish(ServiceCapabilitySet.from_client(client))
        self.profiles.replace(client.profiles)
        logger.debug(f"{self.address}: {len(self.profiles)} profile(s) loaded")

    async def close(self):
        """Stop the watchdog, release the client and forget derived state."""
        await self._stop_watchdog()
        self._release()
        self._set_state(ConnectionState.UNCONFIGURED)
        self.capabilities.clear()
        self.profiles.clear()
        self.snapshots.clear()

    def _release(self):
        client, self._client = self._client, None
        if client is not None:
            self._close_client(client)

    def _close_client(self, client):
        try:
            client.close()
        except Exception as e:
            logger.debug(f"Ignoring client close failure on {self.address}: {e}")

    # === Watchdog ===

    def _start_watchdog(self):
        if self.config.check_interval <= 0 or self._watchdog is not None:
            return
        self._watchdog = asyncio.get_running_loop().create_task(self._watch())

    async def _stop_watchdog(self):
        task, self._watchdog = self._watchdog, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch(self):
        while self._client is not None:
            await asyncio.sleep(self.config.check_interval)
            await self.check_connection()

    async def check_connection(self) -> bool:
        """
        Probe the device once and update the connection state.

        A failed probe moves CONNECTED to DISCONNECTED. A successful probe
        after a failure reloads capabilities and profiles before CONNECTED is
        announced again.
        """
        client = self._client
        if client is None or self._checking:
            return self.is_connected

        self._checking = True
        try:
            await self.orchestrator.call(CallRequest(
                Operation.GET_SYSTEM_DATE_AND_TIME,
                timeout=self.config.timeout,
                retries=0,
                allow_disconnected=True,
            ))
            if self._client is client and (not self.is_connected or not self.capabilities.populated):
                await self.orchestrator.run(
                    client.refresh,
                    label="device.refresh",
                    timeout=self.config.connect_timeout,
                    retries=0,
                )
                self._publish(client)
        except CamlinkError as e:
            if self._client is client:
                if self._state is not ConnectionState.DISCONNECTED:
                    logger.warning(f"Lost connection to {self.address}: {e}")
                self.last_error = e
                self._set_state(ConnectionState.DISCONNECTED)
            return False
        finally:
            self._checking = False

        if self._client is not client:
            return False

        if not self.is_connected:
            logger.info(f"Connection to {self.address} restored")
        self._set_state(ConnectionState.CONNECTED)
        return True

    # === Calls ===

    async def call(self, operation: AnyOperation, args=None, *, timeout: Optional[float] = None,
                   retries: Optional[int] = None, allow_disconnected: bool = False) -> CallResult:
        """Shortcut for orchestrator.call(CallRequest(...))."""
        return await self.orchestrator.call(CallRequest(
            operation, args, timeout=timeout, retries=retries, allow_disconnected=allow_disconnected,
        ))
