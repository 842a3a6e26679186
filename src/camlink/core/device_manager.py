"""
Device registry: one DeviceConnection per configured device.

Devices are keyed by "address:port".
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from camlink.api.discovery import probe
from camlink.core.capabilities import DEFAULT_UNGATED_SERVICES
from camlink.core.connection import DeviceConnection
from camlink.models.device import ConnectionState, DeviceConfig, DiscoveredDevice

logger = logging.getLogger(__name__)


class DeviceManager:
    """
    Manages the connections to all configured devices.

    Features:
    - Exactly one connection per device
    - Shared call / cache settings applied to every connection
    - Network discovery
    """

    def __init__(self, client_factory: Optional[Callable] = None, call_timeout: float = 7.0,
                 call_retries: int = 1, call_backoff: float = 0.3, serialize_calls: bool = True,
                 ungated_services=DEFAULT_UNGATED_SERVICES, snapshot_ttl: float = 60.0):
        self._connections: Dict[str, DeviceConnection] = {}
        self._settings = {
            "client_factory": client_factory,
            "call_timeout": call_timeout,
            "call_retries": call_retries,
            "call_backoff": call_backoff,
            "serialize_calls": serialize_calls,
            "ungated_services": tuple(ungated_services),
            "snapshot_ttl": snapshot_ttl,
        }

    @classmethod
    def from_config(cls, config, client_factory: Optional[Callable] = None) -> "DeviceManager":
        """Build a manager (and its connections) from a Config."""
        manager = cls(
            client_factory=client_factory,
            call_timeout=config.get("calls.timeout", 7.0),
            call_retries=config.get("calls.retries", 1),
            call_backoff=config.get("calls.backoff", 0.3),
            serialize_calls=config.get("calls.serialize", True),
            ungated_services=config.get("capabilities.ungated_services", DEFAULT_UNGATED_SERVICES),
            snapshot_ttl=config.get("snapshot.ttl", 60.0),
        )
        for device_config in config.device_configs():
            manager.add_device(device_config)
        return manager

    def add_device(self, device_config: DeviceConfig) -> DeviceConnection:
        """
        Register a device. Returns the existing connection when the device
        is already registered.
        """
        device_id = device_config.device_id
        connection = self._connections.get(device_id)
        if connection is not None:
            logger.debug(f"Device {device_id} already registered")
            return connection

        connection = DeviceConnection(device_config, **self._settings)
        self._connections[device_id] = connection
        logger.info(f"Added device: {device_config.label}")
        return connection

    async def remove_device(self, device_id: str):
        """Close and forget a device."""
        connection = self._connections.pop(device_id, None)
        if connection is not None:
            await connection.close()
            logger.info(f"Removed device: {device_id}")

    def get_device(self, device_id: str) -> Optional[DeviceConnection]:
        return self._connections.get(device_id)

    def find_device(self, key: str) -> Optional[DeviceConnection]:
        """Look a device up by id, address or configured name."""
        if key in self._connections:
            return self._connections[key]
        for connection in self._connections.values():
            if key in (connection.config.address, connection.config.name):
                return connection
        return None

    def get_all_devices(self) -> List[DeviceConnection]:
        return list(self._connections.values())

    async def initialize_all(self) -> Dict[str, ConnectionState]:
        """Connect every registered device concurrently."""
        connections = list(self._connections.values())
        results = await asyncio.gather(
            *(connection.initialize() for connection in connections),
            return_exceptions=True,
        )

        states = {}
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to initialize {connection.address}: {result}")
            states[connection.address] = connection.state
        return states

    async def shutdown(self):
        """Close every connection."""
        for device_id in list(self._connections):
            await self.remove_device(device_id)

    # === Device Discovery ===

    async def discover_devices(self, timeout: float = 5.0,
                               on_device_found: Optional[Callable[[DiscoveredDevice], None]] = None,
                               **kwargs) -> List[DiscoveredDevice]:
        """
        Discover devices on the network.

        Args:
            timeout: Discovery timeout in seconds
            on_device_found: Callback for each device found
        """
        return await probe(timeout, on_device_found, **kwargs)
