"""
camlink data models.
"""

from camlink.models.device import (
    ConnectionState, DeviceConfig, DiscoveredDevice, EventItem, EventRecord, Profile,
    credential_env_key,
)

__all__ = [
    "ConnectionState",
    "DeviceConfig",
    "DiscoveredDevice",
    "EventItem",
    "EventRecord",
    "Profile",
    "credential_env_key",
]
