"""
Data models for devices, profiles, discovery results and events.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse


CREDENTIAL_ENV_PREFIX = "CAMLINK"


class ConnectionState(str, Enum):
    """Connection state of a device, broadcast on every transition."""
    UNCONFIGURED = "unconfigured"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


def credential_env_key(kind: str, address: str) -> str:
    """
    Build the environment variable name holding a credential for a device.

    Example:
        credential_env_key("username", "10.0.0.5") -> "CAMLINK_USERNAME_10_0_0_5"
    """
    suffix = re.sub(r"[^A-Za-z0-9]", "_", address).upper()
    return f"{CREDENTIAL_ENV_PREFIX}_{kind.upper()}_{suffix}"


@dataclass
class DeviceConfig:
    """Connection settings for one remote device."""

    address: str
    port: int = 80
    name: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    # Seconds
    timeout: float = 3.0
    check_interval: float = 5.0
    connect_timeout: float = 15.0

    @property
    def device_id(self) -> str:
        return f"{self.address}:{self.port}"

    @property
    def label(self) -> str:
        return self.name or self.device_id

    def resolve_credentials(self, environ: Optional[Dict[str, str]] = None) -> Optional[Tuple[str, str]]:
        """
        Return (username, password), falling back to the environment.

        Explicit values win. Otherwise CAMLINK_USERNAME_<ADDR> and
        CAMLINK_PASSWORD_<ADDR> are read. Returns None when no username
        can be resolved.
        """
        env = os.environ if environ is None else environ

        username = self.username or env.get(credential_env_key("username", self.address))
        password = self.password
        if password is None:
            password = env.get(credential_env_key("password", self.address))

        if not username or password is None:
            return None
        return username, password


@dataclass(frozen=True)
class Profile:
    """Media profile: a named, tokenized media configuration."""
    name: str
    token: str
    raw: Any = field(default=None, compare=False, repr=False)

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "token": self.token}


@dataclass(frozen=True)
class EventItem:
    """A Name/Value pair taken from an event's Source or Data section."""
    name: Optional[str]
    value: Optional[str]

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "value": self.value}


@dataclass
class EventRecord:
    """Normalized ONVIF event notification."""
    topic: str
    time: Optional[str] = None
    property: Optional[str] = None
    source: Optional[EventItem] = None
    # List of items for SimpleItem payloads, raw mapping for ElementItem
    data: Optional[Union[List[EventItem], Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "topic": self.topic,
            "time": self.time,
            "property": self.property,
        }
        if self.source is not None:
            out["source"] = self.source.to_dict()
        if isinstance(self.data, list):
            out["data"] = [item.to_dict() for item in self.data]
        elif self.data is not None:
            out["data"] = self.data
        return out


@dataclass
class DiscoveredDevice:
    """Device found via WS-Discovery."""
    urn: Optional[str]
    types: List[str]
    scopes: List[str]
    xaddrs: List[str]
    metadata_version: Optional[str] = None

    @property
    def host(self) -> Optional[str]:
        if not self.xaddrs:
            return None
        return urlparse(self.xaddrs[0]).hostname

    @property
    def port(self) -> int:
        if not self.xaddrs:
            return 80
        parsed = urlparse(self.xaddrs[0])
        if parsed.port:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80

    @property
    def name(self) -> str:
        for scope in self.scopes:
            if "/name/" in scope.lower():
                return scope.rstrip("/").split("/")[-1]
        return "ONVIF Camera"

    @property
    def vendor(self) -> str:
        """Best-effort manufacturer guess from the advertised scopes."""
        for scope in self.scopes:
            scope_lower = scope.lower()
            for vendor in ("hikvision", "dahua", "axis", "hanwha", "uniview"):
                if vendor in scope_lower:
                    return vendor
        return "onvif"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "urn": self.urn,
            "types": list(self.types),
            "scopes": list(self.scopes),
            "xaddrs": list(self.xaddrs),
            "metadataVersion": self.metadata_version,
        }
