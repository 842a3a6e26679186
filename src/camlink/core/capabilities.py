"""
Capability registry: which services a connected device advertises.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from camlink.core.errors import ParseError, UnsupportedServiceError

logger = logging.getLogger(__name__)

DEFAULT_UNGATED_SERVICES = ("events", "recording")


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


@dataclass(frozen=True)
class ServiceCapabilitySet:
    """
    Immutable snapshot of a device's advertised services.

    endpoints holds the XAddr of every entry in the service list (GetServices);
    capability_keys holds the capability-document categories (GetCapabilities)
    that carry an XAddr. The endpoint list is preferred when present.
    """
    endpoints: Optional[Tuple[str, ...]] = None
    capability_keys: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_client(cls, client: Any) -> "ServiceCapabilitySet":
        services = getattr(client, "services", None)
        capabilities = getattr(client, "capabilities", None)

        endpoints = None
        if services:
            try:
                endpoints = tuple(
                    str(_field(service, "XAddr"))
                    for service in services
                    if _field(service, "XAddr")
                )
            except TypeError as e:
                raise ParseError(f"Malformed service list: {e}") from e

        capability_keys = None
        if capabilities:
            if not hasattr(capabilities, "items"):
                raise ParseError(f"Malformed capability document: {type(capabilities).__name__}")
            capability_keys = tuple(
                str(name)
                for name, entry in capabilities.items()
                if entry is not None and _field(entry, "XAddr")
            )

        return cls(endpoints=endpoints, capability_keys=capability_keys)

    @property
    def is_empty(self) -> bool:
        return not self.endpoints and not self.capability_keys

    def supports(self, service_name: str) -> bool:
        needle = service_name.lower()

        if self.endpoints:
            return any(needle in xaddr.lower() for xaddr in self.endpoints)

        if self.capability_keys:
            return any(needle in key.lower() for key in self.capability_keys)

        return False


class CapabilityRegistry:
    """
    Publishes the capability snapshot of the current connection.

    supports() answers False while no snapshot is published; callers that
    need to tell "unknown" from "unsupported" check the connection state.
    """

    def __init__(self, ungated_services: Iterable[str] = DEFAULT_UNGATED_SERVICES):
        self._snapshot: Optional[ServiceCapabilitySet] = None
        self.ungated_services = frozenset(s.lower() for s in ungated_services)

    @property
    def snapshot(self) -> Optional[ServiceCapabilitySet]:
        return self._snapshot

    @property
    def populated(self) -> bool:
        return self._snapshot is not None and not self._snapshot.is_empty

    def publish(self, snapshot: ServiceCapabilitySet):
        self._snapshot = snapshot
        logger.debug(
            f"Published capabilities: endpoints={snapshot.endpoints} "
            f"capabilities={snapshot.capability_keys}"
        )

    def clear(self):
        self._snapshot = None

    def supports(self, service_name: str) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        return snapshot.supports(service_name)

    def is_gated(self, service_name: str) -> bool:
        return service_name.lower() not in self.ungated_services

    def check(self, service_name: str, *, method: Optional[str] = None, address: Optional[str] = None):
        """Raise UnsupportedServiceError unless the service is supported or exempt."""
        if not self.is_gated(service_name):
            return
        if not self.supports(service_name):
            raise UnsupportedServiceError(
                f"Service '{service_name}' not supported by device",
                method=method,
                address=address,
            )
