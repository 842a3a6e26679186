"""
Core services for camlink.

Provides the async connection engine:
- Typed operation set and call orchestration with deadline and retry
- Capability and profile snapshots per connection
- Connection lifecycle with watchdog (camlink.core.connection)
- Event delivery (camlink.core.events) and feature gating (camlink.core.features)
"""

from camlink.core.capabilities import CapabilityRegistry, ServiceCapabilitySet
from camlink.core.errors import (
    CamlinkError, ConfigurationError, DeviceTimeoutError, MethodNotFoundError, NotConnectedError,
    ParseError, RemoteError, SubscriptionError, UnsupportedServiceError,
)
from camlink.core.operations import GenericOperation, Operation, ServiceCategory
from camlink.core.orchestrator import CallOrchestrator, CallRequest, CallResult
from camlink.core.profiles import ProfileCache
from camlink.core.snapshot import SnapshotCache

__all__ = [
    "CallOrchestrator",
    "CallRequest",
    "CallResult",
    "CamlinkError",
    "CapabilityRegistry",
    "ConfigurationError",
    "DeviceTimeoutError",
    "GenericOperation",
    "MethodNotFoundError",
    "NotConnectedError",
    "Operation",
    "ParseError",
    "ProfileCache",
    "RemoteError",
    "ServiceCapabilitySet",
    "ServiceCategory",
    "SnapshotCache",
    "SubscriptionError",
    "UnsupportedServiceError",
]
