"""
Error types raised by the connection and call orchestration engine.
"""

from typing import Optional


class CamlinkError(Exception):
    """Base error for camlink. Carries the method and device address when known."""

    def __init__(self, message: str, *, method: Optional[str] = None, address: Optional[str] = None):
        self.message = message
        self.method = method
        self.address = address
        super().__init__(self._format())

    def _format(self) -> str:
        context = []
        if self.method:
            context.append(f"method={self.method}")
        if self.address:
            context.append(f"device={self.address}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(CamlinkError):
    """Missing address or credentials. Not retried until reconfigured."""


class InvalidArgumentsError(ConfigurationError):
    """Arguments missing or of the wrong type for the requested operation."""


class NotConnectedError(CamlinkError):
    """Call attempted without an active client or while not connected."""


class UnsupportedServiceError(CamlinkError):
    """The device does not advertise the service a call needs."""


class MethodNotFoundError(CamlinkError):
    """The requested remote operation does not exist on the client."""


class DeviceTimeoutError(CamlinkError, TimeoutError):
    """Deadline exceeded before the remote peer completed."""


class RemoteError(CamlinkError):
    """The remote peer returned a failure."""


class ParseError(CamlinkError):
    """Malformed event or capability payload."""


class SubscriptionError(CamlinkError):
    """Event subscription started twice or used while inactive."""
