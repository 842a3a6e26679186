"""
ONVIF protocol client adapter.

Wraps onvif-zeep's ONVIFCamera behind the small surface the engine needs:
- connect() / refresh() / close() (blocking, run off the event loop)
- services, capabilities and profiles as advertised by the device
- resolve() to look up a remote operation by service and method name
- event listeners fed by a client-side pull-point pump
"""

import asyncio
import functools
import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from onvif import ONVIFCamera
from onvif.exceptions import ONVIFError
from zeep.exceptions import Error as ZeepError
from zeep.helpers import serialize_object
from zeep.transports import Transport

from camlink.core.errors import ParseError, UnsupportedServiceError

logger = logging.getLogger(__name__)

PULLPOINT_NS = "http://www.onvif.org/ver10/events/wsdl/PullPointSubscription"

SERVICE_FACTORIES = {
    "device": "create_devicemgmt_service",
    "media": "create_media_service",
    "ptz": "create_ptz_service",
    "imaging": "create_imaging_service",
    "events": "create_events_service",
    "recording": "create_recording_service",
    "search": "create_search_service",
    "replay": "create_replay_service",
    "analytics": "create_analytics_service",
}

PULLPOINT_METHODS = ("PullMessages", "Unsubscribe", "Renew", "SetSynchronizationPoint")

# Event pump settings for push-style listeners
EVENT_PULL_TIMEOUT = "PT5S"
EVENT_MESSAGE_LIMIT = 10
EVENT_RETRY_DELAY = 5.0

EventCallback = Callable[[Any], None]


def subscription_address(response: Any) -> str:
    """Extract the subscription address from a CreatePullPointSubscription response."""
    data = serialize_object(response)
    try:
        address = data["SubscriptionReference"]["Address"]
    except (KeyError, TypeError) as e:
        raise ParseError(f"Subscription response has no address: {e}") from e

    if isinstance(address, dict):
        address = address.get("_value_1")
    if not address:
        raise ParseError("Subscription response has an empty address")
    return str(address)


class OnvifClient:
    """
    Client for one ONVIF device.

    Every zeep service is built in connect(), which runs off the event loop,
    so resolve() never loads a WSDL. Pull-point services are bound per
    subscription address on first use, inside the executor call that uses
    them, and share a separate HTTP session from the device services.

    Usage:
        client = OnvifClient("192.168.1.100", 80, "admin", "password")
        client.connect()
        get_profiles = client.resolve("media", "GetProfiles")
        profiles = get_profiles()
    """

    def __init__(self, host: str, port: int, username: str, password: str, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

        self._camera: Optional[ONVIFCamera] = None
        self._transport: Optional[Transport] = None
        self._event_transport: Optional[Transport] = None
        self._services: Dict[str, Any] = {}
        self._unavailable: Dict[str, str] = {}
        self._pullpoints: Dict[str, Any] = {}
        self._pullpoint_lock = Lock()

        self.services: Optional[List[Any]] = None
        self.capabilities: Optional[Dict[str, Any]] = None
        self.profiles: List[Any] = []

        self._event_listeners: List[EventCallback] = []
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._camera is not None

    def connect(self):
        """
        Connect to the device, build its services and load what it advertises.

        Blocking. Raises ONVIFError / zeep errors on failure.
        """
        logger.info(f"Connecting to ONVIF device at {self.host}:{self.port}")

        self._transport = Transport(timeout=self.timeout, operation_timeout=self.timeout)
        self._event_transport = Transport(timeout=self.timeout, operation_timeout=self.timeout)
        self._camera = ONVIFCamera(
            self.host,
            self.port,
            self.username,
            self.password,
            transport=self._transport,
        )
        self._services = {}
        self._unavailable = {}
        self._pullpoints = {}

        for name in SERVICE_FACTORIES:
            self._build_service(name)

        self.refresh()
        logger.info(f"Connected to ONVIF device at {self.host} "
                    f"({len(self._services)} service(s), unavailable: {sorted(self._unavailable) or 'none'})")

    def _build_service(self, name: str):
        factory = getattr(self._camera, SERVICE_FACTORIES[name], None)
        if factory is None:
            self._unavailable[name] = "not provided by the ONVIF library"
            return

        try:
            self._services[name] = factory(transport=self._transport)
        except ONVIFError as e:
            logger.debug(f"Service '{name}' not available on {self.host}: {e}")
            self._unavailable[name] = str(e)

    def refresh(self):
        """Reload the service list, capability document and profiles. Blocking."""
        if self._camera is None:
            return

        devicemgmt = self._service("device")

        try:
            self.services = list(devicemgmt.GetServices({"IncludeCapability": False}) or [])
        except (ONVIFError, ZeepError) as e:
            logger.debug(f"GetServices not available on {self.host}: {e}")
            self.services = None

        try:
            capabilities = serialize_object(devicemgmt.GetCapabilities({"Category": "All"}))
            self.capabilities = dict(capabilities) if capabilities else None
        except (ONVIFError, ZeepError) as e:
            logger.debug(f"GetCapabilities not available on {self.host}: {e}")
            self.capabilities = None

        try:
            self.profiles = list(self._service("media").GetProfiles() or [])
        except (ONVIFError, ZeepError, UnsupportedServiceError) as e:
            logger.error(f"Failed to get profiles from {self.host}: {e}")
            self.profiles = []

    def close(self):
        """Release the device handle and stop the event pump."""
        self._event_listeners.clear()
        self._stop_event_pump()

        for transport in (self._transport, self._event_transport):
            if transport is not None:
                transport.session.close()

        self._camera = None
        self._transport = None
        self._event_transport = None
        self._services = {}
        self._unavailable = {}
        with self._pullpoint_lock:
            self._pullpoints = {}

    def resolve(self, service: str, method: str, address: Optional[str] = None) -> Optional[Callable]:
        """
        Look up a remote operation. Never blocks.

        Returns None when the service has no such method. Pull-point methods
        need the subscription address and return a callable that binds the
        pull-point service when first invoked.

        Raises:
            UnsupportedServiceError: the device does not offer the service
        """
        if self._camera is None:
            return None

        if service == "pullpoint":
            if not address or method not in PULLPOINT_METHODS:
                return None
            return functools.partial(self._call_pullpoint, address, method)

        return getattr(self._service(service), method, None)

    def _service(self, name: str) -> Any:
        if name in self._services:
            return self._services[name]
        if name in self._unavailable:
            raise UnsupportedServiceError(f"Service '{name}' not available: {self._unavailable[name]}")
        raise UnsupportedServiceError(f"Unknown ONVIF service '{name}'")

    def _call_pullpoint(self, address: str, method: str, *args) -> Any:
        """Invoke a pull-point method. Blocking."""
        return getattr(self._pullpoint(address), method)(*args)

    def _pullpoint(self, address: str) -> Any:
        """Pull-point service bound to one subscription address. Blocking on first use."""
        with self._pullpoint_lock:
            if self._camera is None:
                raise UnsupportedServiceError("Client closed")
            if address not in self._pullpoints:
                # onvif-zeep binds the pull-point service to this xaddr
                self._camera.xaddrs[PULLPOINT_NS] = address
                self._pullpoints[address] = self._camera.create_pullpoint_service(
                    transport=self._event_transport,
                )
            return self._pullpoints[address]

    # === Push-style events ===

    @property
    def event_listener_count(self) -> int:
        return len(self._event_listeners)

    def add_event_listener(self, listener: EventCallback):
        """Register a listener called with every raw NotificationMessage."""
        self._event_listeners.append(listener)
        if len(self._event_listeners) == 1:
            self._pump_task = asyncio.get_running_loop().create_task(self._pump_events())

    def remove_event_listener(self, listener: EventCallback):
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)
        if not self._event_listeners:
            self._stop_event_pump()

    def _stop_event_pump(self):
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None

    async def _pump_events(self):
        loop = asyncio.get_running_loop()
        pullpoint = None

        try:
            while self._event_listeners and self._camera is not None:
                try:
                    if pullpoint is None:
                        events = self._service("events")
                        response = await loop.run_in_executor(None, events.CreatePullPointSubscription)
                        pullpoint = await loop.run_in_executor(None, self._pullpoint, subscription_address(response))

                    response = await loop.run_in_executor(None, functools.partial(
                        pullpoint.PullMessages,
                        {"Timeout": EVENT_PULL_TIMEOUT, "MessageLimit": EVENT_MESSAGE_LIMIT},
                    ))
                except (ONVIFError, ZeepError, ParseError, UnsupportedServiceError, OSError) as e:
                    logger.warning(f"Event pull on {self.host} failed: {e}")
                    pullpoint = None
                    await asyncio.sleep(EVENT_RETRY_DELAY)
                    continue

                for message in getattr(response, "NotificationMessage", None) or []:
                    for listener in list(self._event_listeners):
                        try:
                            listener(message)
                        except Exception:
                            logger.exception(f"Event listener failed on {self.host}")
        finally:
            if pullpoint is not None:
                self._unsubscribe_quietly(loop, pullpoint)

    def _unsubscribe_quietly(self, loop: asyncio.AbstractEventLoop, pullpoint: Any):
        def _log_result(future: asyncio.Future):
            if not future.cancelled() and future.exception() is not None:
                logger.debug(f"Unsubscribe on {self.host} failed: {future.exception()}")

        loop.run_in_executor(None, pullpoint.Unsubscribe).add_done_callback(_log_result)
