import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from camlink.core.connection import DeviceConnection
from camlink.models.device import DeviceConfig


DEFAULT_SERVICES = [
    {"Namespace": "http://www.onvif.org/ver10/device/wsdl", "XAddr": "http://10.0.0.5/onvif/device_service"},
    {"Namespace": "http://www.onvif.org/ver10/media/wsdl", "XAddr": "http://10.0.0.5/onvif/Media"},
    {"Namespace": "http://www.onvif.org/ver20/ptz/wsdl", "XAddr": "http://10.0.0.5/onvif/PTZ"},
]

DEFAULT_PROFILES = [
    {"token": "Profile_1", "Name": "mainStream"},
    {"token": "Profile_2", "Name": "subStream"},
]


class FakeClient:
    """Stands in for OnvifClient: services, capabilities, profiles and scripted handlers."""

    def __init__(self, services=None, capabilities=None, profiles=None):
        self.services = list(DEFAULT_SERVICES) if services is None else services
        self.capabilities = capabilities
        self.profiles = list(DEFAULT_PROFILES) if profiles is None else profiles

        self.handlers: Dict[Tuple[str, str], Callable] = {}
        self.calls: List[str] = []
        self.addresses: List[Optional[str]] = []
        self.connect_error: Optional[Exception] = None
        self.connect_count = 0
        self.refresh_count = 0
        self.closed = False
        self.listeners: List[Callable[[Any], None]] = []

        self.on("device", "GetSystemDateAndTime", lambda: {"UTCDateTime": {}})

    def on(self, service: str, method: str, handler: Callable):
        self.handlers[(service, method)] = handler

    def connect(self):
        self.connect_count += 1
        if self.connect_error is not None:
            raise self.connect_error

    def refresh(self):
        self.refresh_count += 1

    def close(self):
        self.closed = True

    def resolve(self, service: str, method: str, address: Optional[str] = None):
        handler = self.handlers.get((service, method))
        if handler is None:
            return None
        label = f"{service}.{method}"

        if inspect.iscoroutinefunction(handler):
            async def call_async(*args):
                self.calls.append(label)
                self.addresses.append(address)
                return await handler(*args)
            return call_async

        def call(*args):
            self.calls.append(label)
            self.addresses.append(address)
            return handler(*args)
        return call

    def count(self, label: str) -> int:
        return self.calls.count(label)

    # Push events

    def add_event_listener(self, listener):
        self.listeners.append(listener)

    def remove_event_listener(self, listener):
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit(self, notification):
        for listener in list(self.listeners):
            listener(notification)


def make_connection(client: FakeClient, **kwargs) -> DeviceConnection:
    """Connection to 10.0.0.5:80 (cam/pass) backed by a fake client. Build inside a running loop."""
    config_kwargs = {
        "address": "10.0.0.5",
        "port": 80,
        "username": "cam",
        "password": "pass",
        "check_interval": 0,
    }
    for key in ("address", "port", "username", "password", "timeout", "check_interval", "connect_timeout"):
        if key in kwargs:
            config_kwargs[key] = kwargs.pop(key)

    kwargs.setdefault("call_backoff", 0.01)
    kwargs.setdefault("environ", {})
    return DeviceConnection(
        DeviceConfig(**config_kwargs),
        client_factory=lambda config, username, password: client,
        **kwargs,
    )


@pytest.fixture()
def fake_client() -> FakeClient:
    return FakeClient()


def notification(topic: str = "tns1:VideoSource/MotionAlarm", state: str = "true") -> Dict[str, Any]:
    """Pre-parsed NotificationMessage as xmltodict produces it."""
    return {
        "Topic": {"_value_1": topic},
        "Message": {
            "tt:Message": {
                "@UtcTime": "2024-05-01T10:00:00Z",
                "@PropertyOperation": "Changed",
                "tt:Source": {"tt:SimpleItem": {"@Name": "Source", "@Value": "VideoSource_1"}},
                "tt:Data": {"tt:SimpleItem": {"@Name": "State", "@Value": state}},
            }
        },
    }


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0, step: float = 0.01) -> bool:
    """Poll predicate until it holds or timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(step)
    return True
