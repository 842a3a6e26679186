"""
Network discovery for ONVIF devices (WS-Discovery).

Each call owns its own WS-Discovery instance; nothing stays registered
between calls.
"""

import asyncio
import logging
from typing import Callable, Iterator, List, Optional

from wsdiscovery import QName
from wsdiscovery.discovery import ThreadedWSDiscovery

from camlink.models.device import DiscoveredDevice

logger = logging.getLogger(__name__)

NVT_TYPE = QName("http://www.onvif.org/ver10/network/wsdl", "NetworkVideoTransmitter")
MIN_TIMEOUT = 1.0


def _split(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    return [str(v) for v in value]


def parse_service(service) -> Optional[DiscoveredDevice]:
    """Normalize a WS-Discovery service into a DiscoveredDevice."""
    xaddrs = _split(service.getXAddrs())
    if not xaddrs:
        return None

    metadata_version = None
    try:
        metadata_version = str(service.getMetadataVersion())
    except AttributeError:
        pass

    return DiscoveredDevice(
        urn=service.getEPR() or None,
        types=_split(service.getTypes()),
        scopes=_split(service.getScopes()),
        xaddrs=xaddrs,
        metadata_version=metadata_version,
    )


def discover(timeout: float = 5.0, wsd_factory: Callable = ThreadedWSDiscovery) -> Iterator[DiscoveredDevice]:
    """
    Probe the local network and yield normalized devices.

    The probe runs when iteration starts and the WS-Discovery instance is
    stopped before the first device is yielded. The sequence is finite and
    single-shot.

    Args:
        timeout: Probe timeout in seconds (at least 1 second)
        wsd_factory: WS-Discovery implementation
    """
    timeout = max(float(timeout), MIN_TIMEOUT)
    devices: List[DiscoveredDevice] = []
    seen = set()

    wsd = wsd_factory()
    try:
        wsd.start()
        services = wsd.searchServices(types=[NVT_TYPE], timeout=timeout)

        for service in services:
            try:
                device = parse_service(service)
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse discovery response: {e}")
                continue
            if device is None or device.xaddrs[0] in seen:
                continue
            seen.add(device.xaddrs[0])
            devices.append(device)
    finally:
        wsd.stop()

    logger.info(f"Discovery finished: {len(devices)} device(s)")
    yield from devices


async def probe(timeout: float = 5.0, on_device: Optional[Callable[[DiscoveredDevice], None]] = None,
                wsd_factory: Callable = ThreadedWSDiscovery) -> List[DiscoveredDevice]:
    """
    Run discovery off the event loop.

    With on_device set, each device is handed to the callback as well
    (separate mode); the full batch is always returned.
    """
    loop = asyncio.get_running_loop()
    devices = await loop.run_in_executor(None, lambda: list(discover(timeout, wsd_factory)))

    if on_device is not None:
        for device in devices:
            on_device(device)

    return devices
