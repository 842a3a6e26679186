"""
Protocol-level access to ONVIF devices: the onvif-zeep client adapter and
WS-Discovery.
"""

from camlink.api.discovery import discover, probe
from camlink.api.onvif_client import OnvifClient

__all__ = ["OnvifClient", "discover", "probe"]
