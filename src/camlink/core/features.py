"""
Feature components: the gated surface device features call through.

Every request checks the connection state first, then the capability
registry for the operation's service (unless that service is exempt).
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

import requests
from requests.auth import HTTPBasicAuth, HTTPDigestAuth

from camlink.core.errors import (
    ConfigurationError, DeviceTimeoutError, InvalidArgumentsError, NotConnectedError, RemoteError,
    SubscriptionError,
)
from camlink.core.events import EventCallback, EventListener, PullPointSubscription
from camlink.core.operations import (
    AnyOperation, CapabilitiesArgs, ContinuousMoveArgs, GotoPresetArgs, ImagingSettingsArgs, Operation,
    PresetArgs, ProfileArgs, PTZStopArgs, ServiceCategory, ServicesArgs, SetPresetArgs, StreamUriArgs,
    Velocity, VideoSourceArgs,
)
from camlink.core.orchestrator import CallRequest, CallResult
from camlink.models.device import ConnectionState

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 5.0


def _field(data: Any, name: str) -> Any:
    if isinstance(data, dict):
        return data.get(name)
    return getattr(data, name, None)


class Feature:
    """Base for feature components bound to one device connection."""

    def __init__(self, connection, service: ServiceCategory):
        self.connection = connection
        self.service = service

    async def request(self, operation: AnyOperation, args: Any = None, *,
                      timeout: Optional[float] = None, retries: Optional[int] = None) -> CallResult:
        """
        Issue a gated call.

        Raises:
            NotConnectedError: the connection is not CONNECTED
            UnsupportedServiceError: the device does not advertise the service
        """
        label = operation.label
        if self.connection.state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Device not connected", method=label, address=self.connection.address)

        self.connection.capabilities.check(
            operation.service.capability_name,
            method=label,
            address=self.connection.address,
        )

        return await self.connection.orchestrator.call(
            CallRequest(operation, args, timeout=timeout, retries=retries)
        )

    def resolve_token(self, profile_token: Optional[str] = None, profile_name: Optional[str] = None) -> str:
        """
        Pick the profile token to use: explicit token first, then the named
        profile.

        Raises:
            ConfigurationError: no token given and the name does not resolve
        """
        if profile_token:
            return profile_token
        if profile_name:
            token = self.connection.resolve_profile_token(profile_name)
            if token:
                return token
        raise ConfigurationError("No profile token available", address=self.connection.address)

    async def reconnect(self) -> ConnectionState:
        """Reconnect the underlying connection; allowed in any state."""
        return await self.connection.reconnect()


@dataclass
class Snapshot:
    """A fetched still image."""
    content: bytes
    content_type: str = "image/jpeg"


def download_snapshot(uri: str, username: str, password: str,
                      timeout: float = DEFAULT_FETCH_TIMEOUT) -> Snapshot:
    """
    Fetch a snapshot over HTTP. Blocking.

    Digest auth first; falls back to basic auth when the camera answers
    with a Basic challenge.
    """
    with requests.Session() as session:
        response = session.get(uri, auth=HTTPDigestAuth(username, password), timeout=timeout)

        challenge = response.headers.get("WWW-Authenticate", "")
        if response.status_code == 401 and challenge.lower().startswith("basic"):
            response = session.get(uri, auth=HTTPBasicAuth(username, password), timeout=timeout)

        response.raise_for_status()
        return Snapshot(
            content=response.content,
            content_type=response.headers.get("Content-Type", "image/jpeg"),
        )


class MediaFeature(Feature):
    """Stream and snapshot access for a device's media profiles."""

    def __init__(self, connection, fetch_timeout: float = DEFAULT_FETCH_TIMEOUT):
        super().__init__(connection, ServiceCategory.MEDIA)
        self.fetch_timeout = fetch_timeout

    async def get_stream_uri(self, profile_token: Optional[str] = None, profile_name: Optional[str] = None,
                             stream: str = "RTP-Unicast", protocol: str = "RTSP") -> str:
        token = self.resolve_token(profile_token, profile_name)
        result = await self.request(Operation.GET_STREAM_URI, StreamUriArgs(token, stream, protocol))
        uri = _field(result.data, "Uri")
        if not uri:
            raise RemoteError("Stream URI missing in response", method=Operation.GET_STREAM_URI.label,
                              address=self.connection.address)
        return uri

    async def get_snapshot_uri(self, profile_token: Optional[str] = None,
                               profile_name: Optional[str] = None) -> str:
        """Snapshot URI for a profile, served from the TTL cache when fresh."""
        token = self.resolve_token(profile_token, profile_name)

        cached = self.connection.snapshots.get(token)
        if cached:
            return cached

        result = await self.request(Operation.GET_SNAPSHOT_URI, ProfileArgs(token))
        uri = _field(result.data, "Uri")
        if not uri:
            raise RemoteError("Snapshot URI missing in response", method=Operation.GET_SNAPSHOT_URI.label,
                              address=self.connection.address)

        self.connection.snapshots.set(token, uri)
        return uri

    async def fetch_snapshot(self, profile_token: Optional[str] = None,
                             profile_name: Optional[str] = None) -> Snapshot:
        token = self.resolve_token(profile_token, profile_name)
        uri = await self.get_snapshot_uri(token)
        username, password = self._credentials()

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                functools.partial(download_snapshot, uri, username, password, self.fetch_timeout),
            )
        except requests.exceptions.Timeout as e:
            self.connection.snapshots.invalidate(token)
            raise DeviceTimeoutError(f"Snapshot fetch timeout after {self.fetch_timeout:g}s",
                                     method="snapshot.fetch", address=self.connection.address) from e
        except requests.exceptions.RequestException as e:
            self.connection.snapshots.invalidate(token)
            raise RemoteError(f"Snapshot fetch failed: {e}", method="snapshot.fetch",
                              address=self.connection.address) from e

    def _credentials(self) -> Tuple[str, str]:
        credentials = self.connection.resolve_credentials()
        if credentials is None:
            raise ConfigurationError("No credentials configured", address=self.connection.address)
        return credentials


class PTZFeature(Feature):
    """Pan/tilt/zoom control and presets for one profile."""

    def __init__(self, connection):
        super().__init__(connection, ServiceCategory.PTZ)

    async def continuous_move(self, profile_token: Optional[str] = None, pan: Optional[float] = None,
                              tilt: Optional[float] = None, zoom: Optional[float] = None, timeout=1,
                              profile_name: Optional[str] = None) -> CallResult:
        token = self.resolve_token(profile_token, profile_name)
        velocity = Velocity(pan=pan, tilt=tilt, zoom=zoom)
        return await self.request(Operation.CONTINUOUS_MOVE, ContinuousMoveArgs(token, velocity, timeout))

    async def stop(self, profile_token: Optional[str] = None, pan_tilt: bool = True, zoom: bool = True,
                   profile_name: Optional[str] = None) -> CallResult:
        token = self.resolve_token(profile_token, profile_name)
        return await self.request(Operation.PTZ_STOP, PTZStopArgs(token, pan_tilt, zoom))

    async def goto_preset(self, profile_token: Optional[str] = None, preset_token: Optional[str] = None,
                          speed: Optional[Velocity] = None, profile_name: Optional[str] = None) -> CallResult:
        """Move to a stored preset, optionally at a given speed (clamped like velocity)."""
        token = self.resolve_token(profile_token, profile_name)
        if not preset_token:
            raise InvalidArgumentsError("goto_preset requires a preset token", method=Operation.GOTO_PRESET.label,
                                        address=self.connection.address)
        return await self.request(Operation.GOTO_PRESET, GotoPresetArgs(token, preset_token, speed))

    async def get_presets(self, profile_token: Optional[str] = None,
                          profile_name: Optional[str] = None) -> CallResult:
        token = self.resolve_token(profile_token, profile_name)
        return await self.request(Operation.GET_PRESETS, ProfileArgs(token))

    async def set_preset(self, profile_token: Optional[str] = None, preset_name: Optional[str] = None,
                         preset_token: Optional[str] = None, profile_name: Optional[str] = None) -> str:
        """Store the current position. Returns the preset token the device assigned."""
        token = self.resolve_token(profile_token, profile_name)
        result = await self.request(Operation.SET_PRESET, SetPresetArgs(token, preset_name, preset_token))
        data = result.data
        assigned = data if isinstance(data, str) else _field(data, "PresetToken")
        return assigned or preset_token

    async def remove_preset(self, profile_token: Optional[str] = None, preset_token: Optional[str] = None,
                            profile_name: Optional[str] = None) -> CallResult:
        token = self.resolve_token(profile_token, profile_name)
        if not preset_token:
            raise InvalidArgumentsError("remove_preset requires a preset token",
                                        method=Operation.REMOVE_PRESET.label, address=self.connection.address)
        return await self.request(Operation.REMOVE_PRESET, PresetArgs(token, preset_token))

    async def get_status(self, profile_token: Optional[str] = None,
                         profile_name: Optional[str] = None) -> CallResult:
        token = self.resolve_token(profile_token, profile_name)
        return await self.request(Operation.GET_PTZ_STATUS, ProfileArgs(token))


class DeviceFeature(Feature):
    """Device management: identity, clock, scopes, services and reboot."""

    def __init__(self, connection):
        super().__init__(connection, ServiceCategory.DEVICE)

    async def get_device_information(self) -> CallResult:
        return await self.request(Operation.GET_DEVICE_INFORMATION)

    async def get_hostname(self) -> CallResult:
        return await self.request(Operation.GET_HOSTNAME)

    async def get_system_date_and_time(self) -> CallResult:
        return await self.request(Operation.GET_SYSTEM_DATE_AND_TIME)

    async def get_scopes(self) -> CallResult:
        return await self.request(Operation.GET_SCOPES)

    async def get_services(self, include_capability: bool = False) -> CallResult:
        return await self.request(Operation.GET_SERVICES, ServicesArgs(include_capability))

    async def get_capabilities(self, category: str = "All") -> CallResult:
        return await self.request(Operation.GET_CAPABILITIES, CapabilitiesArgs(category))

    async def system_reboot(self) -> CallResult:
        logger.warning(f"Rebooting {self.connection.address}")
        return await self.request(Operation.SYSTEM_REBOOT, retries=0)


class ImagingFeature(Feature):
    """Imaging settings (brightness, exposure, focus...) of a video source."""

    def __init__(self, connection):
        super().__init__(connection, ServiceCategory.IMAGING)

    def source_token(self, video_source_token: Optional[str] = None, profile_token: Optional[str] = None,
                     profile_name: Optional[str] = None) -> str:
        """
        Video source token to use: given explicitly, or taken from a profile's
        video source configuration.

        Raises:
            ConfigurationError: no token given and the profile has no video source
        """
        if video_source_token:
            return video_source_token

        token = self.resolve_token(profile_token, profile_name)
        for profile in self.connection.get_profiles():
            if profile.token == token:
                source = _field(_field(profile.raw, "VideoSourceConfiguration"), "SourceToken")
                if source:
                    return source
        raise ConfigurationError(f"Profile {token} has no video source", address=self.connection.address)

    async def get_settings(self, video_source_token: Optional[str] = None, profile_token: Optional[str] = None,
                           profile_name: Optional[str] = None) -> CallResult:
        source = self.source_token(video_source_token, profile_token, profile_name)
        return await self.request(Operation.GET_IMAGING_SETTINGS, VideoSourceArgs(source))

    async def set_settings(self, settings: Mapping[str, Any], video_source_token: Optional[str] = None,
                           profile_token: Optional[str] = None, profile_name: Optional[str] = None,
                           force_persistence: bool = True) -> CallResult:
        if not settings:
            raise InvalidArgumentsError("set_settings requires settings",
                                        method=Operation.SET_IMAGING_SETTINGS.label,
                                        address=self.connection.address)
        source = self.source_token(video_source_token, profile_token, profile_name)
        return await self.request(Operation.SET_IMAGING_SETTINGS,
                                  ImagingSettingsArgs(source, settings, force_persistence))

    async def get_options(self, video_source_token: Optional[str] = None, profile_token: Optional[str] = None,
                          profile_name: Optional[str] = None) -> CallResult:
        source = self.source_token(video_source_token, profile_token, profile_name)
        return await self.request(Operation.GET_IMAGING_OPTIONS, VideoSourceArgs(source))


class RecordingFeature(Feature):
    """Recording listing. Exempt from the capability check by default."""

    def __init__(self, connection):
        super().__init__(connection, ServiceCategory.RECORDING)

    async def get_recordings(self) -> CallResult:
        return await self.request(Operation.GET_RECORDINGS)


class EventsFeature(Feature):
    """
    Event delivery for one device, push or pull-point.

    The two modes are mutually exclusive; switching requires stopping the
    active one first.
    """

    def __init__(self, connection, poll_interval: float = 1.0, message_limit: int = 10,
                 pull_timeout: str = "PT5S"):
        super().__init__(connection, ServiceCategory.EVENTS)
        self.listener = EventListener(connection)
        self.pullpoint = PullPointSubscription(
            connection,
            interval=poll_interval,
            message_limit=message_limit,
            pull_timeout=pull_timeout,
        )

    def start(self, callback: EventCallback):
        if self.pullpoint.active:
            raise SubscriptionError("Pull-point subscription active; unsubscribe first",
                                    address=self.connection.address)
        self.listener.start(callback)

    def stop(self):
        self.listener.stop()

    async def subscribe(self, callback: EventCallback) -> str:
        if self.listener.active:
            raise SubscriptionError("Push listener active; stop it first", address=self.connection.address)
        return await self.pullpoint.subscribe(callback)

    async def unsubscribe(self):
        await self.pullpoint.unsubscribe()

    async def get_event_properties(self) -> CallResult:
        return await self.request(Operation.GET_EVENT_PROPERTIES)

    async def get_service_capabilities(self) -> CallResult:
        return await self.request(Operation.GET_EVENT_SERVICE_CAPABILITIES)

    async def reconnect(self) -> ConnectionState:
        self.stop()
        await self.unsubscribe()
        return await super().reconnect()

    async def close(self):
        self.stop()
        await self.unsubscribe()
        self.listener.close()
        self.pullpoint.close()
