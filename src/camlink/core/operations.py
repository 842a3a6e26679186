"""
Closed set of remote operations the orchestrator can dispatch.

Each Operation variant names its service, the SOAP method and the argument
type it takes. Variants without an argument type use the no-argument calling
convention (``fn()``); the rest are called as ``fn(params)``. Operations not
worth enumerating go through GenericOperation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from camlink.core.errors import InvalidArgumentsError


class ServiceCategory(str, Enum):
    """ONVIF service a remote operation belongs to."""
    DEVICE = "device"
    MEDIA = "media"
    PTZ = "ptz"
    IMAGING = "imaging"
    EVENTS = "events"
    PULLPOINT = "pullpoint"
    RECORDING = "recording"
    SEARCH = "search"
    REPLAY = "replay"
    ANALYTICS = "analytics"

    @property
    def capability_name(self) -> str:
        """Name used when matching the device's advertised services."""
        if self is ServiceCategory.PULLPOINT:
            return ServiceCategory.EVENTS.value
        return self.value


def _clamp(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    return max(-1.0, min(1.0, float(value)))


def _duration(seconds: Union[int, float, str]) -> str:
    if isinstance(seconds, str):
        return seconds
    return f"PT{seconds:g}S"


@dataclass(frozen=True)
class Velocity:
    """Pan/tilt/zoom vector, each axis clamped to [-1, 1]."""
    pan: Optional[float] = None
    tilt: Optional[float] = None
    zoom: Optional[float] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.pan is not None or self.tilt is not None:
            params["PanTilt"] = {"x": _clamp(self.pan), "y": _clamp(self.tilt)}
        if self.zoom is not None:
            params["Zoom"] = {"x": _clamp(self.zoom)}
        return params


@dataclass(frozen=True)
class CapabilitiesArgs:
    category: str = "All"

    def to_params(self) -> Dict[str, Any]:
        return {"Category": self.category}


@dataclass(frozen=True)
class ServicesArgs:
    include_capability: bool = False

    def to_params(self) -> Dict[str, Any]:
        return {"IncludeCapability": self.include_capability}


@dataclass(frozen=True)
class ProfileArgs:
    profile_token: str

    def to_params(self) -> Dict[str, Any]:
        return {"ProfileToken": self.profile_token}


@dataclass(frozen=True)
class StreamUriArgs:
    profile_token: str
    stream: str = "RTP-Unicast"
    protocol: str = "RTSP"

    def to_params(self) -> Dict[str, Any]:
        return {
            "ProfileToken": self.profile_token,
            "StreamSetup": {
                "Stream": self.stream,
                "Transport": {"Protocol": self.protocol},
            },
        }


@dataclass(frozen=True)
class ContinuousMoveArgs:
    profile_token: str
    velocity: Velocity
    timeout: Union[int, float, str] = 1

    def to_params(self) -> Dict[str, Any]:
        return {
            "ProfileToken": self.profile_token,
            "Velocity": self.velocity.to_params(),
            "Timeout": _duration(self.timeout),
        }


@dataclass(frozen=True)
class PTZStopArgs:
    profile_token: str
    pan_tilt: bool = True
    zoom: bool = True

    def to_params(self) -> Dict[str, Any]:
        return {"ProfileToken": self.profile_token, "PanTilt": self.pan_tilt, "Zoom": self.zoom}


@dataclass(frozen=True)
class GotoPresetArgs:
    profile_token: str
    preset_token: str
    speed: Optional[Velocity] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"ProfileToken": self.profile_token, "PresetToken": self.preset_token}
        if self.speed is not None:
            params["Speed"] = self.speed.to_params()
        return params


@dataclass(frozen=True)
class SetPresetArgs:
    profile_token: str
    preset_name: Optional[str] = None
    preset_token: Optional[str] = None

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {"ProfileToken": self.profile_token}
        if self.preset_name:
            params["PresetName"] = self.preset_name
        if self.preset_token:
            params["PresetToken"] = self.preset_token
        return params


@dataclass(frozen=True)
class PresetArgs:
    profile_token: str
    preset_token: str

    def to_params(self) -> Dict[str, Any]:
        return {"ProfileToken": self.profile_token, "PresetToken": self.preset_token}


@dataclass(frozen=True)
class VideoSourceArgs:
    video_source_token: str

    def to_params(self) -> Dict[str, Any]:
        return {"VideoSourceToken": self.video_source_token}


@dataclass(frozen=True)
class ImagingSettingsArgs:
    video_source_token: str
    settings: Mapping[str, Any] = field(default_factory=dict)
    force_persistence: bool = True

    def to_params(self) -> Dict[str, Any]:
        return {
            "VideoSourceToken": self.video_source_token,
            "ImagingSettings": dict(self.settings),
            "ForcePersistence": self.force_persistence,
        }


@dataclass(frozen=True)
class CreatePullPointArgs:
    initial_termination_time: Optional[Union[int, float, str]] = None

    def to_params(self) -> Dict[str, Any]:
        if self.initial_termination_time is None:
            return {}
        return {"InitialTerminationTime": _duration(self.initial_termination_time)}


@dataclass(frozen=True)
class PullMessagesArgs:
    address: str
    timeout: Union[int, float, str] = "PT5S"
    message_limit: int = 10

    def to_params(self) -> Dict[str, Any]:
        return {"Timeout": _duration(self.timeout), "MessageLimit": self.message_limit}


@dataclass(frozen=True)
class SubscriptionArgs:
    address: str

    def to_params(self) -> Dict[str, Any]:
        return {}


class Operation(Enum):
    """Enumerated remote operations: (service, SOAP method, argument type)."""

    # Device management
    GET_DEVICE_INFORMATION = (ServiceCategory.DEVICE, "GetDeviceInformation", None)
    GET_HOSTNAME = (ServiceCategory.DEVICE, "GetHostname", None)
    GET_SYSTEM_DATE_AND_TIME = (ServiceCategory.DEVICE, "GetSystemDateAndTime", None)
    GET_CAPABILITIES = (ServiceCategory.DEVICE, "GetCapabilities", CapabilitiesArgs)
    GET_SERVICES = (ServiceCategory.DEVICE, "GetServices", ServicesArgs)
    GET_SCOPES = (ServiceCategory.DEVICE, "GetScopes", None)
    SYSTEM_REBOOT = (ServiceCategory.DEVICE, "SystemReboot", None)

    # Media
    GET_PROFILES = (ServiceCategory.MEDIA, "GetProfiles", None)
    GET_STREAM_URI = (ServiceCategory.MEDIA, "GetStreamUri", StreamUriArgs)
    GET_SNAPSHOT_URI = (ServiceCategory.MEDIA, "GetSnapshotUri", ProfileArgs)
    GET_VIDEO_SOURCES = (ServiceCategory.MEDIA, "GetVideoSources", None)

    # PTZ
    CONTINUOUS_MOVE = (ServiceCategory.PTZ, "ContinuousMove", ContinuousMoveArgs)
    PTZ_STOP = (ServiceCategory.PTZ, "Stop", PTZStopArgs)
    GOTO_PRESET = (ServiceCategory.PTZ, "GotoPreset", GotoPresetArgs)
    GET_PRESETS = (ServiceCategory.PTZ, "GetPresets", ProfileArgs)
    SET_PRESET = (ServiceCategory.PTZ, "SetPreset", SetPresetArgs)
    REMOVE_PRESET = (ServiceCategory.PTZ, "RemovePreset", PresetArgs)
    GET_PTZ_STATUS = (ServiceCategory.PTZ, "GetStatus", ProfileArgs)

    # Imaging
    GET_IMAGING_SETTINGS = (ServiceCategory.IMAGING, "GetImagingSettings", VideoSourceArgs)
    SET_IMAGING_SETTINGS = (ServiceCategory.IMAGING, "SetImagingSettings", ImagingSettingsArgs)
    GET_IMAGING_OPTIONS = (ServiceCategory.IMAGING, "GetOptions", VideoSourceArgs)

    # Events
    GET_EVENT_PROPERTIES = (ServiceCategory.EVENTS, "GetEventProperties", None)
    GET_EVENT_SERVICE_CAPABILITIES = (ServiceCategory.EVENTS, "GetServiceCapabilities", None)
    CREATE_PULL_POINT_SUBSCRIPTION = (ServiceCategory.EVENTS, "CreatePullPointSubscription", CreatePullPointArgs)
    PULL_MESSAGES = (ServiceCategory.PULLPOINT, "PullMessages", PullMessagesArgs)
    UNSUBSCRIBE = (ServiceCategory.PULLPOINT, "Unsubscribe", SubscriptionArgs)

    # Recording
    GET_RECORDINGS = (ServiceCategory.RECORDING, "GetRecordings", None)

    def __init__(self, service: ServiceCategory, method: str, args_type: Optional[type]):
        self.service = service
        self.method = method
        self.args_type = args_type

    @property
    def takes_args(self) -> bool:
        return self.args_type is not None

    @property
    def label(self) -> str:
        return f"{self.service.value}.{self.method}"


@dataclass(frozen=True)
class GenericOperation:
    """Fallback for operations not enumerated in Operation."""
    service: ServiceCategory
    method: str
    takes_args: bool = True

    @property
    def label(self) -> str:
        return f"{self.service.value}.{self.method}"


AnyOperation = Union[Operation, GenericOperation]


def build_params(operation: AnyOperation, args: Any = None) -> Optional[Dict[str, Any]]:
    """
    Turn caller arguments into the request parameters for an operation.

    Returns None for no-argument operations. Enumerated operations accept an
    instance of their argument type or a plain mapping; missing arguments are
    defaulted when the argument type allows it.

    Raises:
        InvalidArgumentsError: arguments missing or of the wrong type
    """
    if not operation.takes_args:
        return None

    if args is None:
        if isinstance(operation, Operation):
            try:
                args = operation.args_type()
            except TypeError:
                raise InvalidArgumentsError(
                    f"{operation.label} requires {operation.args_type.__name__}", method=operation.label,
                ) from None
        else:
            return {}

    if isinstance(args, Mapping):
        return {key: value for key, value in args.items() if key != "address"}

    if isinstance(operation, Operation) and not isinstance(args, operation.args_type):
        raise InvalidArgumentsError(
            f"{operation.label} expects {operation.args_type.__name__}, got {type(args).__name__}",
            method=operation.label,
        )

    return args.to_params()


def target_address(args: Any) -> Optional[str]:
    """Subscription address carried by pull-point arguments, if any."""
    if isinstance(args, Mapping):
        return args.get("address")
    return getattr(args, "address", None)
