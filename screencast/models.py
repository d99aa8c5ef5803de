from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class DeviceType(Enum):
    """Protocol family a discovered target speaks."""
    DLNA = "DLNA"
    MIRACAST = "Miracast"
    CHROMECAST = "Chromecast"
    ROKU = "Roku"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Device:
    """A discovered casting target.

    Records are immutable; richer metadata fetched later replaces the whole
    record under the same id (see dataclasses.replace).
    """
    id: str
    name: str
    type: DeviceType
    address: str
    port: int = 0
    control_url: Optional[str] = None  # AVTransport control endpoint for DLNA
    model_name: Optional[str] = None
    manufacturer: Optional[str] = None

    @property
    def display_name(self) -> str:
        """User-friendly name with protocol label."""
        return f"{self.name} [{self.type.value}]"


@dataclass(frozen=True)
class EncodedFrame:
    """One encoded video unit handed over by the external encoder."""
    payload: bytes = field(compare=False, repr=False)
    presentation_time_us: int
    is_key_frame: bool = field(default=False, compare=False)
    is_config: bool = field(default=False, compare=False)  # SPS/PPS style stream header


# ============================================================================
# Cast session state
# ============================================================================

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Connecting:
    device: Device


@dataclass(frozen=True)
class Casting:
    device: Device
    stream_url: str


@dataclass(frozen=True)
class Error:
    message: str


CastState = Union[Idle, Connecting, Casting, Error]


def is_active(state: CastState) -> bool:
    """True for the states that own a session (Connecting or Casting)."""
    return isinstance(state, (Connecting, Casting))
