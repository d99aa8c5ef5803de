"""Narrow interfaces to the collaborators this package does not implement.

Screen capture/encoding and the OS WiFi-Direct subsystem live outside this
package. The session manager only talks to them through these ABCs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from screencast.models import EncodedFrame


class FrameSource(ABC):
    """Handle on the external encoder."""

    @abstractmethod
    def start(self) -> Iterator[EncodedFrame]:
        """Begin capture and return the (lazy, unbounded) frame sequence."""
        pass

    @abstractmethod
    def release(self) -> None:
        """Release the capture handle. Must be safe to call more than once."""
        pass


class IterableFrameSource(FrameSource):
    """Wraps an already produced iterable of frames."""

    def __init__(self, frames: Iterable[EncodedFrame]):
        self._frames = frames
        self.released = False

    def start(self) -> Iterator[EncodedFrame]:
        self.released = False
        return iter(self._frames)

    def release(self) -> None:
        self.released = True


@dataclass(frozen=True)
class WifiPeer:
    address: str
    name: str
    device_type_hint: Optional[str] = None  # WPS primary device type, e.g. "7-0050F204-1"


class WiFiDirectLink(ABC):
    """Peer discovery and link setup owned by the operating system."""

    @abstractmethod
    def discover_peers(self) -> Iterable[WifiPeer]:
        pass

    @abstractmethod
    def connect(self, address: str) -> bool:
        pass

    @abstractmethod
    def disconnect(self) -> bool:
        pass


class NullWiFiDirectLink(WiFiDirectLink):
    """Used when the platform exposes no WiFi-Direct subsystem."""

    def discover_peers(self) -> List[WifiPeer]:
        return []

    def connect(self, address: str) -> bool:
        return False

    def disconnect(self) -> bool:
        return True
