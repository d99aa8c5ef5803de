"""Miracast sink discovery on top of the WiFi-Direct peer list."""

import logging
import threading
from typing import Iterator, Optional

from screencast.external import WiFiDirectLink, WifiPeer
from screencast.models import Device, DeviceType

LOG = logging.getLogger(__name__)


def is_display_capable(peer: WifiPeer) -> bool:
    # Primary device type format: "category-OUI-subcategory"; 7 = display, 1 = computer
    hint = peer.device_type_hint
    if not hint:
        return True
    return hint.startswith("7-") or hint.startswith("1-") or "display" in hint.lower()


def device_type_label(hint: Optional[str]) -> str:
    if not hint:
        return "Unknown"
    if hint.startswith("7-"):
        return "Display"
    if hint.startswith("1-"):
        return "Computer"
    if hint.startswith("10-"):
        return "Phone"
    return "Device"


class MiracastDiscoverer:
    """Turns WiFi-Direct peers into MIRACAST devices."""

    def __init__(self, link: WiFiDirectLink):
        self.link = link
        self._stop = threading.Event()

    def discover(self) -> Iterator[Device]:
        self._stop.clear()
        return self._peers()

    def _peers(self) -> Iterator[Device]:
        if self._stop.is_set():
            return
        try:
            peers = self.link.discover_peers()
        except Exception as e:
            LOG.warning("WiFi-Direct peer discovery failed: %s", e)
            return
        for peer in peers:
            if self._stop.is_set():
                break
            if not is_display_capable(peer):
                LOG.debug("Skipping non-display peer %s (%s)", peer.name, peer.device_type_hint)
                continue
            yield Device(
                id=peer.address,
                name=peer.name or "Unknown Device",
                type=DeviceType.MIRACAST,
                address=peer.address,
                model_name=device_type_label(peer.device_type_hint),
            )

    def stop(self) -> None:
        self._stop.set()
