"""Chromecast discovery over mDNS/DNS-SD (`_googlecast._tcp`)."""

import logging
import queue
import re
import threading
import time
from typing import Dict, Iterator, Optional

from zeroconf import ServiceBrowser, ServiceInfo, Zeroconf

from screencast.config import config_value
from screencast.models import Device, DeviceType

LOG = logging.getLogger(__name__)

SERVICE_TYPE = "_googlecast._tcp.local."

_HEX_SUFFIX_RE = re.compile(r"-[a-fA-F0-9]+$")


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def txt_properties(info: ServiceInfo) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    for key, value in (info.properties or {}).items():
        k = _decode(key)
        v = _decode(value)
        if k and v is not None:
            properties[k] = v
    return properties


def sanitize_service_name(name: str) -> str:
    """"Living Room TV-4f1c2a...._googlecast._tcp.local." -> "Living Room TV"."""
    if name.endswith("." + SERVICE_TYPE):
        name = name[: -len(SERVICE_TYPE) - 1]
    return _HEX_SUFFIX_RE.sub("", name).strip()


def device_from_service_info(info: ServiceInfo) -> Optional[Device]:
    addresses = info.parsed_addresses()
    if not addresses:
        return None
    host = addresses[0]
    props = txt_properties(info)
    return Device(
        id=f"chromecast-{host}",
        name=props.get("fn") or sanitize_service_name(info.name),
        type=DeviceType.CHROMECAST,
        address=host,
        port=info.port or 8009,
        model_name=props.get("md"),
        manufacturer="Google",
    )


class _CastListener:
    """zeroconf listener feeding resolved devices into a queue."""

    def __init__(self, out: "queue.Queue[Device]", resolve_timeout_ms: int):
        self.out = out
        self.resolve_timeout_ms = resolve_timeout_ms

    def add_service(self, zc: Zeroconf, service_type: str, name: str) -> None:
        LOG.debug("Found Chromecast service: %s", name)
        self._resolve(zc, service_type, name)

    def update_service(self, zc: Zeroconf, service_type: str, name: str) -> None:
        self._resolve(zc, service_type, name)

    def remove_service(self, zc: Zeroconf, service_type: str, name: str) -> None:
        LOG.debug("Lost Chromecast service: %s", name)

    def _resolve(self, zc: Zeroconf, service_type: str, name: str) -> None:
        try:
            info = zc.get_service_info(service_type, name, timeout=self.resolve_timeout_ms)
        except Exception as e:
            LOG.warning("Failed to resolve %s: %s", name, e)
            return
        if info is None:
            LOG.debug("No service info for %s", name)
            return
        device = device_from_service_info(info)
        if device is not None:
            LOG.info("Resolved Chromecast: %s at %s:%s", device.name, device.address, device.port)
            self.out.put(device)


class ChromecastDiscoverer:
    """Browses for Cast receivers."""

    def __init__(self, config=None):
        self.discovery_timeout = float(config_value(config, "mdns_discovery_timeout") or 0)
        self.resolve_timeout_ms = int(config_value(config, "mdns_resolve_timeout_ms"))
        self._lock = threading.Lock()
        self._zeroconf: Optional[Zeroconf] = None
        self._browser: Optional[ServiceBrowser] = None
        self._stopped = threading.Event()

    def discover_devices(self) -> Iterator[Device]:
        """Arm one browse run; a stop_discovery() after this call ends it."""
        self._stopped.clear()
        return self._browse()

    def _browse(self) -> Iterator[Device]:
        found: "queue.Queue[Device]" = queue.Queue()
        try:
            zc = Zeroconf()
        except Exception as e:
            LOG.warning("Chromecast discovery unavailable: %s", e)
            return
        with self._lock:
            stopped = self._stopped.is_set()
            if not stopped:
                self._zeroconf = zc
                self._browser = ServiceBrowser(zc, SERVICE_TYPE, _CastListener(found, self.resolve_timeout_ms))
        if stopped:
            LOG.debug("Chromecast discovery stopped before browsing began")
            zc.close()
            return
        LOG.debug("Chromecast discovery started")

        deadline = time.monotonic() + self.discovery_timeout if self.discovery_timeout > 0 else None
        try:
            while not self._stopped.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    break
                try:
                    yield found.get(timeout=0.25)
                except queue.Empty:
                    continue
        finally:
            self.stop_discovery()

    def stop_discovery(self) -> None:
        with self._lock:
            self._stopped.set()
            browser, self._browser = self._browser, None
            zc, self._zeroconf = self._zeroconf, None
        if browser is not None:
            try:
                browser.cancel()
            except Exception as e:
                LOG.debug("Error cancelling browser: %s", e)
        if zc is not None:
            try:
                zc.close()
            except Exception as e:
                LOG.debug("Error closing zeroconf: %s", e)
            LOG.debug("Chromecast discovery stopped")

    # Uniform names used by the discovery coordinator.
    discover = discover_devices
    stop = stop_discovery
