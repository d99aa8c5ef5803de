"""Runs every discoverer concurrently and merges results into one registry."""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from screencast.external import NullWiFiDirectLink, WiFiDirectLink
from screencast.mdns import ChromecastDiscoverer
from screencast.models import Device
from screencast.ssdp import SSDPDiscoverer
from screencast.wifi_direct import MiracastDiscoverer

LOG = logging.getLogger(__name__)


class DeviceEvent(Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


DeviceListener = Callable[[DeviceEvent, Device], None]


class DeviceRegistry:
    """Thread-safe device list keyed by id; the latest record wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._devices: Dict[str, Device] = {}
        self._listeners: List[DeviceListener] = []

    def add_listener(self, listener: DeviceListener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: DeviceEvent, device: Device) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, device)
            except Exception as e:
                LOG.warning("Device listener failed: %s", e)

    def upsert(self, device: Device) -> Optional[DeviceEvent]:
        with self._lock:
            previous = self._devices.get(device.id)
            if previous is not None and previous.type != device.type:
                LOG.warning("Ignoring %s record for %s device %s", device.type.value, previous.type.value, device.id)
                return None
            if previous == device:
                return None
            self._devices[device.id] = device
        event = DeviceEvent.ADDED if previous is None else DeviceEvent.UPDATED
        self._notify(event, device)
        return event

    def remove(self, device_id: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.pop(device_id, None)
        if device is not None:
            LOG.info("Device gone: %s", device.display_name)
            self._notify(DeviceEvent.REMOVED, device)
        return device

    def clear(self) -> None:
        with self._lock:
            devices = list(self._devices.values())
            self._devices.clear()
        for device in devices:
            self._notify(DeviceEvent.REMOVED, device)

    def get(self, device_id: str) -> Optional[Device]:
        with self._lock:
            return self._devices.get(device_id)

    def devices(self) -> List[Device]:
        with self._lock:
            devices = list(self._devices.values())
        return sorted(devices, key=lambda d: d.name.lower())

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)


class DiscoveryCoordinator:
    """Owns the discoverers and feeds their devices into a DeviceRegistry.

    Every discoverer exposes discover() (returning an iterator of Device) and
    stop(). discover() is called on the thread that calls start(); the
    iteration runs on a thread per discoverer.
    """

    def __init__(self, config=None, discoverers: Optional[Sequence] = None,
                 registry: Optional[DeviceRegistry] = None,
                 wifi_direct: Optional[WiFiDirectLink] = None):
        self.registry = registry or DeviceRegistry()
        if discoverers is None:
            discoverers = [
                SSDPDiscoverer(config),
                ChromecastDiscoverer(config),
                MiracastDiscoverer(wifi_direct or NullWiFiDirectLink()),
            ]
        self.discoverers = list(discoverers)
        for discoverer in self.discoverers:
            if isinstance(discoverer, SSDPDiscoverer):
                discoverer.on_device_lost = self.registry.remove

        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._running = False

    def add_listener(self, listener: DeviceListener) -> None:
        self.registry.add_listener(listener)

    def devices(self) -> List[Device]:
        return self.registry.devices()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._threads = []
            for discoverer in self.discoverers:
                # Armed on this thread so a stop() right after start() reaches the run.
                devices = discoverer.discover()
                t = threading.Thread(
                    target=self._run, args=(discoverer, devices),
                    name=f"discovery-{type(discoverer).__name__}", daemon=True,
                )
                self._threads.append(t)
                t.start()
        LOG.debug("Discovery started with %d discoverers", len(self.discoverers))

    def _run(self, discoverer, devices: Iterator[Device]) -> None:
        name = type(discoverer).__name__
        try:
            for device in devices:
                if not self._running:
                    break
                if self.registry.upsert(device) == DeviceEvent.ADDED:
                    LOG.info("Discovered %s", device.display_name)
        except Exception as e:
            LOG.warning("%s failed: %s", name, e)
        LOG.debug("%s finished", name)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            threads, self._threads = self._threads, []
        for discoverer in self.discoverers:
            try:
                discoverer.stop()
            except Exception as e:
                LOG.debug("Error stopping %s: %s", type(discoverer).__name__, e)
        for t in threads:
            if t is not threading.current_thread():
                t.join(timeout=2.0)

    def refresh(self) -> None:
        """Forget every known device and search again."""
        self.stop()
        self.registry.clear()
        self.start()

    def wait(self, timeout: float) -> None:
        """Block until every discoverer finished its window or `timeout` passed."""
        deadline = time.monotonic() + max(0.0, timeout)
        with self._lock:
            threads = list(self._threads)
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))

    def discover_all(self, timeout: float = 5.0) -> List[Device]:
        """One blocking discovery window across all protocols."""
        self.start()
        self.wait(timeout)
        self.stop()
        return self.devices()
