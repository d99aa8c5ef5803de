"""SSDP discovery of UPnP/DLNA media renderers.

M-SEARCH datagrams go out to the SSDP multicast group for a handful of search
targets, repeated over a few rounds because multicast on home WiFi is lossy.
Responses are parsed into bare DLNA devices; the first sighting of each device
fetches its description XML to learn the friendly name and the AVTransport
control URL.
"""

import dataclasses
import logging
import socket
import threading
import time
from typing import Callable, Dict, Iterator, Optional
from urllib.parse import urlparse

import requests

from screencast.config import config_value
from screencast.models import Device, DeviceType
from screencast.utils import close_quietly, safe_requests_get, sha256_hex
from screencast.wire import extract_xml_value

LOG = logging.getLogger(__name__)

SSDP_ADDRESS = "239.255.255.250"
SSDP_PORT = 1900

SEARCH_TARGETS = [
    "ssdp:all",
    "upnp:rootdevice",
    "urn:schemas-upnp-org:device:MediaRenderer:1",
    "urn:schemas-upnp-org:service:AVTransport:1",
    "urn:dial-multiscreen-org:service:dial:1",  # smart TVs
]

# Media servers answer too; these services are never a playback target.
_REJECTED_SERVICES = ("ContentDirectory", "ConnectionManager")


def build_msearch(search_target: str, mx: int = 3) -> bytes:
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDRESS}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode("ascii")


def parse_headers(text: str) -> Dict[str, str]:
    """Header lines into a dict keyed by lower-cased name (first line skipped)."""
    headers: Dict[str, str] = {}
    for line in text.splitlines()[1:]:
        idx = line.find(":")
        if idx <= 0:
            continue
        key = line[:idx].strip().lower()
        headers.setdefault(key, line[idx + 1:].strip())
    return headers


def device_id_for(usn: Optional[str], location: str) -> str:
    # One device answers with a USN per advertised type ("uuid:x::urn:..."),
    # so only the device UUID part takes part in the id.
    key = usn.split("::")[0] if usn else location
    return sha256_hex(key)[:16]


def is_byebye(text: str) -> bool:
    if not text.startswith("NOTIFY"):
        return False
    return parse_headers(text).get("nts", "").lower() == "ssdp:byebye"


def parse_ssdp_response(text: str, address: str) -> Optional[Device]:
    """Parse one SSDP datagram into a bare DLNA device, or None to skip it."""
    if not (text.startswith("HTTP/1.1 200") or text.startswith("NOTIFY")):
        return None
    headers = parse_headers(text)
    if headers.get("nts", "").lower() == "ssdp:byebye":
        return None
    location = headers.get("location")
    if not location:
        return None
    target = headers.get("st") or headers.get("nt") or ""
    if any(svc in target for svc in _REJECTED_SERVICES):
        return None

    parsed = urlparse(location)
    return Device(
        id=device_id_for(headers.get("usn"), location),
        name="Unknown Device",
        type=DeviceType.DLNA,
        address=address,
        port=parsed.port or 80,
        control_url=location,
    )


def _absolute_url(url: str, base_url: str) -> str:
    if url.startswith("http://") or url.startswith("https://"):
        return url
    base = urlparse(base_url)
    port = base.port or (443 if base.scheme == "https" else 80)
    if not url.startswith("/"):
        url = "/" + url
    return f"{base.scheme}://{base.hostname}:{port}{url}"


def find_avtransport_control_url(xml: str, base_url: str) -> Optional[str]:
    """controlURL of the first service block after the AVTransport mention."""
    idx = xml.find("AVTransport")
    if idx == -1:
        return None
    control_url = extract_xml_value(xml[idx:], "controlURL")
    if not control_url:
        return None
    return _absolute_url(control_url, base_url)


def parse_device_description(xml: str, device: Device) -> Device:
    base_url = device.control_url or ""
    return dataclasses.replace(
        device,
        name=extract_xml_value(xml, "friendlyName") or "Unknown Device",
        model_name=extract_xml_value(xml, "modelName"),
        manufacturer=extract_xml_value(xml, "manufacturer"),
        control_url=find_avtransport_control_url(xml, base_url) or device.control_url,
    )


class SSDPDiscoverer:
    """Finds media renderers with SSDP M-SEARCH."""

    def __init__(self, config=None, session: Optional[requests.Session] = None):
        self.discovery_timeout = float(config_value(config, "ssdp_discovery_timeout"))
        self.receive_timeout = float(config_value(config, "ssdp_receive_timeout"))
        self.search_rounds = int(config_value(config, "ssdp_search_rounds"))
        self.round_delay = float(config_value(config, "ssdp_round_delay"))
        self.mx = int(config_value(config, "ssdp_mx"))
        self.fetch_details = bool(config_value(config, "ssdp_fetch_details"))
        self.http_timeout = float(config_value(config, "http_timeout"))
        self.session = session or requests.Session()
        # Called with the device id when a renderer announces ssdp:byebye.
        self.on_device_lost: Optional[Callable[[str], None]] = None

        self._lock = threading.Lock()
        self._socket: Optional[socket.socket] = None
        self._running = threading.Event()

    def discover(self) -> Iterator[Device]:
        """Arm one discovery window and return its device generator.

        The run is armed here, before the caller starts iterating, so a stop()
        issued any time after this call ends the run.
        """
        self._running.set()
        return self._search()

    def _search(self) -> Iterator[Device]:
        sock = self._open_socket()
        if sock is None:
            return
        seen = set()
        try:
            self._send_searches(sock)
            deadline = time.monotonic() + self.discovery_timeout
            while self._running.is_set() and time.monotonic() < deadline:
                try:
                    data, addr = sock.recvfrom(4096)
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._running.is_set():
                        LOG.warning("SSDP receive error: %s", e)
                    break

                device = self._handle_datagram(data, addr[0])
                if device is None or device.id in seen:
                    continue
                seen.add(device.id)
                LOG.info("Found SSDP device at %s (%s)", device.address, device.control_url)
                yield self._with_details(device)
        finally:
            self._close_socket(sock)

    def stop(self) -> None:
        with self._lock:
            self._running.clear()
            sock = self._socket
            self._socket = None
        close_quietly(sock)

    def _open_socket(self) -> Optional[socket.socket]:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.settimeout(self.receive_timeout)
            sock.bind(("", 0))
        except OSError as e:
            LOG.warning("Could not open SSDP socket: %s", e)
            return None
        with self._lock:
            if not self._running.is_set():
                stopped = True
            else:
                stopped = False
                previous, self._socket = self._socket, sock
        if stopped:
            LOG.debug("SSDP discovery stopped before the socket opened")
            close_quietly(sock)
            return None
        close_quietly(previous)
        return sock

    def _close_socket(self, sock: socket.socket) -> None:
        with self._lock:
            if self._socket is sock:
                self._socket = None
        close_quietly(sock)

    def _send_searches(self, sock: socket.socket) -> None:
        for round_no in range(self.search_rounds):
            if not self._running.is_set():
                return
            for target in SEARCH_TARGETS:
                try:
                    sock.sendto(build_msearch(target, self.mx), (SSDP_ADDRESS, SSDP_PORT))
                    LOG.debug("Sent M-SEARCH for %s", target)
                except OSError as e:
                    LOG.warning("Failed to send M-SEARCH for %s: %s", target, e)
            if round_no < self.search_rounds - 1:
                time.sleep(self.round_delay)

    def _handle_datagram(self, data: bytes, address: str) -> Optional[Device]:
        try:
            text = data.decode("utf-8", errors="replace")
            if is_byebye(text):
                self._notify_lost(text)
                return None
            return parse_ssdp_response(text, address)
        except Exception as e:
            LOG.debug("Skipping unparseable SSDP datagram from %s: %s", address, e)
            return None

    def _notify_lost(self, text: str) -> None:
        headers = parse_headers(text)
        usn = headers.get("usn")
        location = headers.get("location", "")
        if not (usn or location):
            return
        device_id = device_id_for(usn, location)
        LOG.info("SSDP byebye for %s", usn or location)
        if self.on_device_lost:
            try:
                self.on_device_lost(device_id)
            except Exception as e:
                LOG.warning("byebye callback failed: %s", e)

    def _with_details(self, device: Device) -> Device:
        if not self.fetch_details or not device.control_url:
            return device
        try:
            resp = safe_requests_get(device.control_url, session=self.session, timeout=self.http_timeout)
            if not resp.ok:
                LOG.debug("Description fetch for %s failed: HTTP %s", device.control_url, resp.status_code)
                return device
            return parse_device_description(resp.text, device)
        except Exception as e:
            LOG.debug("Failed to fetch device details from %s: %s", device.control_url, e)
            return device
