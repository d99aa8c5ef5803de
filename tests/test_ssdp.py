import socket
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from screencast import ssdp
from screencast.models import DeviceType
from screencast.ssdp import (
    SSDPDiscoverer,
    build_msearch,
    device_id_for,
    find_avtransport_control_url,
    parse_device_description,
    parse_ssdp_response,
)

RESPONSE = (
    "HTTP/1.1 200 OK\r\n"
    "CACHE-CONTROL: max-age=1800\r\n"
    "Location: http://192.168.1.40:49152/description.xml\r\n"
    "ST: urn:schemas-upnp-org:device:MediaRenderer:1\r\n"
    "USN: uuid:4d696e69-444c-164e-9d41-b827eb1c4b2d::urn:schemas-upnp-org:device:MediaRenderer:1\r\n"
    "\r\n"
)

DESCRIPTION = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <device>
    <friendlyName>Living Room TV</friendlyName>
    <manufacturer>Acme</manufacturer>
    <modelName>Renderer 3000</modelName>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:RenderingControl:1</serviceType>
        <controlURL>/upnp/control/RenderingControl</controlURL>
      </service>
      <service>
        <serviceType>urn:schemas-upnp-org:service:AVTransport:1</serviceType>
        <serviceId>urn:upnp-org:serviceId:AVTransport</serviceId>
        <controlURL>upnp/control/AVTransport</controlURL>
      </service>
    </serviceList>
  </device>
</root>
"""


def test_build_msearch():
    msg = build_msearch("ssdp:all", 3).decode("ascii")
    assert msg.startswith("M-SEARCH * HTTP/1.1\r\n")
    assert "HOST: 239.255.255.250:1900\r\n" in msg
    assert 'MAN: "ssdp:discover"\r\n' in msg
    assert "MX: 3\r\n" in msg
    assert "ST: ssdp:all\r\n" in msg
    assert msg.endswith("\r\n\r\n")


def test_parse_media_renderer_response():
    device = parse_ssdp_response(RESPONSE, "192.168.1.40")
    assert device is not None
    assert device.type == DeviceType.DLNA
    assert device.name == "Unknown Device"
    assert device.address == "192.168.1.40"
    assert device.port == 49152
    assert device.control_url == "http://192.168.1.40:49152/description.xml"
    assert len(device.id) == 16


def test_parse_rejects_media_server_services():
    text = RESPONSE.replace(
        "urn:schemas-upnp-org:device:MediaRenderer:1\r\nUSN",
        "urn:schemas-upnp-org:service:ContentDirectory:1\r\nUSN",
    )
    assert parse_ssdp_response(text, "192.168.1.40") is None
    notify = (
        "NOTIFY * HTTP/1.1\r\nLOCATION: http://h/d.xml\r\n"
        "NT: urn:schemas-upnp-org:service:ConnectionManager:1\r\nNTS: ssdp:alive\r\n\r\n"
    )
    assert parse_ssdp_response(notify, "h") is None


def test_parse_requires_location_and_known_start_line():
    assert parse_ssdp_response(RESPONSE.replace("Location", "X-Other"), "h") is None
    assert parse_ssdp_response(RESPONSE.replace("HTTP/1.1 200 OK", "HTTP/1.1 404 Not Found"), "h") is None


def test_parse_notify_alive_and_default_port():
    notify = (
        "NOTIFY * HTTP/1.1\r\nHOST: 239.255.255.250:1900\r\n"
        "location: http://10.0.0.9/desc.xml\r\n"
        "nt: upnp:rootdevice\r\nnts: ssdp:alive\r\nusn: uuid:abc::upnp:rootdevice\r\n\r\n"
    )
    device = parse_ssdp_response(notify, "10.0.0.9")
    assert device.port == 80
    assert device.id == device_id_for("uuid:abc", "")


def test_parse_byebye_is_not_a_device():
    byebye = "NOTIFY * HTTP/1.1\r\nLOCATION: http://h/d.xml\r\nNTS: ssdp:byebye\r\nUSN: uuid:abc\r\n\r\n"
    assert parse_ssdp_response(byebye, "h") is None


def test_device_id_stable_across_advertised_types():
    a = device_id_for("uuid:abc::upnp:rootdevice", "http://h/1.xml")
    b = device_id_for("uuid:abc::urn:schemas-upnp-org:device:MediaRenderer:1", "http://h/2.xml")
    assert a == b
    assert device_id_for(None, "http://h/1.xml") != a


def test_parse_device_description_resolves_relative_control_url():
    device = parse_ssdp_response(RESPONSE, "192.168.1.40")
    detailed = parse_device_description(DESCRIPTION, device)
    assert detailed.id == device.id
    assert detailed.name == "Living Room TV"
    assert detailed.manufacturer == "Acme"
    assert detailed.model_name == "Renderer 3000"
    assert detailed.control_url == "http://192.168.1.40:49152/upnp/control/AVTransport"


def test_find_control_url_absent():
    assert find_avtransport_control_url("<root><controlURL>/x</controlURL></root>", "http://h:1/") is None


class FakeUDPSocket:
    datagrams = []
    instances = []

    def __init__(self, *args, **kwargs):
        self.sent = []
        self.closed = False
        self._queue = list(type(self).datagrams)
        type(self).instances.append(self)

    def setsockopt(self, *args):
        pass

    def settimeout(self, timeout):
        pass

    def bind(self, addr):
        pass

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def recvfrom(self, size):
        if self.closed:
            raise OSError("closed")
        if self._queue:
            return self._queue.pop(0)
        time.sleep(0.01)
        raise socket.timeout()

    def close(self):
        self.closed = True


def _discoverer(monkeypatch, datagrams, fetch_details=True):
    FakeUDPSocket.datagrams = datagrams
    FakeUDPSocket.instances = []
    monkeypatch.setattr(ssdp.socket, "socket", FakeUDPSocket)
    session = MagicMock()
    session.get.return_value = MagicMock(ok=True, status_code=200, text=DESCRIPTION)
    config = {
        "ssdp_discovery_timeout": 0.3,
        "ssdp_round_delay": 0.0,
        "ssdp_fetch_details": fetch_details,
    }
    return SSDPDiscoverer(config, session=session), session


def test_discover_sends_all_targets_and_dedupes(monkeypatch):
    other = RESPONSE.replace("MediaRenderer:1\r\nUSN", "MediaRenderer:1\r\nX: y\r\nUSN")
    discoverer, session = _discoverer(monkeypatch, [
        (RESPONSE.encode(), ("192.168.1.40", 1900)),
        (other.encode(), ("192.168.1.40", 1900)),
        (b"garbage", ("192.168.1.41", 1900)),
    ])
    devices = list(discoverer.discover())

    assert len(devices) == 1
    assert devices[0].name == "Living Room TV"
    session.get.assert_called_once()
    sock = FakeUDPSocket.instances[0]
    assert len(sock.sent) == 3 * len(ssdp.SEARCH_TARGETS)
    assert all(addr == ("239.255.255.250", 1900) for _, addr in sock.sent)
    assert sock.closed


def test_discover_keeps_bare_record_when_description_fails(monkeypatch):
    discoverer, session = _discoverer(monkeypatch, [(RESPONSE.encode(), ("192.168.1.40", 1900))])
    session.get.side_effect = ConnectionError("unreachable")
    devices = list(discoverer.discover())
    assert devices[0].name == "Unknown Device"
    assert devices[0].control_url == "http://192.168.1.40:49152/description.xml"


def test_byebye_reports_lost_device(monkeypatch):
    byebye = "NOTIFY * HTTP/1.1\r\nNT: upnp:rootdevice\r\nNTS: ssdp:byebye\r\nUSN: uuid:4d696e69-444c-164e-9d41-b827eb1c4b2d::upnp:rootdevice\r\n\r\n"
    discoverer, _ = _discoverer(monkeypatch, [(byebye.encode(), ("192.168.1.40", 1900))], fetch_details=False)
    lost = []
    discoverer.on_device_lost = lost.append
    assert list(discoverer.discover()) == []
    assert lost == [parse_ssdp_response(RESPONSE, "192.168.1.40").id]


def test_stop_ends_discovery(monkeypatch):
    discoverer, _ = _discoverer(monkeypatch, [], fetch_details=False)
    discoverer.discovery_timeout = 30.0
    found = []
    t = threading.Thread(target=lambda: found.extend(discoverer.discover()), daemon=True)
    t.start()
    deadline = time.monotonic() + 2.0
    while not discoverer._running.is_set() and time.monotonic() < deadline:
        time.sleep(0.01)
    discoverer.stop()
    t.join(timeout=5.0)
    assert not t.is_alive()
    assert found == []
