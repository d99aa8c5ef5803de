"""UPnP AVTransport control over SOAP.

Each action is a single POST of a SOAP 1.1 envelope to the renderer's
AVTransport control URL. Failures of any kind are logged and reported as
False/None; callers decide what a failed action means for the session.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple

import requests

from screencast.config import config_value
from screencast.errors import PlaybackError
from screencast.models import Device
from screencast.utils import HEADERS
from screencast.wire import build_soap_envelope, extract_xml_value, xml_escape

LOG = logging.getLogger(__name__)

AVTRANSPORT_SERVICE = "urn:schemas-upnp-org:service:AVTransport:1"

DLNA_PROTOCOL_INFO = (
    "http-get:*:video/mp4:DLNA.ORG_OP=01;DLNA.ORG_CI=0;"
    "DLNA.ORG_FLAGS=01700000000000000000000000000000"
)


class TransportState(Enum):
    STOPPED = "STOPPED"
    PLAYING = "PLAYING"
    PAUSED_PLAYBACK = "PAUSED_PLAYBACK"
    TRANSITIONING = "TRANSITIONING"
    NO_MEDIA_PRESENT = "NO_MEDIA_PRESENT"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "TransportState":
        if not value:
            return cls.UNKNOWN
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class TransportInfo:
    state: TransportState
    status: str = "OK"
    speed: str = "1"


def parse_transport_info(xml: str) -> Optional[TransportInfo]:
    """GetTransportInfo response body -> TransportInfo (None without a state)."""
    state = extract_xml_value(xml, "CurrentTransportState")
    if state is None:
        return None
    return TransportInfo(
        state=TransportState.from_string(state),
        status=extract_xml_value(xml, "CurrentTransportStatus") or "OK",
        speed=extract_xml_value(xml, "CurrentSpeed") or "1",
    )


def build_didl_metadata(uri: str, title: str) -> str:
    return (
        '<DIDL-Lite xmlns="urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/" '
        'xmlns:dc="http://purl.org/dc/elements/1.1/" '
        'xmlns:upnp="urn:schemas-upnp-org:metadata-1-0/upnp/">'
        '<item id="0" parentID="-1" restricted="1">'
        f"<dc:title>{xml_escape(title)}</dc:title>"
        "<upnp:class>object.item.videoItem</upnp:class>"
        f'<res protocolInfo="{DLNA_PROTOCOL_INFO}">{xml_escape(uri)}</res>'
        "</item>"
        "</DIDL-Lite>"
    )


class AVTransportController:
    """Drives one renderer's AVTransport service."""

    def __init__(self, device: Device, config=None, session: Optional[requests.Session] = None):
        self.device = device
        self.control_url = device.control_url or ""
        self.timeout = float(config_value(config, "http_timeout"))
        self.session = session or requests.Session()

    def set_av_transport_uri(self, uri: str, title: str = "Screen Cast") -> bool:
        # build_soap_envelope escapes the DIDL once more as argument text.
        return self._invoke("SetAVTransportURI", [
            ("InstanceID", "0"),
            ("CurrentURI", uri),
            ("CurrentURIMetaData", build_didl_metadata(uri, title)),
        ]) is not None

    def play(self) -> bool:
        return self._invoke("Play", [("InstanceID", "0"), ("Speed", "1")]) is not None

    def pause(self) -> bool:
        return self._invoke("Pause", [("InstanceID", "0")]) is not None

    def stop(self) -> bool:
        return self._invoke("Stop", [("InstanceID", "0")]) is not None

    def get_transport_info(self) -> Optional[TransportInfo]:
        body = self._invoke("GetTransportInfo", [("InstanceID", "0")])
        if body is None:
            return None
        return parse_transport_info(body)

    def _invoke(self, action: str, arguments: Sequence[Tuple[str, str]]) -> Optional[str]:
        """POST one action; returns the response body, or None on any failure."""
        if not self.control_url:
            LOG.debug("%s skipped: %s has no AVTransport control URL", action, self.device.name)
            return None
        try:
            return self._post(action, build_soap_envelope(action, AVTRANSPORT_SERVICE, arguments))
        except Exception as e:
            LOG.warning("DLNA %s on %s failed: %s", action, self.device.name, e)
            return None

    def _post(self, action: str, envelope: str) -> str:
        headers = {
            "User-Agent": HEADERS["User-Agent"],
            "Content-Type": 'text/xml; charset="utf-8"',
            "SOAPAction": f'"{AVTRANSPORT_SERVICE}#{action}"',
        }
        resp = self.session.post(
            self.control_url,
            data=envelope.encode("utf-8"),
            headers=headers,
            timeout=self.timeout,
        )
        if not 200 <= resp.status_code < 300:
            raise PlaybackError(f"HTTP {resp.status_code} for {action}")
        LOG.debug("DLNA %s -> HTTP %s", action, resp.status_code)
        return resp.text
