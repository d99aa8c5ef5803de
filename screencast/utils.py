import hashlib
import logging
import socket

import requests

LOG = logging.getLogger(__name__)

HEADERS = {
    'User-Agent': 'Linux/5 UPnP/1.1 screencast/0.3',
    'Accept': 'text/xml,application/xml;q=0.9,*/*;q=0.8',
}


def safe_requests_get(url, session=None, **kwargs):
    """Wrapper for requests.get with default UPnP client headers."""
    headers = kwargs.pop("headers", {})
    # Merge with defaults, preserving caller's headers if they exist
    final_headers = HEADERS.copy()
    final_headers.update(headers)
    getter = session.get if session is not None else requests.get
    return getter(url, headers=final_headers, **kwargs)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8", "ignore")).hexdigest()


def get_local_ip() -> str:
    """Best-effort LAN address other devices can reach us on."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # No packet is sent; connect() only selects the outgoing interface.
            s.connect(('8.8.8.8', 1))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return '127.0.0.1'


def close_quietly(sock) -> None:
    if sock is None:
        return
    try:
        sock.close()
    except OSError as e:
        LOG.debug("close failed: %s", e)
