"""Minimal Cast v2 sender.

Messages are CastMessage protobufs (only the fields we need, encoded by hand)
carrying JSON payloads, each framed with a 4-byte big-endian length over a
TLS connection to port 8009. One I/O thread owns the TLS socket: it writes
queued outbound frames and reads every inbound message, so the SSL object is
never used from two threads at once. Requests that expect an answer register
a matcher and wait on a future.
"""

import concurrent.futures
import itertools
import json
import logging
import queue
import socket
import ssl
import struct
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from screencast.config import config_value
from screencast.errors import CastConnectionError, PlaybackError, ProtocolError
from screencast.utils import close_quietly
from screencast.wire import (
    WIRE_LENGTH_DELIMITED,
    WireFormatError,
    encode_string_field,
    encode_varint_field,
    iter_fields,
)

LOG = logging.getLogger(__name__)

NS_CONNECTION = "urn:x-cast:com.google.cast.tp.connection"
NS_HEARTBEAT = "urn:x-cast:com.google.cast.tp.heartbeat"
NS_RECEIVER = "urn:x-cast:com.google.cast.receiver"
NS_MEDIA = "urn:x-cast:com.google.cast.media"

SENDER_ID = "sender-0"
RECEIVER_ID = "receiver-0"

PAYLOAD_TYPE_STRING = 0
MAX_MESSAGE_SIZE = 64 * 1024
_POLL_INTERVAL = 0.05  # longest a queued send waits for the I/O thread

_LENGTH = struct.Struct(">I")

# Replies that answer a request with a failure instead of a status.
_ERROR_TYPES = frozenset({
    "LAUNCH_ERROR",
    "LOAD_FAILED",
    "LOAD_CANCELLED",
    "INVALID_REQUEST",
    "INVALID_PLAYER_STATE",
})


@dataclass
class CastMessage:
    source_id: str
    destination_id: str
    namespace: str
    payload_utf8: str
    protocol_version: int = 0
    payload_type: int = PAYLOAD_TYPE_STRING

    def json(self) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(self.payload_utf8)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


def encode_cast_message(source_id: str, destination_id: str, namespace: str, payload_utf8: str) -> bytes:
    return b"".join([
        encode_varint_field(1, 0),  # protocol_version CASTV2_1_0
        encode_string_field(2, source_id),
        encode_string_field(3, destination_id),
        encode_string_field(4, namespace),
        encode_varint_field(5, PAYLOAD_TYPE_STRING),
        encode_string_field(6, payload_utf8),
    ])


def decode_cast_message(data: bytes) -> Optional[CastMessage]:
    """Decode the fields we care about; None if the message has no string payload."""
    strings: Dict[int, str] = {}
    for field_number, wire_type, value in iter_fields(data):
        if wire_type == WIRE_LENGTH_DELIMITED and field_number in (2, 3, 4, 6):
            strings[field_number] = value.decode("utf-8", errors="replace")
    if 6 not in strings:
        return None
    return CastMessage(
        source_id=strings.get(2, ""),
        destination_id=strings.get(3, ""),
        namespace=strings.get(4, ""),
        payload_utf8=strings[6],
    )


def frame_message(body: bytes) -> bytes:
    return _LENGTH.pack(len(body)) + body


def transport_id_from(payload: Dict[str, Any]) -> Optional[str]:
    """RECEIVER_STATUS -> transportId of the first running application."""
    status = payload.get("status")
    if not isinstance(status, dict):
        return None
    apps = status.get("applications") or []
    if apps and isinstance(apps[0], dict):
        return apps[0].get("transportId") or None
    return None


def media_session_id_from(payload: Dict[str, Any]) -> Optional[int]:
    """MEDIA_STATUS -> mediaSessionId, top level or inside the status list."""
    session_id = payload.get("mediaSessionId")
    if isinstance(session_id, int):
        return session_id
    status = payload.get("status")
    if isinstance(status, list):
        for entry in status:
            if isinstance(entry, dict) and isinstance(entry.get("mediaSessionId"), int):
                return entry["mediaSessionId"]
    return None


class _PendingRequest:
    def __init__(self, matcher: Callable[[Dict[str, Any]], Any]):
        self.matcher = matcher
        self.future: concurrent.futures.Future = concurrent.futures.Future()


def _settle(future: concurrent.futures.Future, result: Any = None, error: Optional[Exception] = None) -> None:
    if future.done():
        return
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except concurrent.futures.InvalidStateError:
        pass  # settled concurrently


class CastV2Session:
    """One TLS channel to a Cast receiver."""

    def __init__(self, config=None):
        self.port = int(config_value(config, "cast_port"))
        self.connect_timeout = float(config_value(config, "cast_connect_timeout"))
        self.response_timeout = float(config_value(config, "cast_response_timeout"))
        self.app_id = str(config_value(config, "cast_app_id"))

        self.transport_id: Optional[str] = None
        self.media_session_id: Optional[int] = None

        self._sock = None
        self._lock = threading.Lock()
        self._pending: Dict[int, _PendingRequest] = {}
        self._request_ids = itertools.count(1)
        self._connected = threading.Event()
        self._outbox: "queue.Queue" = queue.Queue()
        self._io_thread: Optional[threading.Thread] = None

    def is_connected(self) -> bool:
        return self._connected.is_set() and self._sock is not None

    def connect(self, address: str) -> bool:
        if self.is_connected():
            self.disconnect()
        LOG.info("Connecting to Cast receiver at %s:%d", address, self.port)
        try:
            sock = self._open_socket(address)
        except (OSError, ssl.SSLError) as e:
            LOG.warning("Cast connect to %s failed: %s", address, e)
            return False
        self._attach(sock)
        if not self._send(NS_CONNECTION, RECEIVER_ID, {"type": "CONNECT"}):
            self.disconnect()
            return False
        return True

    def _open_socket(self, address: str):
        # Receivers present self-signed device certificates, so the channel is
        # encrypted but the peer is not authenticated.
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        raw = socket.create_connection((address, self.port), timeout=self.connect_timeout)
        try:
            sock = context.wrap_socket(raw)
        except (OSError, ssl.SSLError):
            close_quietly(raw)
            raise
        return sock

    def _attach(self, sock) -> None:
        sock.settimeout(_POLL_INTERVAL)
        self._sock = sock
        self._outbox = queue.Queue()
        self._connected.set()
        self._io_thread = threading.Thread(target=self._io_loop, args=(sock,), name="cast-v2-io", daemon=True)
        self._io_thread.start()

    def start_casting(self, stream_url: str) -> bool:
        """LAUNCH the media receiver app, join its transport and LOAD `stream_url`."""
        if not self.is_connected():
            LOG.warning("start_casting called without a Cast connection")
            return False

        transport_id = self._request(NS_RECEIVER, RECEIVER_ID,
                                     {"type": "LAUNCH", "appId": self.app_id}, transport_id_from)
        if not transport_id:
            LOG.warning("Receiver app %s did not report a transport", self.app_id)
            return False
        self.transport_id = transport_id
        LOG.debug("Receiver app transport %s", transport_id)

        if not self._send(NS_CONNECTION, transport_id, {"type": "CONNECT"}):
            return False

        load = {
            "type": "LOAD",
            "media": {
                "contentId": stream_url,
                "contentType": "video/mp4",
                "streamType": "LIVE",
            },
            "autoplay": True,
        }
        session_id = self._request(NS_MEDIA, transport_id, load, media_session_id_from)
        if session_id is None:
            LOG.warning("Receiver did not start a media session for %s", stream_url)
            return False
        self.media_session_id = session_id
        LOG.info("Cast media session %s playing %s", session_id, stream_url)
        return True

    def stop_casting(self) -> None:
        if self.transport_id and self.media_session_id is not None:
            self._send(NS_MEDIA, self.transport_id, {
                "type": "STOP",
                "requestId": next(self._request_ids),
                "mediaSessionId": self.media_session_id,
            })
        self._send(NS_RECEIVER, RECEIVER_ID, {"type": "STOP", "requestId": next(self._request_ids)})
        self.transport_id = None
        self.media_session_id = None

    def send_heartbeat(self) -> bool:
        return self._send(NS_HEARTBEAT, RECEIVER_ID, {"type": "PING"})

    def disconnect(self) -> None:
        self._connected.clear()
        sock, self._sock = self._sock, None
        io_thread, self._io_thread = self._io_thread, None
        if io_thread is not None and io_thread is not threading.current_thread():
            io_thread.join(timeout=2.0)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            close_quietly(sock)
        self._fail_pending(CastConnectionError("Cast channel closed"))
        self.transport_id = None
        self.media_session_id = None

    # --- Sending ---

    def _send(self, namespace: str, destination_id: str, payload: Dict[str, Any]) -> bool:
        """Hand one message to the I/O thread and wait until it is written."""
        sock = self._sock
        if sock is None or not self._connected.is_set():
            return False
        text = json.dumps(payload, separators=(",", ":"))
        data = frame_message(encode_cast_message(SENDER_ID, destination_id, namespace, text))
        if threading.current_thread() is self._io_thread:
            sent = self._write(sock, data)
        else:
            written: concurrent.futures.Future = concurrent.futures.Future()
            self._outbox.put((data, written))
            try:
                sent = written.result(timeout=self.connect_timeout)
            except concurrent.futures.TimeoutError:
                LOG.warning("Cast send on %s was not written within %.1fs", namespace, self.connect_timeout)
                return False
        if sent:
            LOG.debug("Sent %s -> %s: %s", namespace, destination_id, text)
        return sent

    def _write(self, sock, data: bytes) -> bool:
        # Writes get the connect timeout; the short poll timeout is for reads only.
        try:
            sock.settimeout(self.connect_timeout)
            sock.sendall(data)
            sock.settimeout(_POLL_INTERVAL)
        except OSError as e:
            LOG.warning("Cast send failed: %s", e)
            self._connected.clear()
            return False
        return True

    def _flush(self, sock) -> None:
        while True:
            try:
                data, written = self._outbox.get_nowait()
            except queue.Empty:
                return
            if not self._connected.is_set():
                _settle(written, result=False)
                continue
            _settle(written, result=self._write(sock, data))

    def _request(self, namespace: str, destination_id: str, payload: Dict[str, Any],
                 matcher: Callable[[Dict[str, Any]], Any]) -> Any:
        """Send a request and wait for the first inbound payload `matcher` accepts."""
        request_id = next(self._request_ids)
        pending = _PendingRequest(matcher)
        with self._lock:
            self._pending[request_id] = pending
        try:
            if not self._send(namespace, destination_id, dict(payload, requestId=request_id)):
                return None
            return pending.future.result(timeout=self.response_timeout)
        except concurrent.futures.TimeoutError:
            LOG.warning("No answer to %s within %.1fs", payload.get("type"), self.response_timeout)
            return None
        except (CastConnectionError, PlaybackError) as e:
            LOG.warning("%s failed: %s", payload.get("type"), e)
            return None
        finally:
            with self._lock:
                self._pending.pop(request_id, None)

    # --- I/O thread ---

    def _take_frames(self, buf: bytearray):
        """Pop every complete frame off the front of `buf`."""
        frames = []
        while len(buf) >= _LENGTH.size:
            (length,) = _LENGTH.unpack_from(buf)
            if length > MAX_MESSAGE_SIZE:
                raise ProtocolError(f"Cast message of {length} bytes")
            end = _LENGTH.size + length
            if len(buf) < end:
                break
            frames.append(bytes(buf[_LENGTH.size:end]))
            del buf[:end]
        return frames

    def _io_loop(self, sock) -> None:
        buf = bytearray()
        try:
            while self._connected.is_set():
                self._flush(sock)
                try:
                    chunk = sock.recv(4096)
                except socket.timeout:
                    continue
                if not chunk:
                    raise CastConnectionError("Cast channel closed by receiver")
                buf.extend(chunk)
                for body in self._take_frames(buf):
                    try:
                        message = decode_cast_message(body)
                    except WireFormatError as e:
                        LOG.debug("Dropping undecodable Cast message: %s", e)
                        continue
                    if message is not None:
                        self._on_message(message)
        except (OSError, CastConnectionError, ProtocolError) as e:
            if self._connected.is_set():
                LOG.warning("Cast I/O loop ended: %s", e)
        finally:
            if self._sock is sock:
                self._connected.clear()
            self._flush(sock)
            self._fail_pending(CastConnectionError("Cast channel closed"))

    def _on_message(self, message: CastMessage) -> None:
        payload = message.json()
        if payload is None:
            LOG.debug("Non-JSON payload on %s", message.namespace)
            return
        msg_type = payload.get("type")
        LOG.debug("Received %s from %s: %s", msg_type, message.source_id, message.namespace)

        if message.namespace == NS_HEARTBEAT and msg_type == "PING":
            self._send(NS_HEARTBEAT, message.source_id or RECEIVER_ID, {"type": "PONG"})
            return
        if message.namespace == NS_CONNECTION and msg_type == "CLOSE":
            LOG.info("Cast receiver closed the channel from %s", message.source_id)
            if message.source_id in ("", RECEIVER_ID):
                self._connected.clear()
                self._fail_pending(CastConnectionError("Receiver closed the connection"))
            return

        with self._lock:
            pending = list(self._pending.items())
        request_id = payload.get("requestId")
        for rid, entry in pending:
            if entry.future.done():
                continue
            if msg_type in _ERROR_TYPES and request_id == rid:
                _settle(entry.future, error=PlaybackError(f"{msg_type}: {payload.get('reason', 'no reason')}"))
                continue
            try:
                result = entry.matcher(payload)
            except Exception as e:
                LOG.debug("Matcher failed on %s: %s", msg_type, e)
                continue
            if result is not None:
                _settle(entry.future, result=result)

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
        for entry in pending:
            _settle(entry.future, error=error)
