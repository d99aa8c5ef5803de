"""WiFi Display (Miracast) source: RTSP control server plus RTP sender.

The sink opens the RTSP control connection to us once the WiFi-Direct link is
up. We answer its capability exchange, learn its RTP port from SETUP and,
after PLAY, push every encoded frame as one RTP datagram.
"""

import logging
import random
import re
import socket
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Dict, Iterable, Optional

from screencast.config import config_value
from screencast.models import EncodedFrame
from screencast.utils import close_quietly
from screencast.wire import build_rtp_header

LOG = logging.getLogger(__name__)

RTSP_VERSION = "RTSP/1.0"
RTP_TIMESTAMP_STEP = 3000  # 90 kHz clock at ~30 fps

PUBLIC_METHODS = "OPTIONS, GET_PARAMETER, SET_PARAMETER, SETUP, PLAY, PAUSE, TEARDOWN"
WFD_VIDEO_FORMATS = "00 00 03 10 0001FFFF 1FFFFFFF 00000FFF 00 0000 0000 00 none none"
WFD_AUDIO_CODECS = "LPCM 00000003 00"

_CLIENT_PORT_RE = re.compile(r"client_port=(\d+)")

_MAX_HEADER_LINES = 64


class MiracastState(Enum):
    STOPPED = "stopped"
    LISTENING = "listening"
    SINK_CONNECTED = "sink_connected"
    STREAMING = "streaming"


@dataclass
class RtspRequest:
    method: str
    uri: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        lname = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lname:
                return value
        return default


def read_rtsp_request(reader: BinaryIO) -> Optional[RtspRequest]:
    """Read one request from the control stream; None at EOF or on a bad request line."""
    line = reader.readline()
    if not line:
        return None
    parts = line.decode("utf-8", errors="replace").split()
    if len(parts) < 3:
        return None

    headers: Dict[str, str] = {}
    for _ in range(_MAX_HEADER_LINES):
        raw = reader.readline()
        if not raw:
            break
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            break
        idx = text.find(":")
        if idx > 0:
            headers[text[:idx].strip()] = text[idx + 1:].strip()

    request = RtspRequest(method=parts[0], uri=parts[1], version=parts[2], headers=headers)
    length = request.header("Content-Length")
    if length:
        try:
            request.body = reader.read(max(0, int(length)))
        except ValueError:
            LOG.debug("Ignoring bad Content-Length %r", length)
    return request


def build_rtsp_response(cseq: str, status: int = 200, reason: str = "OK",
                        headers: Optional[Dict[str, str]] = None, body: str = "") -> bytes:
    lines = [f"{RTSP_VERSION} {status} {reason}", f"CSeq: {cseq}"]
    for key, value in (headers or {}).items():
        lines.append(f"{key}: {value}")
    payload = body.encode("utf-8")
    if payload:
        lines.append(f"Content-Length: {len(payload)}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode("utf-8") + payload


class MiracastSource:
    """Source side of one WFD session.

    RTP sequence number, timestamp and SSRC belong to this object; a new
    session needs a new MiracastSource.
    """

    def __init__(self, config=None):
        self.config_rtsp_port = int(config_value(config, "miracast_rtsp_port"))
        self.rtp_port_fallback = int(config_value(config, "miracast_rtp_port_fallback"))
        self.accept_timeout = float(config_value(config, "miracast_accept_timeout"))
        self.session_timeout = int(config_value(config, "miracast_session_timeout"))
        self.session_id = str(random.randint(10000000, 99999999))

        self.sink_address: Optional[str] = None
        self.sink_rtp_port = self.rtp_port_fallback
        self.frames_sent = 0

        self._sequence = 0
        self._timestamp = 0
        self._ssrc = int(time.time() * 1000) & 0xFFFFFFFF

        self._state = MiracastState.STOPPED
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._stopped = threading.Event()
        self._stopped.set()
        self._delivering = threading.Event()

        self._listener: Optional[socket.socket] = None
        self._conn: Optional[socket.socket] = None
        self._rtp_socket: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> MiracastState:
        with self._lock:
            return self._state

    def _set_state(self, state: MiracastState) -> None:
        with self._lock:
            if self._state != state:
                LOG.debug("Miracast state %s -> %s", self._state.value, state.value)
            self._state = state

    @property
    def rtsp_port(self) -> int:
        with self._lock:
            if self._listener is not None:
                return self._listener.getsockname()[1]
        return self.config_rtsp_port

    @property
    def rtp_port(self) -> int:
        with self._lock:
            if self._rtp_socket is not None:
                return self._rtp_socket.getsockname()[1]
        return self.rtp_port_fallback

    def is_connected(self) -> bool:
        return self.state in (MiracastState.SINK_CONNECTED, MiracastState.STREAMING)

    def start(self) -> bool:
        """Open the RTSP listener and RTP socket, then wait for the sink in the background."""
        with self._lock:
            if not self._stopped.is_set():
                LOG.warning("Miracast source already started")
                return False
            try:
                listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                self._listener = listener
                listener.bind(("", self.config_rtsp_port))
                listener.listen(1)
                listener.settimeout(self.accept_timeout)

                rtp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._rtp_socket = rtp
                rtp.bind(("", 0))
            except OSError as e:
                LOG.warning("Failed to start Miracast source: %s", e)
                self._close_sockets()
                return False

            self._stopped.clear()
            self._state = MiracastState.LISTENING
            self._thread = threading.Thread(target=self._accept_loop, name="miracast-rtsp", daemon=True)
            self._thread.start()
        LOG.info("RTSP server listening on port %d, RTP on port %d", self.rtsp_port, self.rtp_port)
        return True

    def stop(self) -> None:
        with self._lock:
            if self._stopped.is_set() and self._listener is None and self._rtp_socket is None:
                return
            self._stopped.set()
            self._delivering.clear()
            self._close_sockets()
            self._state = MiracastState.STOPPED
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        LOG.info("Miracast source stopped")

    def _close_sockets(self) -> None:
        conn, self._conn = self._conn, None
        listener, self._listener = self._listener, None
        rtp, self._rtp_socket = self._rtp_socket, None
        for sock in (conn, listener):
            if sock is None:
                continue
            # shutdown wakes a thread blocked in accept()/recv() on this socket.
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            close_quietly(sock)
        close_quietly(rtp)

    def _accept_loop(self) -> None:
        with self._lock:
            listener = self._listener
        if listener is None:
            return
        try:
            conn, addr = listener.accept()
        except socket.timeout:
            LOG.warning("No Miracast sink connected within %.0fs", self.accept_timeout)
            self.stop()
            return
        except OSError as e:
            if not self._stopped.is_set():
                LOG.warning("RTSP accept failed: %s", e)
                self.stop()
            return

        with self._lock:
            if self._stopped.is_set():
                close_quietly(conn)
                return
            conn.settimeout(None)
            self._conn = conn
            self.sink_address = addr[0]
            self._state = MiracastState.SINK_CONNECTED
        LOG.info("Miracast sink connected from %s", addr[0])

        try:
            self._serve(conn)
        finally:
            self.stop()

    def _serve(self, conn: socket.socket) -> None:
        reader = conn.makefile("rb")
        try:
            while not self._stopped.is_set():
                try:
                    request = read_rtsp_request(reader)
                except (OSError, ValueError) as e:
                    if not self._stopped.is_set():
                        LOG.debug("RTSP read failed: %s", e)
                    return
                if request is None:
                    LOG.info("RTSP session ended by sink")
                    return
                LOG.debug("RTSP request: %s %s", request.method, request.uri)
                response = self.handle_request(request)
                try:
                    conn.sendall(response)
                except OSError as e:
                    LOG.debug("RTSP write failed: %s", e)
                    return
                if request.method.upper() == "TEARDOWN":
                    return  # replied; the session is released on the way out
        finally:
            try:
                reader.close()
            except OSError:
                pass

    def handle_request(self, request: RtspRequest) -> bytes:
        cseq = request.header("CSeq") or "0"
        method = request.method.upper()

        if method == "OPTIONS":
            return build_rtsp_response(cseq, headers={"Public": PUBLIC_METHODS})

        if method == "GET_PARAMETER":
            body = "\r\n".join([
                f"wfd_video_formats: {WFD_VIDEO_FORMATS}",
                f"wfd_audio_codecs: {WFD_AUDIO_CODECS}",
                f"wfd_client_rtp_ports: RTP/AVP/UDP;unicast {self.rtp_port} 0 mode=play",
            ]) + "\r\n"
            return build_rtsp_response(cseq, headers={"Content-Type": "text/parameters"}, body=body)

        if method == "SET_PARAMETER":
            return build_rtsp_response(cseq)

        if method == "SETUP":
            transport = request.header("Transport") or "RTP/AVP/UDP;unicast"
            match = _CLIENT_PORT_RE.search(transport)
            self.sink_rtp_port = int(match.group(1)) if match else self.rtp_port_fallback
            LOG.info("SETUP: sink RTP port %d", self.sink_rtp_port)
            return build_rtsp_response(cseq, headers={
                "Session": f"{self.session_id};timeout={self.session_timeout}",
                "Transport": f"{transport};server_port={self.rtp_port}",
            })

        if method == "PLAY":
            LOG.info("PLAY: starting RTP delivery to %s:%d", self.sink_address, self.sink_rtp_port)
            self._set_state(MiracastState.STREAMING)
            self._delivering.set()
            return build_rtsp_response(cseq, headers={"Session": self.session_id})

        if method == "PAUSE":
            self._delivering.clear()
            self._set_state(MiracastState.SINK_CONNECTED)
            return build_rtsp_response(cseq, headers={"Session": self.session_id})

        if method == "TEARDOWN":
            LOG.info("TEARDOWN from sink")
            return build_rtsp_response(cseq)

        LOG.debug("Unsupported RTSP method %s", request.method)
        return build_rtsp_response(cseq, 501, "Not Implemented")

    def send_frame(self, frame: EncodedFrame) -> bool:
        """Send one frame as an RTP datagram. Frames before PLAY are dropped."""
        if not self._delivering.is_set() or self.sink_address is None:
            return False
        with self._send_lock:
            sock = self._rtp_socket
            if sock is None:
                return False
            self._timestamp = (self._timestamp + RTP_TIMESTAMP_STEP) & 0xFFFFFFFF
            header = build_rtp_header(self._sequence, self._timestamp, self._ssrc, frame.is_key_frame)
            self._sequence = (self._sequence + 1) & 0xFFFF
            try:
                sock.sendto(header + frame.payload, (self.sink_address, self.sink_rtp_port))
            except OSError as e:
                LOG.debug("Failed to send RTP packet: %s", e)
                return False
            self.frames_sent += 1
        return True

    def stream_frames(self, frames: Iterable[EncodedFrame]) -> int:
        """Pump frames to the sink until the sequence ends or the source stops."""
        sent = 0
        for frame in frames:
            if self._stopped.is_set():
                break
            if self.send_frame(frame):
                sent += 1
        return sent
