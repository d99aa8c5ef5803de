"""HTTP relay that serves the live encoded stream to renderers.

DLNA renderers and Cast receivers pull the stream from us over plain HTTP.
One fan-out thread reads the frame sequence once and copies every payload
into a bounded queue per connected client; each client's handler thread
drains its own queue into a chunked response. A client that cannot keep up
is dropped without affecting the others.
"""

import logging
import queue
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from screencast.config import config_value
from screencast.models import EncodedFrame
from screencast.utils import get_local_ip

LOG = logging.getLogger(__name__)

CONTENT_FEATURES = "DLNA.ORG_OP=01;DLNA.ORG_CI=0;DLNA.ORG_FLAGS=01700000000000000000000000000000"

CROSSDOMAIN_XML = (
    b'<?xml version="1.0"?>'
    b'<cross-domain-policy><allow-access-from domain="*"/></cross-domain-policy>'
)


class _ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True
    request_queue_size = 64

    relay: "StreamingRelay"


class _Client:
    """One connected /stream consumer."""

    def __init__(self, address: str, maxsize: int):
        self.address = address
        self.queue: "queue.Queue[Optional[bytes]]" = queue.Queue(maxsize=maxsize)
        self.closed = threading.Event()

    def offer(self, payload: bytes) -> bool:
        if self.closed.is_set():
            return False
        try:
            self.queue.put_nowait(payload)
        except queue.Full:
            return False
        return True

    def close(self) -> None:
        self.closed.set()
        try:
            self.queue.put_nowait(None)
        except queue.Full:
            pass  # handler notices `closed` on its next poll


class _RelayHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    timeout = 10  # a renderer that stops reading for this long is dropped

    def log_message(self, fmt: str, *args) -> None:
        LOG.debug("Relay: " + fmt, *args)

    def do_GET(self) -> None:
        path = urlparse(self.path).path
        if path == "/stream":
            self._serve_stream()
        elif path == "/crossdomain.xml":
            self._send_body(CROSSDOMAIN_XML, "text/xml")
        elif path == "/health":
            self._send_body(b"ok", "text/plain; charset=utf-8")
        else:
            self.send_error(404, "Not Found")

    def _send_body(self, body: bytes, content_type: str) -> None:
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.end_headers()
        self.wfile.write(body)

    def _serve_stream(self) -> None:
        relay = self.server.relay
        # Registered before the headers go out so no frame in between is lost.
        client = relay.register_client(self.client_address[0])
        self.close_connection = True
        try:
            self.send_response(200)
            self.send_header("Content-Type", "video/mp4")
            self.send_header("Transfer-Encoding", "chunked")
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("TransferMode.DLNA.ORG", "Streaming")
            self.send_header("contentFeatures.dlna.org", CONTENT_FEATURES)
            self.end_headers()

            while True:
                try:
                    item = client.queue.get(timeout=0.5)
                except queue.Empty:
                    if client.closed.is_set():
                        break
                    continue
                if item is None or client.closed.is_set():
                    break
                self.wfile.write(b"%x\r\n" % len(item) + item + b"\r\n")
                self.wfile.flush()
            self.wfile.write(b"0\r\n\r\n")
            self.wfile.flush()
        except OSError as e:
            LOG.debug("Stream client %s went away: %s", client.address, e)
        finally:
            relay.unregister_client(client)


class StreamingRelay:
    """Chunked HTTP server for the live stream at /stream."""

    def __init__(self, config=None, host: Optional[str] = None, port: Optional[int] = None):
        self.bind_host = host or "0.0.0.0"
        self.advertise_host = host or get_local_ip()
        self.port = int(config_value(config, "stream_port") if port is None else port)
        self.client_buffer = int(config_value(config, "relay_client_buffer"))

        self._lock = threading.Lock()
        self._clients: List[_Client] = []
        self._latest_config: Optional[bytes] = None
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._fanout: Optional[threading.Thread] = None
        self._fanout_stop: Optional[threading.Event] = None

    # --- Lifecycle ---

    def start(self) -> bool:
        if self._server is not None:
            return True
        try:
            server = _ThreadingHTTPServer((self.bind_host, self.port), _RelayHandler)
        except OSError as e:
            LOG.warning("Relay could not bind %s:%s: %s", self.bind_host, self.port, e)
            return False
        server.relay = self
        self._server = server
        self.port = server.server_address[1]
        self._thread = threading.Thread(
            target=server.serve_forever, kwargs={"poll_interval": 0.25}, name="StreamingRelay", daemon=True
        )
        self._thread.start()
        LOG.info("Streaming relay started at %s", self.get_stream_url())
        return True

    def stop(self) -> None:
        self._stop_fanout()
        with self._lock:
            clients, self._clients = self._clients, []
            self._latest_config = None
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
        for client in clients:
            client.close()
        if server is not None:
            server.shutdown()
            server.server_close()
            LOG.info("Streaming relay stopped")
        if thread is not None:
            thread.join(timeout=2.0)

    def is_running(self) -> bool:
        return self._server is not None

    def get_stream_url(self) -> str:
        return f"http://{self.advertise_host}:{self.port}/stream"

    def client_count(self) -> int:
        with self._lock:
            return len(self._clients)

    # --- Frames ---

    def set_frame_source(self, frames: Iterable[EncodedFrame]) -> None:
        """Start distributing `frames`, replacing any previous source."""
        self._stop_fanout()
        stop = threading.Event()
        with self._lock:
            self._latest_config = None
            self._fanout_stop = stop
            self._fanout = threading.Thread(
                target=self._distribute, args=(frames, stop), name="relay-fanout", daemon=True
            )
            self._fanout.start()

    def _stop_fanout(self) -> None:
        with self._lock:
            stop, self._fanout_stop = self._fanout_stop, None
            self._fanout = None
        if stop is not None:
            stop.set()

    def _distribute(self, frames: Iterable[EncodedFrame], stop: threading.Event) -> None:
        try:
            for frame in frames:
                if stop.is_set():
                    return
                self.publish(frame)
        except Exception as e:
            LOG.warning("Frame source failed: %s", e)
        if not stop.is_set():
            LOG.info("Frame source ended; closing stream clients")
            with self._lock:
                clients = list(self._clients)
            for client in clients:
                client.close()

    def publish(self, frame: EncodedFrame) -> None:
        with self._lock:
            if frame.is_config:
                self._latest_config = frame.payload
            clients = list(self._clients)
        for client in clients:
            if not client.offer(frame.payload):
                LOG.warning("Dropping stream client %s: not keeping up", client.address)
                self.unregister_client(client)

    # --- Clients ---

    def register_client(self, address: str) -> _Client:
        client = _Client(address, self.client_buffer)
        with self._lock:
            if self._latest_config is not None:
                client.offer(self._latest_config)
            self._clients.append(client)
        LOG.info("Stream client connected: %s", address)
        return client

    def unregister_client(self, client: _Client) -> None:
        with self._lock:
            try:
                self._clients.remove(client)
            except ValueError:
                return
        client.close()
        LOG.info("Stream client disconnected: %s", client.address)
