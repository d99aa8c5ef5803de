import http.client
import queue
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from screencast.models import EncodedFrame
from screencast.relay import CROSSDOMAIN_XML, StreamingRelay


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FrameFeed:
    """Frame sequence the test pushes into one frame at a time."""

    def __init__(self):
        self.q = queue.Queue()

    def push(self, payload, pts=0, is_config=False):
        self.q.put(EncodedFrame(payload, pts, is_key_frame=is_config, is_config=is_config))

    def end(self):
        self.q.put(None)

    def __iter__(self):
        while True:
            frame = self.q.get()
            if frame is None:
                return
            yield frame


@pytest.fixture
def relay():
    r = StreamingRelay({"relay_client_buffer": 64}, host="127.0.0.1", port=0)
    assert r.start()
    yield r
    r.stop()


def _get(relay, path):
    conn = http.client.HTTPConnection("127.0.0.1", relay.port, timeout=5)
    conn.request("GET", path)
    return conn, conn.getresponse()


def test_stream_url(relay):
    assert relay.get_stream_url() == f"http://127.0.0.1:{relay.port}/stream"


def test_crossdomain_health_and_404(relay):
    conn, resp = _get(relay, "/crossdomain.xml")
    assert resp.status == 200
    assert resp.read() == CROSSDOMAIN_XML
    conn.close()

    conn, resp = _get(relay, "/health")
    assert resp.status == 200
    assert resp.read() == b"ok"
    conn.close()

    conn, resp = _get(relay, "/nope")
    assert resp.status == 404
    conn.close()


def test_late_joiner_gets_config_then_live_frames(relay):
    feed = FrameFeed()
    relay.set_frame_source(feed)
    feed.push(b"CFG", 0, is_config=True)
    feed.push(b"old", 1)
    assert _wait_for(lambda: relay._latest_config == b"CFG")
    time.sleep(0.05)  # let "old" pass while nobody listens

    conn, resp = _get(relay, "/stream")
    try:
        assert resp.status == 200
        assert resp.getheader("Content-Type") == "video/mp4"
        assert resp.getheader("Transfer-Encoding") == "chunked"
        assert resp.getheader("Access-Control-Allow-Origin") == "*"
        assert resp.getheader("Cache-Control") == "no-cache"
        assert resp.getheader("TransferMode.DLNA.ORG") == "Streaming"
        assert resp.getheader("contentFeatures.dlna.org").startswith("DLNA.ORG_OP=01;DLNA.ORG_CI=0;DLNA.ORG_FLAGS=0170")

        feed.push(b"live1", 2)
        feed.push(b"live2", 3)
        assert resp.read(len(b"CFGlive1live2")) == b"CFGlive1live2"

        feed.end()
        assert resp.read() == b""
    finally:
        conn.close()


def test_clients_are_isolated(relay):
    conn_a, resp_a = _get(relay, "/stream")
    conn_b, resp_b = _get(relay, "/stream")
    assert _wait_for(lambda: relay.client_count() == 2)

    relay.publish(EncodedFrame(b"one", 0))
    assert resp_a.read(3) == b"one"
    assert resp_b.read(3) == b"one"

    conn_a.close()
    resp_a.close()
    for i in range(50):
        relay.publish(EncodedFrame(b"x" * 1024, i + 1))
        time.sleep(0.002)
    assert _wait_for(lambda: relay.client_count() == 1)
    assert resp_b.read(1024) == b"x" * 1024
    conn_b.close()


def test_overflowing_client_is_dropped_alone():
    relay = StreamingRelay({"relay_client_buffer": 2}, host="127.0.0.1", port=0)
    slow = relay.register_client("10.0.0.1")
    fast = relay.register_client("10.0.0.2")

    relay.publish(EncodedFrame(b"f1", 1))
    relay.publish(EncodedFrame(b"f2", 2))
    assert fast.queue.get_nowait() == b"f1"
    assert fast.queue.get_nowait() == b"f2"

    relay.publish(EncodedFrame(b"f3", 3))
    assert slow.closed.is_set()
    assert relay.client_count() == 1
    assert fast.queue.get_nowait() == b"f3"


def test_registered_client_starts_with_latest_config():
    relay = StreamingRelay(host="127.0.0.1", port=0)
    relay.publish(EncodedFrame(b"cfg-1", 0, is_config=True))
    relay.publish(EncodedFrame(b"cfg-2", 1, is_config=True))
    relay.publish(EncodedFrame(b"frame", 2))
    client = relay.register_client("10.0.0.3")
    assert client.queue.get_nowait() == b"cfg-2"
    assert client.queue.empty()


def test_stop_closes_clients_and_port():
    relay = StreamingRelay(host="127.0.0.1", port=0)
    assert relay.start()
    port = relay.port
    conn, resp = _get(relay, "/stream")
    assert _wait_for(lambda: relay.client_count() == 1)

    relay.stop()
    assert resp.read() == b""
    conn.close()
    assert not relay.is_running()
    with pytest.raises(OSError):
        http.client.HTTPConnection("127.0.0.1", port, timeout=1).request("GET", "/health")
