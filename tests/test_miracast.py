import io
import socket
import struct
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from screencast.miracast import (
    MiracastSource,
    MiracastState,
    RtspRequest,
    build_rtsp_response,
    read_rtsp_request,
)
from screencast.models import EncodedFrame


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _read_response(reader):
    status = reader.readline().decode().strip()
    headers = {}
    while True:
        line = reader.readline().decode().strip()
        if not line:
            break
        key, _, value = line.partition(":")
        headers[key.strip()] = value.strip()
    body = reader.read(int(headers.get("Content-Length", "0")))
    return status, headers, body.decode()


class SinkHarness:
    """Plays the Miracast sink: RTSP client plus RTP receiver on loopback."""

    def __init__(self, source):
        self.rtp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.rtp.bind(("127.0.0.1", 0))
        self.rtp.settimeout(2.0)
        self.rtp_port = self.rtp.getsockname()[1]
        self.ctrl = socket.create_connection(("127.0.0.1", source.rtsp_port), timeout=5.0)
        self.reader = self.ctrl.makefile("rb")
        self.cseq = 0

    def request(self, method, headers=None, body=b""):
        self.cseq += 1
        lines = [f"{method} rtsp://localhost/wfd1.0 RTSP/1.0", f"CSeq: {self.cseq}"]
        for key, value in (headers or {}).items():
            lines.append(f"{key}: {value}")
        if body:
            lines.append(f"Content-Length: {len(body)}")
        self.ctrl.sendall(("\r\n".join(lines) + "\r\n\r\n").encode() + body)
        return _read_response(self.reader)

    def close(self):
        for s in (self.reader, self.ctrl, self.rtp):
            try:
                s.close()
            except OSError:
                pass


@pytest.fixture
def source():
    src = MiracastSource({"miracast_rtsp_port": 0, "miracast_accept_timeout": 5.0})
    assert src.start()
    yield src
    src.stop()


@pytest.fixture
def sink(source):
    harness = SinkHarness(source)
    assert _wait_for(lambda: source.state == MiracastState.SINK_CONNECTED)
    yield harness
    harness.close()


def test_read_rtsp_request_keeps_header_order_and_body():
    raw = b"SET_PARAMETER rtsp://x RTSP/1.0\r\nCSeq: 4\r\nContent-Type: text/parameters\r\nContent-Length: 11\r\n\r\nwfd_trigger\r\n"
    request = read_rtsp_request(io.BytesIO(raw))
    assert request.method == "SET_PARAMETER"
    assert list(request.headers) == ["CSeq", "Content-Type", "Content-Length"]
    assert request.body == b"wfd_trigger"
    assert request.header("cseq") == "4"


def test_read_rtsp_request_short_line_or_eof():
    assert read_rtsp_request(io.BytesIO(b"GARBAGE\r\n\r\n")) is None
    assert read_rtsp_request(io.BytesIO(b"")) is None


def test_build_rtsp_response():
    resp = build_rtsp_response("7", 501, "Not Implemented")
    assert resp == b"RTSP/1.0 501 Not Implemented\r\nCSeq: 7\r\n\r\n"


def test_setup_without_client_port_uses_fallback():
    src = MiracastSource({"miracast_rtp_port_fallback": 15550})
    resp = src.handle_request(RtspRequest("SETUP", "rtsp://x", "RTSP/1.0", {"CSeq": "3"}))
    assert src.sink_rtp_port == 15550
    assert b"Transport: RTP/AVP/UDP;unicast;server_port=15550" in resp


def test_unknown_method_is_501():
    src = MiracastSource()
    resp = src.handle_request(RtspRequest("RECORD", "*", "RTSP/1.0", {"CSeq": "9"}))
    assert resp.startswith(b"RTSP/1.0 501 Not Implemented\r\nCSeq: 9\r\n")


def test_capability_exchange_and_streaming(source, sink):
    status, headers, _ = sink.request("OPTIONS", {"Require": "org.wfa.wfd1.0"})
    assert status == "RTSP/1.0 200 OK"
    assert headers["CSeq"] == "1"
    assert headers["Public"] == "OPTIONS, GET_PARAMETER, SET_PARAMETER, SETUP, PLAY, PAUSE, TEARDOWN"

    status, headers, body = sink.request("GET_PARAMETER", {"Content-Type": "text/parameters"},
                                         b"wfd_video_formats\r\nwfd_audio_codecs\r\n")
    assert headers["CSeq"] == "2"
    assert "wfd_video_formats: 00 00 03 10 0001FFFF 1FFFFFFF 00000FFF 00 0000 0000 00 none none" in body
    assert "wfd_audio_codecs: LPCM 00000003 00" in body
    assert f"wfd_client_rtp_ports: RTP/AVP/UDP;unicast {source.rtp_port} 0 mode=play" in body

    status, headers, _ = sink.request("SET_PARAMETER", {"Content-Type": "text/parameters"}, b"wfd_trigger_method: SETUP\r\n")
    assert status.endswith("200 OK")
    assert headers["CSeq"] == "3"

    transport = f"RTP/AVP/UDP;unicast;client_port={sink.rtp_port}"
    status, headers, _ = sink.request("SETUP", {"Transport": transport})
    assert headers["Session"] == f"{source.session_id};timeout=30"
    assert headers["Transport"] == f"{transport};server_port={source.rtp_port}"
    assert source.sink_rtp_port == sink.rtp_port

    # Nothing goes out before PLAY.
    assert source.send_frame(EncodedFrame(b"early", 0)) is False

    status, _, _ = sink.request("PLAY")
    assert status.endswith("200 OK")
    assert source.state == MiracastState.STREAMING

    assert source.send_frame(EncodedFrame(b"\x00\x00\x00\x01key", 0, is_key_frame=True))
    assert source.send_frame(EncodedFrame(b"delta", 33333))

    first, _ = sink.rtp.recvfrom(2048)
    second, _ = sink.rtp.recvfrom(2048)
    v, mpt, seq, ts, ssrc = struct.unpack("!BBHII", first[:12])
    assert (v, mpt, seq, ts) == (0x80, 0x80 | 33, 0, 3000)
    assert first[12:] == b"\x00\x00\x00\x01key"
    v2, mpt2, seq2, ts2, ssrc2 = struct.unpack("!BBHII", second[:12])
    assert (mpt2, seq2, ts2, ssrc2) == (33, 1, 6000, ssrc)
    assert second[12:] == b"delta"

    status, _, _ = sink.request("PAUSE")
    assert status.endswith("200 OK")
    assert source.send_frame(EncodedFrame(b"paused", 66666)) is False


def test_unsupported_method_keeps_session(source, sink):
    status, headers, _ = sink.request("RECORD")
    assert status == "RTSP/1.0 501 Not Implemented"
    status, headers, _ = sink.request("OPTIONS")
    assert headers["CSeq"] == "2"


def test_teardown_stops_source(source, sink):
    status, headers, _ = sink.request("TEARDOWN")
    assert status.endswith("200 OK")
    assert _wait_for(lambda: source.state == MiracastState.STOPPED)
    assert sink.reader.readline() == b""


def test_malformed_request_line_ends_session(source, sink):
    sink.ctrl.sendall(b"HELLO\r\n\r\n")
    assert _wait_for(lambda: source.state == MiracastState.STOPPED)
    assert source.send_frame(EncodedFrame(b"x", 0)) is False


def test_accept_timeout_releases_listener():
    src = MiracastSource({"miracast_rtsp_port": 0, "miracast_accept_timeout": 0.2})
    assert src.start()
    port = src.rtsp_port
    assert _wait_for(lambda: src.state == MiracastState.STOPPED)
    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1.0)


def test_stop_is_idempotent():
    src = MiracastSource({"miracast_rtsp_port": 0})
    src.stop()
    assert src.start()
    assert src.start() is False
    src.stop()
    src.stop()
    assert src.state == MiracastState.STOPPED


def test_stream_frames_stops_with_source(source):
    source.stop()
    assert source.stream_frames(EncodedFrame(b"x", i) for i in range(5)) == 0
