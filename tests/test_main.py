import sys
from pathlib import Path
from unittest.mock import patch

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

import main
from screencast.models import Device, DeviceType


def test_file_frames_flags_first_chunk(tmp_path):
    path = tmp_path / "capture.h264"
    path.write_bytes(b"\x00\x00\x00\x01" + b"a" * 10)

    frames = list(main.file_frames(str(path), chunk_size=6, fps=0))
    assert [f.payload for f in frames] == [b"\x00\x00\x00\x01aa", b"aaaaaa", b"aa"]
    assert frames[0].is_config and frames[0].is_key_frame
    assert not any(f.is_config for f in frames[1:])


def test_discover_prints_devices(capsys):
    tv = Device("tv-1", "Living Room", DeviceType.DLNA, "192.168.1.40", model_name="Bravia")
    with patch.object(main.DiscoveryCoordinator, "discover_all", return_value=[tv]), \
            patch.object(sys, "argv", ["screencast", "discover", "--timeout", "0"]):
        assert main.main() == 0
    out = capsys.readouterr().out
    assert "tv-1\tLiving Room [DLNA] (Bravia)\t192.168.1.40" in out


def test_cast_unknown_device(capsys):
    with patch.object(main.DiscoveryCoordinator, "discover_all", return_value=[]), \
            patch.object(sys, "argv", ["screencast", "cast", "nowhere", "--file", "x.h264", "--timeout", "0"]):
        assert main.main() == 1
    assert "Device not found: nowhere" in capsys.readouterr().out
