#!/usr/bin/env python
"""Command line entry point.

    python main.py discover [--timeout 5]
    python main.py cast <device-id-or-name> --file capture.h264
"""

import argparse
import logging
import time

from screencast.config import ConfigManager
from screencast.discovery import DiscoveryCoordinator
from screencast.external import IterableFrameSource
from screencast.models import EncodedFrame, Error, is_active
from screencast.session import CastSessionManager

LOG = logging.getLogger("screencast")


def _setup_logging(config, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format='%(asctime)s.%(msecs)03d [%(name)s] %(message)s', datefmt='%H:%M:%S')


def file_frames(path: str, chunk_size: int = 64 * 1024, fps: float = 30.0):
    """Replay an already encoded stream file as paced frames.

    The first chunk carries the stream header, so it is flagged as config for
    clients that join late.
    """
    interval = 1.0 / fps if fps > 0 else 0.0
    pts = 0
    first = True
    with open(path, "rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                return
            yield EncodedFrame(chunk, pts, is_key_frame=first, is_config=first)
            first = False
            pts += int(interval * 1_000_000)
            if interval:
                time.sleep(interval)


def cmd_discover(config, args) -> int:
    coordinator = DiscoveryCoordinator(config)
    devices = coordinator.discover_all(timeout=args.timeout)
    if not devices:
        print("No devices found.")
        return 1
    for device in devices:
        extra = f" ({device.model_name})" if device.model_name else ""
        print(f"{device.id}\t{device.display_name}{extra}\t{device.address}")
    return 0


def cmd_cast(config, args) -> int:
    coordinator = DiscoveryCoordinator(config)
    devices = coordinator.discover_all(timeout=args.timeout)
    wanted = args.device.lower()
    device = next((d for d in devices if d.id == args.device or d.name.lower() == wanted), None)
    if device is None:
        print(f"Device not found: {args.device}")
        return 1

    capture = IterableFrameSource(file_frames(args.file, fps=args.fps))
    manager = CastSessionManager(config, capture=capture)
    manager.add_listener(lambda state: print(f"State: {state}"))
    manager.start()
    try:
        if not manager.start_casting(device):
            return 1
        print("Casting. Press Ctrl+C to stop.")
        while is_active(manager.state):
            time.sleep(0.5)
        return 1 if isinstance(manager.state, Error) else 0
    except KeyboardInterrupt:
        LOG.info("Interrupted")
        return 0
    finally:
        manager.shutdown()


def main() -> int:
    ap = argparse.ArgumentParser(description="Cast to DLNA, Chromecast and Miracast receivers.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    sub = ap.add_subparsers(dest="command", required=True)

    p_discover = sub.add_parser("discover", help="List devices on the local network.")
    p_discover.add_argument("--timeout", type=float, default=5.0)
    p_discover.set_defaults(func=cmd_discover)

    p_cast = sub.add_parser("cast", help="Stream an encoded file to a device.")
    p_cast.add_argument("device", help="Device id or name, as printed by `discover`.")
    p_cast.add_argument("--file", required=True, help="Raw encoded video stream to send.")
    p_cast.add_argument("--fps", type=float, default=30.0)
    p_cast.add_argument("--timeout", type=float, default=5.0, help="Discovery window in seconds.")
    p_cast.set_defaults(func=cmd_cast)

    args = ap.parse_args()
    config = ConfigManager()
    _setup_logging(config, args.verbose)
    return args.func(config, args)


if __name__ == "__main__":
    raise SystemExit(main())
