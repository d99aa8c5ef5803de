import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)

# When frozen (PyInstaller) use the exe directory; otherwise use the directory
# of the main script so config.json stays alongside the app regardless of
# where the user launches it from.
if getattr(sys, 'frozen', False):
    APP_DIR = os.path.dirname(sys.executable)
else:
    APP_DIR = os.path.dirname(os.path.abspath(sys.argv[0]))

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_CONFIG = {
    "log_level": "INFO",
    "http_timeout": 5,  # seconds, description fetches and SOAP calls
    # SSDP / UPnP
    "ssdp_discovery_timeout": 5.0,  # overall listen window
    "ssdp_receive_timeout": 1.0,  # per recvfrom
    "ssdp_search_rounds": 3,
    "ssdp_round_delay": 0.2,
    "ssdp_mx": 3,
    "ssdp_fetch_details": True,
    # mDNS (Chromecast)
    "mdns_discovery_timeout": 5.0,  # 0 => until stop_discovery()
    "mdns_resolve_timeout_ms": 3000,
    # Streaming relay
    "stream_port": 8080,
    "relay_client_buffer": 256,  # frames queued per client before it is dropped
    # Miracast / WiFi Display
    "miracast_rtsp_port": 7236,
    "miracast_rtp_port_fallback": 15550,
    "miracast_accept_timeout": 30.0,
    "miracast_link_settle_seconds": 2.0,
    "miracast_session_timeout": 30,
    # Cast v2
    "cast_port": 8009,
    "cast_connect_timeout": 5.0,
    "cast_response_timeout": 2.0,
    "cast_heartbeat_interval": 3.0,
    "cast_app_id": "CC1AD845",  # Default Media Receiver
    # Session manager
    "dlna_settle_seconds": 0.5,
    "monitor_interval": 5.0,
    "monitor_max_failures": 3,
}


class ConfigManager:
    def __init__(self):
        self.config = self.load_config()

    def load_config(self):
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, 'r') as f:
                    loaded = json.load(f)
                    return self._apply_defaults(loaded)
            except Exception as e:
                LOG.warning("Error loading config %s: %s", CONFIG_FILE, e)
                return dict(DEFAULT_CONFIG)
        return dict(DEFAULT_CONFIG)

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = cfg if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def save_config(self):
        try:
            with open(CONFIG_FILE, 'w') as f:
                json.dump(self.config, f, indent=4)
        except Exception as e:
            LOG.warning("Error saving config %s: %s", CONFIG_FILE, e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()


def config_value(config, key: str):
    """Look up `key` in a dict or ConfigManager, falling back to DEFAULT_CONFIG."""
    default = DEFAULT_CONFIG.get(key)
    if config is None:
        return default
    value = config.get(key, default)
    return default if value is None else value
