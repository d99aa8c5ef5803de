class CastError(Exception):
    """Base exception for casting errors."""
    pass


class DeviceNotFoundError(CastError):
    """Device could not be found on the network."""
    pass


class CastConnectionError(CastError):
    """Failed to connect to device."""
    pass


class PlaybackError(CastError):
    """Failed to start or control playback."""
    pass


class ProtocolError(CastError):
    """Peer sent something the session cannot continue from."""
    pass
