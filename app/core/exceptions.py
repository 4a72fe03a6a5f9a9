"""
Domain exceptions raised by the device layer.

Connectivity problems are never retried inside a sync step; callers decide.
Protocol problems fail the current step without touching saved punches.
"""
import enum
from typing import Optional


class ConnectionFailure(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    REFUSED = "REFUSED"
    UNREACHABLE = "UNREACHABLE"
    HIGH_LATENCY = "HIGH_LATENCY"
    OTHER = "OTHER"


class DeviceError(Exception):
    """Base class for terminal communication errors"""

    def __init__(self, message: str, device_alias: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.device_alias = device_alias


class DeviceConnectionError(DeviceError):
    """The terminal could not be reached or a session could not be opened"""

    def __init__(self, message: str, kind: ConnectionFailure = ConnectionFailure.OTHER, device_alias: Optional[str] = None):
        super().__init__(message, device_alias)
        self.kind = kind


class DeviceProtocolError(DeviceError):
    """The terminal answered with something unexpected"""
