"""
Scripted stand-ins for biometric terminals
"""
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.exceptions import ConnectionFailure, DeviceConnectionError
from app.schemas.device import DeviceProfile, Reachability


class FakeDevice:
    """Scripted behaviour of one terminal"""

    def __init__(self):
        self.records: List[Dict[str, Any]] = []
        self.reachable = True
        self.latency_ms = 3
        self.connect_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.info: Dict[str, Any] = {
            "serial_number": "SN-LIVE",
            "firmware_version": "Ver 6.60",
            "device_name": "F18",
            "user_count": 12,
            "fingerprint_count": 20,
            "face_count": 0,
            "log_count": 0,
        }
        self.clock: Optional[datetime] = None
        self.connects = 0
        self.disconnects = 0
        self.polls = 0


class FakeDeviceClient:
    """Stands in for DeviceClient; behaviour comes from the fleet entry for the profile id"""

    def __init__(self, profile: DeviceProfile, device: FakeDevice):
        self.profile = profile
        self.device = device
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def probe(self, timeout=None, latency_ceiling_ms=None) -> Reachability:
        if not self.device.reachable:
            return Reachability(
                reachable=False, latency_ms=5000, error="Connection timed out: timed out", kind=ConnectionFailure.TIMEOUT,
            )
        return Reachability(reachable=True, latency_ms=self.device.latency_ms)

    def is_reachable(self) -> bool:
        return self.probe().reachable

    def connect(self):
        if self.device.connect_error is not None:
            raise self.device.connect_error
        self.device.connects += 1
        self._connected = True
        return self

    def fetch_punches(self) -> List[Dict[str, Any]]:
        self.device.polls += 1
        if self.device.fetch_error is not None:
            raise self.device.fetch_error
        return [dict(r) for r in self.device.records]

    def set_clock(self, when: datetime) -> None:
        self.device.clock = when

    def get_device_info(self) -> Dict[str, Any]:
        info = dict(self.device.info)
        info["log_count"] = len(self.device.records)
        return info

    def disconnect(self) -> None:
        if self._connected:
            self.device.disconnects += 1
        self._connected = False


class FakeFleet:
    """Client factory over scripted terminals keyed by device id"""

    def __init__(self):
        self.devices: Dict[int, FakeDevice] = {}

    def __getitem__(self, device_id: int) -> FakeDevice:
        return self.devices.setdefault(device_id, FakeDevice())

    def __call__(self, profile: DeviceProfile) -> FakeDeviceClient:
        return FakeDeviceClient(profile, self[profile.id])

    def refuse(self, device_id: int) -> None:
        self[device_id].connect_error = DeviceConnectionError(
            "Connection refused to test device", kind=ConnectionFailure.REFUSED
        )


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll predicate until true or timeout"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def punch_record(user_id: str, timestamp: datetime, punch: Optional[int] = 0, uid: int = 1, status: int = 1) -> Dict[str, Any]:
    """Raw record shaped like the device client's output"""
    return {"uid": uid, "user_id": user_id, "timestamp": timestamp, "status": status, "punch": punch}
