"""
Device client: one protocol session to one biometric terminal (pyzk).

All blocking calls carry a timeout. disconnect() never raises.
"""
import errno
import logging
import socket
import struct
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from zk import ZK
from zk.exception import ZKError, ZKNetworkError

from app.core.config import settings
from app.core.exceptions import ConnectionFailure, DeviceConnectionError, DeviceProtocolError
from app.schemas.device import DeviceProfile, Reachability

_log = logging.getLogger(__name__)

# Attribute names read off pyzk Attendance objects into the generic raw record
ATTENDANCE_FIELDS = ("uid", "user_id", "timestamp", "status", "punch")

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN}


def _error_chain(exc: BaseException):
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        yield exc
        exc = exc.__cause__ or exc.__context__


def classify_connection_error(exc: BaseException) -> ConnectionFailure:
    """Map a transport/protocol exception to a connection failure kind."""
    for err in _error_chain(exc):
        if isinstance(err, (socket.timeout, TimeoutError)):
            return ConnectionFailure.TIMEOUT
        if isinstance(err, ConnectionRefusedError):
            return ConnectionFailure.REFUSED
        if isinstance(err, socket.gaierror):
            return ConnectionFailure.UNREACHABLE
        if isinstance(err, OSError) and err.errno in _UNREACHABLE_ERRNOS:
            return ConnectionFailure.UNREACHABLE

    # pyzk re-raises socket errors as ZKNetworkError(str(e)); fall back to the text
    text = str(exc).lower()
    if "timed out" in text or "timeout" in text:
        return ConnectionFailure.TIMEOUT
    if "refused" in text:
        return ConnectionFailure.REFUSED
    if (
        "unreachable" in text
        or "no route" in text
        or "name or service not known" in text
        or "nodename nor servname" in text
        or "can't reach device" in text
        or "getaddrinfo" in text
    ):
        return ConnectionFailure.UNREACHABLE
    return ConnectionFailure.OTHER


_FAILURE_MESSAGES = {
    ConnectionFailure.TIMEOUT: "Connection timed out",
    ConnectionFailure.REFUSED: "Connection refused",
    ConnectionFailure.UNREACHABLE: "Host not found or unreachable",
    ConnectionFailure.OTHER: "Connection failed",
}


def _attendance_to_record(attendance: Any) -> Dict[str, Any]:
    return {name: getattr(attendance, name, None) for name in ATTENDANCE_FIELDS}


class DeviceClient:
    """Owns a single session to one terminal described by a DeviceProfile"""

    def __init__(self, profile: DeviceProfile, connect_timeout: Optional[int] = None):
        self.profile = profile
        self.connect_timeout = connect_timeout or settings.DEVICE_CONNECT_TIMEOUT
        self._conn = None

    @property
    def label(self) -> str:
        return f"{self.profile.alias} ({self.profile.ip}:{self.profile.port})"

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def probe(self, timeout: Optional[float] = None, latency_ceiling_ms: Optional[int] = None) -> Reachability:
        """
        Cheap reachability check: TCP connect-and-close, no protocol session.

        A probe slower than the latency ceiling reports the device as unreachable.
        """
        timeout = timeout or settings.DEVICE_PROBE_TIMEOUT
        ceiling = latency_ceiling_ms or settings.DEVICE_LATENCY_CEILING_MS
        if not self.profile.ip:
            return Reachability(reachable=False, error="Device has no network address", kind=ConnectionFailure.UNREACHABLE)

        started = time.monotonic()
        try:
            with socket.create_connection((self.profile.ip, self.profile.port), timeout=timeout):
                pass
        except OSError as e:
            latency_ms = int((time.monotonic() - started) * 1000)
            kind = classify_connection_error(e)
            _log.warning("Probe failed for %s: %s (%s)", self.label, e, kind.value)
            return Reachability(reachable=False, latency_ms=latency_ms, error=f"{_FAILURE_MESSAGES[kind]}: {e}", kind=kind)

        latency_ms = int((time.monotonic() - started) * 1000)
        if latency_ms > ceiling:
            message = f"High latency: {latency_ms}ms (threshold: {ceiling}ms)"
            _log.warning("Probe for %s: %s", self.label, message)
            return Reachability(
                reachable=False, latency_ms=latency_ms, error=message, kind=ConnectionFailure.HIGH_LATENCY,
            )
        return Reachability(reachable=True, latency_ms=latency_ms)

    def is_reachable(self) -> bool:
        return self.probe().reachable

    def connect(self) -> "DeviceClient":
        """
        Open a protocol session.

        Raises:
            DeviceConnectionError: with kind TIMEOUT / REFUSED / UNREACHABLE / OTHER
            DeviceProtocolError: the terminal answered the handshake with a malformed reply
        """
        if self._conn is not None:
            return self
        if not self.profile.ip:
            raise DeviceConnectionError(
                f"Device {self.profile.alias} has no network address",
                kind=ConnectionFailure.UNREACHABLE,
                device_alias=self.profile.alias,
            )

        zk = ZK(
            self.profile.ip,
            port=self.profile.port,
            timeout=self.connect_timeout,
            password=self.profile.comm_password or 0,
            force_udp=self.profile.connect_type == 0,
            ommit_ping=True,
        )
        try:
            self._conn = zk.connect()
        except (ZKError, OSError) as e:
            kind = classify_connection_error(e)
            _log.warning("Connect failed for %s: %s (%s)", self.label, e, kind.value)
            raise DeviceConnectionError(
                f"{_FAILURE_MESSAGES[kind]} to {self.label}: {e}",
                kind=kind,
                device_alias=self.profile.alias,
            ) from e
        except (struct.error, ValueError, TypeError, IndexError) as e:
            _log.warning("Malformed handshake from %s: %s", self.label, e)
            raise DeviceProtocolError(
                f"Connecting to {self.label} failed: malformed reply ({e})",
                device_alias=self.profile.alias,
            ) from e
        _log.info("Connected to %s", self.label)
        return self

    def _require_conn(self):
        if self._conn is None:
            raise DeviceConnectionError(
                f"Not connected to {self.label}",
                kind=ConnectionFailure.OTHER,
                device_alias=self.profile.alias,
            )
        return self._conn

    def _call(self, what: str, fn, *args):
        """Run one protocol call, translating pyzk/socket failures into device errors"""
        conn = self._require_conn()
        try:
            return fn(conn, *args)
        except (ZKNetworkError, OSError) as e:
            raise DeviceConnectionError(
                f"{what} failed on {self.label}: {e}",
                kind=classify_connection_error(e),
                device_alias=self.profile.alias,
            ) from e
        except (ZKError, struct.error, ValueError, TypeError, IndexError) as e:
            raise DeviceProtocolError(
                f"{what} failed on {self.label}: {e}",
                device_alias=self.profile.alias,
            ) from e

    def fetch_punches(self) -> List[Dict[str, Any]]:
        """Read the full punch list as generic key-value records."""
        attendances = self._call("Reading attendance", lambda conn: conn.get_attendance()) or []
        records = [_attendance_to_record(a) for a in attendances]
        _log.info("Fetched %d punches from %s", len(records), self.label)
        return records

    def set_clock(self, when: datetime) -> None:
        """Set the terminal's wall clock."""
        self._call("Setting time", lambda conn, ts: conn.set_time(ts), when)
        _log.info("Clock set on %s to %s", self.label, when.isoformat(sep=" "))

    def get_device_info(self) -> Dict[str, Any]:
        """Serial, firmware and storage counters reported by the terminal."""
        def read(conn):
            conn.read_sizes()
            return {
                "serial_number": conn.get_serialnumber(),
                "firmware_version": conn.get_firmware_version(),
                "device_name": conn.get_device_name(),
                "user_count": getattr(conn, "users", 0) or 0,
                "fingerprint_count": getattr(conn, "fingers", 0) or 0,
                "face_count": getattr(conn, "faces", 0) or 0,
                "log_count": getattr(conn, "records", 0) or 0,
            }

        return self._call("Reading device info", read)

    def disconnect(self) -> None:
        """Close the session; safe to call repeatedly or after a transport failure."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.disconnect()
        except Exception as e:  # transport may already be gone
            _log.debug("Ignoring disconnect error for %s: %s", self.label, e)

    def __enter__(self) -> "DeviceClient":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()
