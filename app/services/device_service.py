"""
Device service: profile lookup plus device-level operations (status, info, clock, ad-hoc test).
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import DeviceError
from app.models.device import Device
from app.schemas.device import (
    DeviceProfile,
    DeviceStatusOut,
    DeviceInfoOut,
    ConnectionTestRequest,
    ConnectionTestResponse,
    SyncTimeResponse,
)
from app.services.device_client import DeviceClient
from app.services.punch_store import count_stored_records
from app.utils.datetime_utils import now_local, now_utc

_log = logging.getLogger(__name__)

ClientFactory = Callable[[DeviceProfile], DeviceClient]


def sensor_id_for(profile: DeviceProfile) -> str:
    """Identifier stored in attendance_records.sensor_id for punches from this device."""
    return str(profile.machine_number if profile.machine_number is not None else profile.id)


def list_enabled_devices(db: Session) -> List[DeviceProfile]:
    """
    Enabled device profiles ordered by alias

    Enabled rows without a network address are skipped (and logged) since nothing can reach them.
    """
    profiles = []
    for device in db.query(Device).filter(Device.enabled.is_(True)).order_by(Device.alias).all():
        if not device.ip:
            _log.warning("Enabled device %s (id=%s) has no address; skipping", device.alias, device.id)
            continue
        profiles.append(DeviceProfile.model_validate(device))
    return profiles


def get_device(db: Session, device_id: int, require_enabled: bool = True) -> DeviceProfile:
    """
    Load one device profile

    Raises:
        HTTPException 404: device missing (or disabled when require_enabled)
        HTTPException 422: enabled device without a network address
    """
    query = db.query(Device).filter(Device.id == device_id)
    if require_enabled:
        query = query.filter(Device.enabled.is_(True))
    device = query.first()
    if not device:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found or disabled" if require_enabled else "Device not found",
        )
    if device.enabled and not device.ip:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Device {device.alias} is enabled but has no network address",
        )
    return DeviceProfile.model_validate(device)


def check_status(profile: DeviceProfile, client_factory: ClientFactory) -> DeviceStatusOut:
    """Probe one device; slow or failed probes report offline with the reason."""
    reach = client_factory(profile).probe()
    return DeviceStatusOut(
        id=profile.id,
        alias=profile.alias,
        ip=profile.ip,
        port=profile.port,
        enabled=profile.enabled,
        status="online" if reach.reachable else "offline",
        ping_time=reach.latency_ms,
        error_message=reach.error,
        failure_kind=reach.kind,
        last_checked=now_utc(),
        user_count=profile.user_count,
        finger_count=profile.finger_count,
        firmware_version=profile.firmware_version,
    )


def check_all_status(profiles: List[DeviceProfile], client_factory: ClientFactory) -> List[DeviceStatusOut]:
    """Probe all devices concurrently; result order follows the input."""
    if not profiles:
        return []
    with ThreadPoolExecutor(max_workers=min(len(profiles), settings.SYNC_MAX_WORKERS)) as pool:
        return list(pool.map(lambda p: check_status(p, client_factory), profiles))


def _offline_info(profile: DeviceProfile, database_log_count: int) -> DeviceInfoOut:
    return DeviceInfoOut(
        machine_id=profile.id,
        machine_alias=profile.alias,
        ip=profile.ip,
        port=profile.port,
        is_online=False,
        database_log_count=database_log_count,
        serial_number=profile.serial_number or "Unknown",
        firmware_version=profile.firmware_version or "Unknown",
    )


def read_device_info(profile: DeviceProfile, client_factory: ClientFactory, database_log_count: int = 0) -> DeviceInfoOut:
    """Live counters from one device, falling back to stored metadata when it cannot be read."""
    client = client_factory(profile)
    if not client.probe().reachable:
        return _offline_info(profile, database_log_count)
    try:
        client.connect()
        info = client.get_device_info()
    except DeviceError as e:
        _log.warning("Device info unavailable for %s: %s", profile.alias, e)
        return _offline_info(profile, database_log_count)
    finally:
        client.disconnect()

    return DeviceInfoOut(
        machine_id=profile.id,
        machine_alias=profile.alias,
        ip=profile.ip,
        port=profile.port,
        is_online=True,
        user_count=info.get("user_count", 0),
        fingerprint_count=info.get("fingerprint_count", 0),
        face_count=info.get("face_count", 0),
        log_count=info.get("log_count", 0),
        database_log_count=database_log_count,
        serial_number=info.get("serial_number") or profile.serial_number,
        firmware_version=info.get("firmware_version") or profile.firmware_version,
    )


def read_all_device_info(db: Session, profiles: List[DeviceProfile], client_factory: ClientFactory) -> List[DeviceInfoOut]:
    """
    Device info for every profile, in parallel, each bounded by DEVICE_INFO_TIMEOUT

    A device exceeding its time limit is reported offline; its worker is left to finish on its own.
    """
    if not profiles:
        return []
    stored_counts = {p.id: count_stored_records(db, sensor_id_for(p)) for p in profiles}
    pool = ThreadPoolExecutor(max_workers=min(len(profiles), settings.SYNC_MAX_WORKERS))
    try:
        futures = [
            (p, pool.submit(read_device_info, p, client_factory, stored_counts[p.id]))
            for p in profiles
        ]
        results = []
        deadline = time.monotonic() + settings.DEVICE_INFO_TIMEOUT
        for profile, future in futures:
            try:
                results.append(future.result(timeout=max(0.0, deadline - time.monotonic())))
            except FutureTimeout:
                _log.warning("Device info timed out for %s", profile.alias)
                results.append(_offline_info(profile, stored_counts[profile.id]))
            except Exception:
                _log.exception("Device info failed for %s", profile.alias)
                results.append(_offline_info(profile, stored_counts[profile.id]))
        return results
    finally:
        pool.shutdown(wait=False)


def run_connection_test(request: ConnectionTestRequest, client_factory: ClientFactory) -> ConnectionTestResponse:
    """
    Ad-hoc connectivity test for an address that need not be registered

    Device problems are reported in the response, never raised.
    """
    profile = DeviceProfile(
        id=0,
        alias="Test Connection",
        ip=request.ip_address,
        port=request.port,
        comm_password=request.password,
    )
    started = time.monotonic()

    def elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    client = client_factory(profile)
    reach = client.probe()
    if not reach.reachable:
        return ConnectionTestResponse(
            success=False,
            message=f"Device {request.ip_address} is not reachable: {reach.error}",
            ping_time=elapsed(),
        )
    try:
        client.connect()
        try:
            client.get_device_info()
        except DeviceError as e:
            _log.info("Connected to %s but device info unavailable: %s", request.ip_address, e)
    except DeviceError as e:
        return ConnectionTestResponse(success=False, message=f"Connection failed: {e.message}", ping_time=elapsed())
    finally:
        client.disconnect()
    return ConnectionTestResponse(success=True, message="Connection successful", ping_time=elapsed())


def sync_time(profile: DeviceProfile, client_factory: ClientFactory, when: Optional[datetime] = None) -> SyncTimeResponse:
    """Set the terminal clock to server local time (or `when`)."""
    client = client_factory(profile)
    reach = client.probe()
    if not reach.reachable:
        return SyncTimeResponse(
            success=False,
            message=f"Device {profile.alias} ({profile.ip}) is not reachable: {reach.error}",
            machine_name=profile.alias,
        )
    when = when or now_local().replace(microsecond=0)
    try:
        client.connect()
        client.set_clock(when)
    except DeviceError as e:
        return SyncTimeResponse(success=False, message=f"Time sync failed: {e.message}", machine_name=profile.alias)
    finally:
        client.disconnect()
    return SyncTimeResponse(
        success=True,
        message=f"Time synchronized successfully. Machine time set to: {when.strftime('%Y-%m-%d %H:%M:%S')}",
        machine_name=profile.alias,
        synced_time=when,
    )
