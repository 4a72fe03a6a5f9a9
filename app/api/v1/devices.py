"""
Device endpoints: status, info, clock, live punches, stored records and sync runs.

Endpoints are plain `def` so blocking terminal I/O runs in the threadpool.
"""
from datetime import date
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.core.deps import get_db, get_device_client_factory, get_sync_orchestrator
from app.schemas.device import (
    ConnectionTestRequest,
    ConnectionTestResponse,
    DeviceInfoListResponse,
    DeviceListResponse,
    DeviceOut,
    DeviceStatusOut,
    SyncTimeResponse,
)
from app.schemas.punch import FetchAllLogsResponse, FetchLogsResponse, StoredLogsResponse
from app.schemas.sync import RunResult, SyncAllResult, SyncRequest
from app.services.device_service import (
    check_all_status,
    check_status,
    get_device,
    list_enabled_devices,
    read_all_device_info,
    run_connection_test,
    sensor_id_for,
    sync_time,
)
from app.services.punch_store import list_stored_records
from app.services.sync_orchestrator import SyncOrchestrator
from app.utils.sse import stream_progress

router = APIRouter()


def _date_range(start_date: Optional[date], end_date: Optional[date]) -> Tuple[Optional[date], Optional[date]]:
    if start_date and end_date and start_date > end_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="start_date must be on or before end_date",
        )
    return start_date, end_date


def _stored_range(start_date: Optional[date], end_date: Optional[date]) -> Tuple[date, date]:
    """Stored-record queries default to today on either open side."""
    start_date, end_date = _date_range(start_date, end_date)
    today = date.today()
    return start_date or end_date or today, end_date or start_date or today


# -- all devices ---------------------------------------------------------------------
# Fixed paths are declared before /{device_id} routes.


@router.get("", response_model=DeviceListResponse)
def list_devices_endpoint(db: Session = Depends(get_db)):
    """List enabled devices"""
    profiles = list_enabled_devices(db)
    return DeviceListResponse(items=[DeviceOut.model_validate(p) for p in profiles], total=len(profiles))


@router.get("/status/all", response_model=List[DeviceStatusOut])
def all_status_endpoint(
    db: Session = Depends(get_db),
    client_factory=Depends(get_device_client_factory),
):
    """Reachability of every enabled device"""
    return check_all_status(list_enabled_devices(db), client_factory)


@router.get("/device-info", response_model=DeviceInfoListResponse)
def device_info_endpoint(
    db: Session = Depends(get_db),
    client_factory=Depends(get_device_client_factory),
):
    """Live counters from every enabled device plus stored record counts"""
    items = read_all_device_info(db, list_enabled_devices(db), client_factory)
    online = sum(1 for item in items if item.is_online)
    return DeviceInfoListResponse(
        items=items,
        total=len(items),
        message=f"Retrieved info for {len(items)} devices ({online} online)",
    )


@router.post("/test-connection", response_model=ConnectionTestResponse)
def test_connection_endpoint(
    request: ConnectionTestRequest,
    client_factory=Depends(get_device_client_factory),
):
    """Ad-hoc connectivity test; device problems are reported, not raised"""
    return run_connection_test(request, client_factory)


@router.get("/logs/all", response_model=FetchAllLogsResponse)
def all_logs_endpoint(
    start_date: Optional[date] = Query(None, description="First day (inclusive)"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive)"),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Live punches from every enabled device (nothing persisted)"""
    start_date, end_date = _date_range(start_date, end_date)
    return orchestrator.fetch_all_logs(list_enabled_devices(db), start_date, end_date)


@router.get("/logs/database/all", response_model=StoredLogsResponse)
def all_stored_logs_endpoint(
    start_date: Optional[date] = Query(None, description="First day (inclusive), defaults to today"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive), defaults to today"),
    db: Session = Depends(get_db),
):
    """Stored attendance records from all devices"""
    start_date, end_date = _stored_range(start_date, end_date)
    logs = list_stored_records(db, start_date, end_date)
    return StoredLogsResponse(logs=logs, total_logs=len(logs), date_from=start_date, date_to=end_date)


@router.post("/sync/all", response_model=SyncAllResult)
def sync_all_endpoint(
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Synchronize every enabled device"""
    payload = payload or SyncRequest()
    return orchestrator.run_all(list_enabled_devices(db), payload.start_date, payload.end_date)


@router.get("/sync-all-sse")
def sync_all_stream_endpoint(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Synchronize every enabled device, streaming progress as Server-Sent Events"""
    start_date, end_date = _date_range(start_date, end_date)
    profiles = list_enabled_devices(db)
    return stream_progress(
        lambda progress: orchestrator.run_all(profiles, start_date, end_date, progress),
        name="sync-all-stream",
    )


# -- one device ----------------------------------------------------------------------


@router.get("/{device_id}/logs", response_model=FetchLogsResponse)
def device_logs_endpoint(
    device_id: int,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Live punches from one device (nothing persisted)"""
    start_date, end_date = _date_range(start_date, end_date)
    profile = get_device(db, device_id)
    logs = orchestrator.fetch_logs(profile, start_date, end_date)
    return FetchLogsResponse(
        machine_id=profile.id,
        machine_alias=profile.alias,
        logs=logs,
        total_logs=len(logs),
        date_from=start_date,
        date_to=end_date,
    )


@router.get("/{device_id}/status", response_model=DeviceStatusOut)
def device_status_endpoint(
    device_id: int,
    db: Session = Depends(get_db),
    client_factory=Depends(get_device_client_factory),
):
    """Reachability of one device"""
    return check_status(get_device(db, device_id), client_factory)


@router.post("/{device_id}/sync", response_model=RunResult)
def sync_device_endpoint(
    device_id: int,
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Synchronize one device (preview=true stops before saving)"""
    payload = payload or SyncRequest()
    profile = get_device(db, device_id)
    return orchestrator.run_one(profile, payload.start_date, payload.end_date, payload.preview)


@router.post("/{device_id}/fetch-logs", response_model=RunResult)
def preview_device_endpoint(
    device_id: int,
    payload: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Preview a sync: the punches that would be saved, without saving them"""
    payload = payload or SyncRequest()
    profile = get_device(db, device_id)
    return orchestrator.run_one(profile, payload.start_date, payload.end_date, preview=True)


@router.get("/{device_id}/sync-sse")
def sync_device_stream_endpoint(
    device_id: int,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    preview: bool = Query(False),
    db: Session = Depends(get_db),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Synchronize one device, streaming progress as Server-Sent Events"""
    start_date, end_date = _date_range(start_date, end_date)
    profile = get_device(db, device_id)
    return stream_progress(
        lambda progress: orchestrator.run_one(profile, start_date, end_date, preview, progress),
        name=f"sync-stream-{profile.id}",
    )


@router.post("/{device_id}/sync-time", response_model=SyncTimeResponse)
def sync_time_endpoint(
    device_id: int,
    db: Session = Depends(get_db),
    client_factory=Depends(get_device_client_factory),
):
    """Set the device clock to server local time"""
    return sync_time(get_device(db, device_id), client_factory)


@router.get("/{device_id}/logs/database", response_model=StoredLogsResponse)
def device_stored_logs_endpoint(
    device_id: int,
    start_date: Optional[date] = Query(None, description="First day (inclusive), defaults to today"),
    end_date: Optional[date] = Query(None, description="Last day (inclusive), defaults to today"),
    db: Session = Depends(get_db),
):
    """Stored attendance records for one device"""
    start_date, end_date = _stored_range(start_date, end_date)
    profile = get_device(db, device_id, require_enabled=False)
    logs = list_stored_records(db, start_date, end_date, sensor_id=sensor_id_for(profile))
    return StoredLogsResponse(
        logs=logs,
        total_logs=len(logs),
        machine_id=profile.id,
        machine_alias=profile.alias,
        date_from=start_date,
        date_to=end_date,
    )
