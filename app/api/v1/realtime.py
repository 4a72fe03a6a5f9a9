"""
Realtime watch endpoints
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.constants import NO_AUTH_RESULT_MESSAGE
from app.core.deps import get_db, get_session_registry
from app.schemas.realtime import (
    AuthenticateRequest,
    AuthenticateResponse,
    LastAuthResponse,
    WatchActionResponse,
    WatchRequest,
    WatchStatus,
)
from app.services.device_service import get_device
from app.services.realtime_watch import SessionRegistry, authenticate_login

router = APIRouter()


@router.post("/start-listening", response_model=WatchActionResponse)
def start_listening_endpoint(
    request: WatchRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Start watching a device for badge-ins; starting twice is a no-op"""
    profile = get_device(db, request.machine_id)
    if not registry.start(profile):
        return WatchActionResponse(
            success=True,
            message=f"Already listening on {profile.alias}",
            machine_id=profile.id,
            already_active=True,
        )
    return WatchActionResponse(success=True, message=f"Started listening on {profile.alias}", machine_id=profile.id)


@router.post("/stop-listening", response_model=WatchActionResponse)
def stop_listening_endpoint(
    request: WatchRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Stop watching a device and clear its watermark and last auth result"""
    if not registry.stop(request.machine_id):
        return WatchActionResponse(
            success=False,
            message=f"Device {request.machine_id} is not being watched",
            machine_id=request.machine_id,
        )
    return WatchActionResponse(success=True, message="Stopped listening", machine_id=request.machine_id)


@router.get("/status", response_model=WatchStatus)
async def watch_status_endpoint(registry: SessionRegistry = Depends(get_session_registry)):
    """Active watches with poll times, watermarks and auth results"""
    return registry.status()


@router.get("/last-auth", response_model=LastAuthResponse)
async def last_auth_endpoint(
    machine_id: int = Query(..., gt=0, description="Watched device"),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Most recent badge-in authentication for a device (kept until the watch stops)"""
    result = registry.last_auth(machine_id)
    if result is None:
        return LastAuthResponse(success=False, message=NO_AUTH_RESULT_MESSAGE)
    return LastAuthResponse(success=True, result=result)


@router.post("/authenticate", response_model=AuthenticateResponse)
def authenticate_endpoint(request: AuthenticateRequest, db: Session = Depends(get_db)):
    """Issue a login token for a user seen at a terminal"""
    return authenticate_login(db, request.machine_id, request.user_id, request.login_time)
