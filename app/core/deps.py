"""
Dependencies for FastAPI endpoints
"""
from typing import Callable, Generator
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import sessionmaker
from app.db.session import SessionLocal
from app.services.device_client import DeviceClient
from app.services.realtime_watch import SessionRegistry
from app.services.sync_orchestrator import SyncOrchestrator


def get_db() -> Generator:
    """Dependency for getting database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for work that runs outside the request thread (fan-out workers)"""
    return SessionLocal


def get_device_client_factory() -> Callable:
    """Factory building a DeviceClient from a DeviceProfile; overridden with fakes in tests"""
    return DeviceClient


def get_session_registry(request: Request) -> SessionRegistry:
    """Process-wide realtime watch registry created at startup"""
    registry = getattr(request.app.state, "session_registry", None)
    if registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime watch registry is not running",
        )
    return registry


def get_sync_orchestrator(
    session_factory: sessionmaker = Depends(get_session_factory),
    client_factory: Callable = Depends(get_device_client_factory),
) -> SyncOrchestrator:
    """Orchestrator wired to the request's session and device client factories"""
    return SyncOrchestrator(session_factory, client_factory)
