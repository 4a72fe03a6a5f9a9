"""
Biometric Attendance Sync - Main Application Entry Point
"""
import logging
from urllib.parse import urlparse, urlunparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException
from sqlalchemy.exc import OperationalError

from app.api.router import api_router
from app.core.config import settings
from app.core.errors import (
    http_exception_handler,
    validation_exception_handler,
    device_exception_handler,
    operational_error_handler,
    generic_exception_handler,
)
from app.core.exceptions import DeviceError
from app.core.logging import setup_logging
from app.db.session import SessionLocal
from app.services.realtime_watch import SessionRegistry

# Setup logging first
setup_logging()
logger = logging.getLogger(__name__)


def _mask_database_url(url: str) -> str:
    """Mask password in DATABASE_URL for safe logging; show full path for sqlite."""
    try:
        parsed = urlparse(url)
        if parsed.scheme.startswith("sqlite"):
            return url
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname or ''}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***"
    return url


# Create FastAPI app
app = FastAPI(
    title="Biometric Attendance Sync",
    description="Pulls punches from biometric terminals into the attendance store and watches terminals for badge-in logins",
    version=settings.VERSION or "1.0.0"
)

# Configure CORS - must be before other middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register exception handlers
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(DeviceError, device_exception_handler)
app.add_exception_handler(OperationalError, operational_error_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include all API routes under /api/v1
app.include_router(api_router, prefix="/api/v1")


@app.on_event("startup")
def startup_log_config() -> None:
    """Log DATABASE_URL at startup so it can be verified against Alembic."""
    masked = _mask_database_url(settings.DATABASE_URL)
    logger.info("DATABASE_URL (app): %s", masked)


@app.on_event("startup")
def start_session_registry() -> None:
    """Create the process-wide realtime watch registry (watches must be re-issued after a restart)."""
    app.state.session_registry = SessionRegistry(SessionLocal)
    logger.info(
        "Realtime watch registry ready (poll %.1fs, health %.1fs, window %.1fs)",
        settings.WATCH_POLL_INTERVAL, settings.WATCH_HEALTH_INTERVAL, settings.WATCH_WINDOW_SECONDS,
    )


@app.on_event("shutdown")
def stop_session_registry() -> None:
    """Stop every realtime watch loop."""
    registry = getattr(app.state, "session_registry", None)
    if registry is not None:
        registry.shutdown()
