"""
Main API router
"""
from fastapi import APIRouter

from app.api.v1 import (
    health,
    version,
    devices,
    realtime,
)

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(version.router, tags=["version"])
api_router.include_router(devices.router, prefix="/devices", tags=["devices"])
api_router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
