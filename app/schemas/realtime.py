"""
Realtime watch schemas.
"""
from datetime import datetime
from typing import Optional, Dict, List
from pydantic import BaseModel, Field


class WatchRequest(BaseModel):
    machine_id: int = Field(..., gt=0, description="Device to start/stop watching")


class WatchActionResponse(BaseModel):
    success: bool
    message: str
    machine_id: int
    already_active: bool = False


class AuthUser(BaseModel):
    user_id: int
    name: str
    badge_number: str
    department: Optional[str] = None


class AuthResult(BaseModel):
    """Authentication synthesized for the user who just badged in at a watched device"""
    success: bool = True
    user: AuthUser
    token: str
    login_time: str


class LastAuthResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    result: Optional[AuthResult] = None


class WatchStatus(BaseModel):
    active_devices: List[int]
    started_at: Dict[int, datetime]
    last_poll_times: Dict[int, Optional[datetime]]
    last_processed_times: Dict[int, Optional[datetime]]
    auth_results: Dict[int, AuthResult]
    total_listeners: int


class AuthenticateRequest(BaseModel):
    machine_id: int = Field(..., gt=0)
    user_id: int = Field(..., gt=0)
    login_time: str = Field(..., min_length=1)


class AuthenticateResponse(BaseModel):
    success: bool
    message: str
    user: AuthUser
    token: str
