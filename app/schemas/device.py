"""
Device profile and device-level operation schemas.
"""
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from app.core.exceptions import ConnectionFailure
from app.models.device import DEFAULT_DEVICE_PORT


class DeviceProfile(BaseModel):
    """Immutable snapshot of a device row, safe to hand to worker threads"""
    id: int
    alias: str
    ip: Optional[str] = None
    port: int = DEFAULT_DEVICE_PORT
    connect_type: int = 1
    machine_number: Optional[int] = None
    enabled: bool = True
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    comm_password: int = 0
    user_count: Optional[int] = None
    finger_count: Optional[int] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)


class DeviceOut(BaseModel):
    """Device listing item (no credentials)"""
    id: int
    alias: str
    ip: Optional[str]
    port: int
    connect_type: int
    machine_number: Optional[int]
    enabled: bool
    serial_number: Optional[str]
    firmware_version: Optional[str]

    model_config = ConfigDict(from_attributes=True)


class DeviceListResponse(BaseModel):
    items: List[DeviceOut]
    total: int


class Reachability(BaseModel):
    """Outcome of a lightweight connect-and-close probe"""
    reachable: bool
    latency_ms: Optional[int] = None
    error: Optional[str] = None
    kind: Optional[ConnectionFailure] = None


class DeviceStatusOut(BaseModel):
    id: int
    alias: str
    ip: Optional[str]
    port: int
    enabled: bool
    status: str = Field(..., description="online / offline")
    ping_time: Optional[int] = Field(None, description="Probe latency in ms")
    error_message: Optional[str] = None
    failure_kind: Optional[ConnectionFailure] = None
    last_checked: datetime
    user_count: Optional[int] = None
    finger_count: Optional[int] = None
    firmware_version: Optional[str] = None


class DeviceInfoOut(BaseModel):
    """Live counters read from the terminal plus what the attendance store holds for it"""
    machine_id: int
    machine_alias: str
    ip: Optional[str]
    port: int
    is_online: bool
    user_count: int = 0
    fingerprint_count: int = 0
    face_count: int = 0
    log_count: int = 0
    database_log_count: int = 0
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None


class DeviceInfoListResponse(BaseModel):
    items: List[DeviceInfoOut]
    total: int
    message: str


class ConnectionTestRequest(BaseModel):
    ip_address: str = Field(..., min_length=1, description="Terminal IP or host name")
    port: int = Field(default=DEFAULT_DEVICE_PORT, gt=0, lt=65536)
    password: int = Field(default=0, ge=0, description="Terminal comm password")


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    ping_time: int = Field(..., description="Elapsed time in ms")


class SyncTimeResponse(BaseModel):
    success: bool
    message: str
    machine_name: str
    synced_time: Optional[datetime] = None
