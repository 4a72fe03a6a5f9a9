"""
Punch schemas: raw → normalized → resolved, unregistered badges and stored records.
"""
import enum
from datetime import date
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from app.constants import CHECK_TYPE_IN, CHECK_TYPE_OUT


class PunchDirection(str, enum.Enum):
    IN = CHECK_TYPE_IN
    OUT = CHECK_TYPE_OUT


class NormalizedPunch(BaseModel):
    """Canonical punch: stable names, zone-naive wall-clock timestamp, inferred direction"""
    badge_number: Optional[str] = Field(None, description="Identifier the user presented at the terminal")
    timestamp_local: str = Field(..., description="YYYY-MM-DD HH:MM:SS.fff, device wall clock")
    direction: PunchDirection
    verify_mode: int = 1
    work_code: int = 0
    reserved: str = ""
    device_alias: Optional[str] = None
    device_serial: Optional[str] = None
    source_device_id: Optional[str] = None
    device_user_id: Optional[str] = None
    user_sn: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ResolvedIdentity(BaseModel):
    user_id: int
    name: str
    badge_number: str
    department: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ResolvedPunch(NormalizedPunch):
    """A normalized punch whose badge matched a directory user; only these are persisted"""
    user_id: int
    user_name: str


class UnregisteredEmployee(BaseModel):
    badge_number: str
    name: str
    log_count: int
    first_log_time: Optional[str] = None
    last_log_time: Optional[str] = None
    device_name: Optional[str] = None
    logs: List[NormalizedPunch] = Field(default_factory=list)


class FetchLogsResponse(BaseModel):
    """Live punches read from one terminal (nothing persisted)"""
    machine_id: int
    machine_alias: str
    logs: List[NormalizedPunch]
    total_logs: int
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class DeviceFetchResult(BaseModel):
    machine_id: int
    machine_alias: str
    success: bool
    logs: List[NormalizedPunch] = Field(default_factory=list)
    total_logs: int = 0
    error: Optional[str] = None


class FetchAllLogsResponse(BaseModel):
    results: List[DeviceFetchResult]
    total_machines: int
    successful_machines: int
    total_logs: int
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class StoredRecordOut(BaseModel):
    """Attendance record joined with the directory entry it belongs to"""
    id: int
    user_id: int
    name: Optional[str] = None
    badge_number: Optional[str] = None
    department: Optional[str] = None
    check_time: str
    check_type: str
    verify_code: int
    sensor_id: str
    work_code: int
    sn: Optional[str] = None


class StoredLogsResponse(BaseModel):
    logs: List[StoredRecordOut]
    total_logs: int
    machine_id: Optional[int] = None
    machine_alias: Optional[str] = None
    date_from: date
    date_to: date
