"""
Sync run schemas: dedup/persist outcomes, per-device run results and progress events.
"""
from datetime import date
from typing import Optional, List, Any, Dict
from pydantic import BaseModel, Field, model_validator

from app.constants import PROGRESS_EVENT_VERSION
from app.schemas.punch import ResolvedPunch, UnregisteredEmployee


class SyncRequest(BaseModel):
    """Date range for a sync run; both bounds inclusive, either may be omitted"""
    start_date: Optional[date] = Field(None, description="First day (inclusive)")
    end_date: Optional[date] = Field(None, description="Last day (inclusive)")
    preview: bool = Field(default=False, description="Stop before persistence and return would-be-new punches")

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must be on or before end_date")
        return self


class FilterResult(BaseModel):
    unique_punches: List[ResolvedPunch] = Field(default_factory=list)
    duplicate_count: int = 0
    skipped_unresolved_count: int = 0
    unregistered: List[UnregisteredEmployee] = Field(default_factory=list)


class PersistResult(BaseModel):
    saved_count: int = 0
    error_count: int = 0
    already_saved_count: int = 0
    saved_records: List[ResolvedPunch] = Field(default_factory=list)


class RunResult(BaseModel):
    """
    Outcome of one device run.

    success=False with error set means the run could not complete;
    success=True with error_count > 0 means it ran with per-record failures.
    """
    machine_id: int
    alias: str
    success: bool
    preview: bool = False
    total_logs: int = 0
    processed: int = 0
    saved: int = 0
    duplicates: int = 0
    skipped: int = 0
    error_count: int = 0
    new_logs: List[ResolvedPunch] = Field(default_factory=list)
    unregistered_employees: List[UnregisteredEmployee] = Field(default_factory=list)
    error: Optional[str] = None


class DateRange(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SyncAllResult(BaseModel):
    results: List[RunResult]
    total_machines: int
    online_machines: int
    offline_machines: int
    total_logs: int
    total_saved: int
    total_duplicates: int
    date_range: DateRange


class ProgressEvent(BaseModel):
    """Versioned progress value published to observers"""
    version: int = PROGRESS_EVENT_VERSION
    type: str
    step: str = ""
    percentage: int = 0
    message: str = ""
    details: str = ""
    logs_found: int = 0
    logs_processed: int = 0
    logs_saved: int = 0
    errors: List[str] = Field(default_factory=list)
    data: Optional[Dict[str, Any]] = None
