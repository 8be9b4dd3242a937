from pydantic import BaseModel, Field
from typing import Any, Dict, Optional, Union
from datetime import datetime


class LocationReading(BaseModel):
    """One fix reported by the sampler."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float = Field(default=0, ge=0)  # meters, 0 = unknown
    battery_level: int = Field(default=0, ge=0, le=100)
    timestamp: int  # device clock, ms since epoch
    stale: bool = False  # re-reported last known fix


class LocationSampleBase(BaseModel):
    employee_id: str
    latitude: float
    longitude: float
    accuracy: float = 0
    battery_level: int = 0


class LocationSample(LocationSampleBase):
    id: int
    timestamp: int
    stale: bool = False
    synced: bool = False
    sync_attempts: int = 0
    last_attempt_at: Optional[int] = None  # ms since epoch
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class EmergencyCheckoutRecord(LocationSampleBase):
    id: int
    check_out_time: int
    reason: str
    check_out_data: Optional[str] = None
    synced: bool = False
    sync_attempts: int = 0
    last_attempt_at: Optional[int] = None  # ms since epoch
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PendingCount(BaseModel):
    pending_locations: int = 0
    pending_check_outs: int = 0
    total_pending: int = 0


class SyncResult(BaseModel):
    synced_locations: int = 0
    failed_locations: int = 0
    synced_check_outs: int = 0
    failed_check_outs: int = 0
    total_synced: int = 0
    total_failed: int = 0


class ServiceStatus(BaseModel):
    is_running: bool
    employee_id: Optional[str] = None
    employee_name: Optional[str] = None
    started_at: Optional[int] = None  # ms since epoch
    duration_ms: Optional[int] = None


class CountdownStatus(BaseModel):
    seconds_remaining: int
    interval_seconds: int


class TrackingSnapshot(BaseModel):
    """Active session persisted so a restarted process can resume it."""
    employee_id: str
    employee_name: str
    started_at: int
    last_location_time: int = 0


# ── Bridge request bodies ───────────────────────────────────────────

class StartTrackingRequest(BaseModel):
    employee_id: str = Field(..., min_length=1)
    employee_name: str = Field(..., min_length=1)


class StopTrackingRequest(BaseModel):
    check_out_data: Optional[Union[Dict[str, Any], str]] = None


class BatteryEvent(BaseModel):
    level: int = Field(..., ge=0, le=100)


class TerminationEvent(BaseModel):
    force: bool = False
    check_out_data: Optional[Union[Dict[str, Any], str]] = None
