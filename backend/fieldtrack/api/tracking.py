"""Tracking bridge API: what the mobile UI calls to drive the tracking core.

Check-in/out, status and countdown, pending counts, manual sync, data wipe,
and platform events (battery, termination, connectivity).
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from fieldtrack.core.exceptions import LocationPermissionError
from fieldtrack.schemas.tracking import (
    BatteryEvent,
    CountdownStatus,
    PendingCount,
    ServiceStatus,
    StartTrackingRequest,
    StopTrackingRequest,
    SyncResult,
    TerminationEvent,
)
from fieldtrack.services.tracker import TrackingService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tracking", tags=["tracking"])


def get_tracker(request: Request) -> TrackingService:
    tracker = getattr(request.app.state, "tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="Tracking service not initialized")
    return tracker


# ── Check-in / check-out ─────────────────────────────────────────────

@router.post("/start")
async def start_tracking(body: StartTrackingRequest, tracker: TrackingService = Depends(get_tracker)):
    """Start background tracking for an employee (check-in)."""
    try:
        success = await tracker.start_tracking(body.employee_id, body.employee_name)
    except LocationPermissionError as e:
        logger.warning(f"Check-in refused for {body.employee_id}: {e}")
        raise HTTPException(status_code=403, detail=str(e))
    return {"success": success, "status": tracker.get_status()}


@router.post("/stop")
async def stop_tracking(
    body: Optional[StopTrackingRequest] = None,
    tracker: TrackingService = Depends(get_tracker),
):
    """Stop background tracking (check-out). Idempotent."""
    success = await tracker.stop_tracking(body.check_out_data if body else None)
    return {"success": success, "status": tracker.get_status()}


@router.get("/status", response_model=ServiceStatus)
def service_status(tracker: TrackingService = Depends(get_tracker)):
    return tracker.get_status()


@router.get("/countdown", response_model=CountdownStatus)
def next_sync_countdown(tracker: TrackingService = Depends(get_tracker)):
    return CountdownStatus(
        seconds_remaining=tracker.get_next_sync_countdown(),
        interval_seconds=tracker.sync_interval_seconds,
    )


# ── Local data ───────────────────────────────────────────────────────

@router.get("/pending/{employee_id}", response_model=PendingCount)
def pending_location_count(employee_id: str, tracker: TrackingService = Depends(get_tracker)):
    return tracker.get_pending_location_count(employee_id)


@router.post("/sync/{employee_id}", response_model=SyncResult)
async def sync_pending_data(employee_id: str, tracker: TrackingService = Depends(get_tracker)):
    return await tracker.sync_pending_data_for_employee(employee_id)


@router.delete("/data/{employee_id}")
def clear_employee_data(employee_id: str, tracker: TrackingService = Depends(get_tracker)):
    """Wipe every local sample and checkout for the employee (logout)."""
    rows = tracker.clear_employee_data(employee_id)
    return {"employee_id": employee_id, "rows_deleted": rows}


# ── Platform events ──────────────────────────────────────────────────

@router.post("/events/battery")
async def battery_event(body: BatteryEvent, tracker: TrackingService = Depends(get_tracker)):
    checkout_id = tracker.on_battery_level(body.level)
    return {"emergency_checkout_id": checkout_id, "status": tracker.get_status()}


@router.post("/events/termination")
async def termination_event(body: TerminationEvent, tracker: TrackingService = Depends(get_tracker)):
    checkout_id = tracker.on_app_terminating(force=body.force, check_out_data=body.check_out_data)
    return {"emergency_checkout_id": checkout_id, "status": tracker.get_status()}


@router.post("/events/connectivity")
async def connectivity_event(tracker: TrackingService = Depends(get_tracker)):
    return {"sync_scheduled": tracker.on_connectivity_restored()}
