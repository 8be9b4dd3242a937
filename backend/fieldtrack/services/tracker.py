"""Tracking state machine.

CHECKED_OUT -> CHECKED_IN -> CHECKED_OUT. One TrackingService is built per
process by the application (see fieldtrack.main) with its store, sampler,
sync engine and clock injected; nothing here is a module-level singleton.

While checked in, four independent asyncio timers run:
- the sampler's own tick task (one reading per interval)
- the sync timer (drains the store every sync interval, fire-and-forget)
- the countdown timer (pushes seconds-to-next-sync to the observer every second)
- the battery timer (critical level -> emergency checkout)

Start/stop transitions are serialized by one asyncio.Lock. Emergency
checkouts are plain synchronous calls with no await between the state check
and the teardown, so they are atomic on the event loop and can run from
inside a timer, a sampler callback, or a shutdown hook without the lock.
Every timer re-checks the state before acting and drops work that arrives
after checkout.
"""
import asyncio
import enum
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from fieldtrack.core.clock import SystemClock
from fieldtrack.core.config import settings
from fieldtrack.core.exceptions import LocationPermissionError, LocationUnavailableError, PermissionLost, StorageError
from fieldtrack.models.location import CheckoutReason
from fieldtrack.schemas.tracking import LocationReading, PendingCount, ServiceStatus, SyncResult, TrackingSnapshot
from fieldtrack.services.emergency import CheckOutData, EmergencyCheckoutHandler
from fieldtrack.services.location_store import LocationStore
from fieldtrack.services.sampler import LocationSampler
from fieldtrack.services.session_state import SessionSnapshotStore
from fieldtrack.services.sync import SyncEngine

logger = logging.getLogger(__name__)

CountdownCallback = Callable[[int], None]

MS_PER_HOUR = 60 * 60 * 1000


class TrackingState(str, enum.Enum):
    CHECKED_OUT = "CHECKED_OUT"
    CHECKED_IN = "CHECKED_IN"


@dataclass
class TrackingSession:
    employee_id: str
    employee_name: str
    started_at: int  # ms since epoch
    last_location_time: int = 0
    sample_count: int = 0
    ended_at: Optional[int] = None
    end_reason: Optional[str] = None
    check_out_data: CheckOutData = None


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class TrackingService:
    def __init__(
        self,
        store: LocationStore,
        sampler: LocationSampler,
        sync_engine: SyncEngine,
        emergency_handler: Optional[EmergencyCheckoutHandler] = None,
        clock=None,
        snapshot_store: Optional[SessionSnapshotStore] = None,
        interval_seconds: Optional[int] = None,
        sync_interval_seconds: Optional[int] = None,
        battery_check_interval_seconds: Optional[int] = None,
        critical_battery_level: Optional[int] = None,
        max_session_hours: Optional[float] = None,
        retention_days: Optional[int] = None,
    ):
        self.store = store
        self.sampler = sampler
        self.sync_engine = sync_engine
        self.clock = clock or SystemClock()
        self.emergency_handler = emergency_handler or EmergencyCheckoutHandler(store, self.clock)
        self.snapshot_store = snapshot_store

        self.interval_seconds = interval_seconds or settings.UPDATE_INTERVAL_SECONDS
        self.sync_interval_seconds = sync_interval_seconds or self.interval_seconds
        self.battery_check_interval_seconds = (
            battery_check_interval_seconds or settings.BATTERY_CHECK_INTERVAL_SECONDS
        )
        self.critical_battery_level = (
            critical_battery_level if critical_battery_level is not None else settings.CRITICAL_BATTERY_LEVEL
        )
        self.max_session_hours = max_session_hours or settings.MAX_SESSION_HOURS
        self.retention_days = retention_days or settings.RECORD_RETENTION_DAYS

        self._state = TrackingState.CHECKED_OUT
        self._session: Optional[TrackingSession] = None
        self.last_session: Optional[TrackingSession] = None
        self._lock = asyncio.Lock()
        self._timers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._countdown_callback: Optional[CountdownCallback] = None
        self._next_sync_at: Optional[float] = None  # clock.monotonic()

    # ── State ────────────────────────────────────────────────────────

    @property
    def state(self) -> TrackingState:
        return self._state

    @property
    def session(self) -> Optional[TrackingSession]:
        return self._session

    def get_status(self) -> ServiceStatus:
        session = self._session
        if self._state is not TrackingState.CHECKED_IN or session is None:
            return ServiceStatus(is_running=False)
        return ServiceStatus(
            is_running=True,
            employee_id=session.employee_id,
            employee_name=session.employee_name,
            started_at=session.started_at,
            duration_ms=max(0, self.clock.now_ms() - session.started_at),
        )

    # ── Check-in / check-out ─────────────────────────────────────────

    async def start_tracking(self, employee_id: str, employee_name: str) -> bool:
        """Check in and start sampling.

        Same employee already checked in: returns True, session untouched.
        Different employee checked in: that session is closed first.
        Raises LocationPermissionError if location access is refused.
        """
        async with self._lock:
            if self._state is TrackingState.CHECKED_IN and self._session is not None:
                if self._session.employee_id == employee_id:
                    logger.info(f"Tracking already active for {employee_id}, keeping existing session")
                    return True
                logger.info(f"Closing session of {self._session.employee_id} before checking in {employee_id}")
                self._end_session("EMPLOYEE_SWITCH")

            return await self._begin_session(employee_id, employee_name, self.clock.now_ms())

    async def stop_tracking(self, check_out_data: CheckOutData = None) -> bool:
        """Manual check-out. Calling it while checked out is a no-op."""
        async with self._lock:
            if self._state is not TrackingState.CHECKED_IN:
                logger.info("stop_tracking called while checked out, nothing to do")
                return True
            self._end_session("USER_CHECKOUT", check_out_data)
        return True

    async def resume(self) -> bool:
        """Restore a session persisted by a previous process.

        Snapshots older than the maximum session length are closed with an
        AUTOMATIC emergency checkout instead of being resumed. If location
        permission is gone the session is closed with FORCE_CLOSE.
        """
        if self.snapshot_store is None:
            return False
        snapshot = self.snapshot_store.load()
        if snapshot is None:
            return False

        async with self._lock:
            if self._state is TrackingState.CHECKED_IN:
                return False

            age_ms = self.clock.now_ms() - snapshot.started_at
            if age_ms >= self.max_session_hours * MS_PER_HOUR:
                logger.warning(
                    f"Tracking snapshot for {snapshot.employee_id} is {age_ms // MS_PER_HOUR}h old, closing it"
                )
                self._close_snapshot(snapshot, CheckoutReason.AUTOMATIC, "STALE_SESSION_ON_RESTART")
                return False

            logger.info(f"Resuming tracking for {snapshot.employee_id} checked in at {snapshot.started_at}")
            try:
                resumed = await self._begin_session(
                    snapshot.employee_id, snapshot.employee_name, snapshot.started_at,
                )
            except LocationPermissionError as e:
                logger.error(f"Cannot resume tracking for {snapshot.employee_id}: {e}")
                self._close_snapshot(snapshot, CheckoutReason.FORCE_CLOSE, "PERMISSION_REVOKED")
                return False
            if resumed and self._session is not None:
                self._session.last_location_time = max(
                    self._session.last_location_time, snapshot.last_location_time
                )
            return resumed

    def _close_snapshot(self, snapshot: TrackingSnapshot, reason: CheckoutReason, trigger: str) -> None:
        """End a persisted session that cannot be resumed with an emergency checkout."""
        # Cleared first so a failed write cannot make every restart retry it
        self.snapshot_store.clear()
        self.emergency_handler.record(
            snapshot.employee_id,
            reason,
            check_out_data={
                "trigger": trigger,
                "employeeName": snapshot.employee_name,
                "checkInTime": snapshot.started_at,
                "lastLocationTime": snapshot.last_location_time,
            },
        )
        self._spawn_sync(snapshot.employee_id)

    async def _begin_session(self, employee_id: str, employee_name: str, started_at: int) -> bool:
        session = TrackingSession(employee_id=employee_id, employee_name=employee_name, started_at=started_at)
        # Set before the sampler starts so its first reading is accepted
        self._session = session
        self._state = TrackingState.CHECKED_IN
        try:
            await self.sampler.start(
                employee_id, self.interval_seconds, self._on_reading, self._on_sampler_error,
            )
        except BaseException:
            self.sampler.stop()
            self._session = None
            self._state = TrackingState.CHECKED_OUT
            raise

        if self._session is not session:
            # Permission went away during the first reading; already checked out
            return False

        self._next_sync_at = self.clock.monotonic() + self.sync_interval_seconds
        self._timers = {
            "sync": asyncio.create_task(
                self._sync_loop(self.sync_interval_seconds), name=f"sync-{employee_id}",
            ),
            "countdown": asyncio.create_task(self._countdown_loop(), name=f"countdown-{employee_id}"),
            "battery": asyncio.create_task(self._battery_loop(), name=f"battery-{employee_id}"),
        }
        self._save_snapshot()
        self._notify_countdown()
        logger.info(f"Checked in {employee_id} ({employee_name}), sampling every {self.interval_seconds}s")
        return True

    def _end_session(self, reason: str, check_out_data: CheckOutData = None) -> None:
        """Tear the session down in one step: no awaits between these lines."""
        session = self._session
        self._state = TrackingState.CHECKED_OUT
        self._session = None

        self.sampler.stop()
        current = _current_task()
        for task in self._timers.values():
            if task is not current and not task.done():
                task.cancel()
        self._timers = {}
        self._next_sync_at = None
        self._countdown_callback = None

        if self.snapshot_store is not None:
            self.snapshot_store.clear()

        if session is None:
            return
        session.ended_at = self.clock.now_ms()
        session.end_reason = reason
        session.check_out_data = check_out_data
        self.last_session = session
        logger.info(
            f"Checked out {session.employee_id} ({reason}) after {session.sample_count} samples"
        )
        self._spawn_sync(session.employee_id)

    # ── Emergency checkout ───────────────────────────────────────────

    def _emergency_checkout(self, reason: CheckoutReason, extra: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Record the session's emergency checkout, then end it.

        Returns None when no session is active. The session ends even when
        the write fails; the StorageError is re-raised after teardown.
        """
        session = self._session
        if self._state is not TrackingState.CHECKED_IN or session is None:
            return None

        data: Dict[str, Any] = {
            "employeeName": session.employee_name,
            "checkInTime": session.started_at,
            "lastLocationTime": session.last_location_time,
            "sampleCount": session.sample_count,
        }
        if extra:
            data.update(extra)
        battery = data.get("batteryLevel")

        try:
            return self.emergency_handler.record(
                session.employee_id,
                reason,
                last_reading=self.sampler.last_reading,
                check_out_data=data,
                battery_level=battery if isinstance(battery, int) else None,
            )
        finally:
            self._end_session(reason.value, data)

    def on_battery_level(self, level: int) -> Optional[int]:
        """Platform battery callback. Below the critical level ends the session."""
        if self._state is not TrackingState.CHECKED_IN:
            return None
        if level >= self.critical_battery_level:
            return None
        logger.warning(f"Battery critical ({level}%), performing emergency checkout")
        return self._emergency_checkout(CheckoutReason.BATTERY_DRAIN, {"batteryLevel": level})

    def on_app_terminating(self, force: bool = False, check_out_data: CheckOutData = None) -> Optional[int]:
        """Platform termination callback (app closed, or force-stopped when `force`)."""
        reason = CheckoutReason.FORCE_CLOSE if force else CheckoutReason.APP_CLOSED
        extra: Dict[str, Any] = {}
        if isinstance(check_out_data, str):
            extra["clientData"] = check_out_data
        elif check_out_data:
            extra.update(check_out_data)
        return self._emergency_checkout(reason, extra)

    async def _on_sampler_error(self, error: Exception) -> None:
        if isinstance(error, PermissionLost):
            logger.error(f"Location permission revoked mid-session: {error}")
            self._emergency_checkout(CheckoutReason.FORCE_CLOSE, {"trigger": "PERMISSION_REVOKED"})

    # ── Samples ──────────────────────────────────────────────────────

    async def _on_reading(self, employee_id: str, reading: LocationReading) -> None:
        session = self._session
        if self._state is not TrackingState.CHECKED_IN or session is None or session.employee_id != employee_id:
            logger.debug(f"Dropping reading for {employee_id}: no matching active session")
            return
        try:
            self.store.insert_sample(
                employee_id,
                reading.latitude,
                reading.longitude,
                reading.accuracy,
                reading.battery_level,
                reading.timestamp,
                stale=reading.stale,
            )
        except StorageError:
            logger.error(f"Sample for {employee_id} at {reading.timestamp} lost; session continues")
            return
        session.last_location_time = reading.timestamp
        session.sample_count += 1
        self._save_snapshot()

    # ── Sync ─────────────────────────────────────────────────────────

    async def run_scheduled_sync(self) -> None:
        """What the sync timer does when it fires.

        Resets the countdown, auto-closes an overlong session, otherwise
        starts a drain without waiting for it.
        """
        session = self._session
        if self._state is not TrackingState.CHECKED_IN or session is None:
            return
        self._next_sync_at = self.clock.monotonic() + self.sync_interval_seconds
        self._notify_countdown()

        if self.clock.now_ms() - session.started_at >= self.max_session_hours * MS_PER_HOUR:
            logger.warning(f"Session for {session.employee_id} exceeded {self.max_session_hours}h")
            self._emergency_checkout(CheckoutReason.AUTOMATIC, {"trigger": "MAX_SESSION_DURATION"})
            return
        self._spawn_sync(session.employee_id)

    def on_connectivity_restored(self) -> bool:
        """Drain the active employee's backlog now instead of at the next tick."""
        session = self._session
        if self._state is not TrackingState.CHECKED_IN or session is None:
            return False
        return self._spawn_sync(session.employee_id)

    def _spawn_sync(self, employee_id: str) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, sync for {employee_id} deferred to next pass")
            return False
        task = loop.create_task(self._background_sync(employee_id), name=f"drain-{employee_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _background_sync(self, employee_id: str) -> None:
        try:
            await self.sync_engine.sync_pending_for_employee(employee_id)
            self.store.prune_synced(self.retention_days, self.clock.now_ms())
        except Exception as e:
            # Sync problems only show up in pending counts and attempt counters
            logger.error(f"Background sync for {employee_id} failed: {e}", exc_info=True)

    async def wait_for_background_sync(self) -> None:
        """Wait for in-flight drains (used on shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Countdown ────────────────────────────────────────────────────

    def get_next_sync_countdown(self) -> int:
        """Whole seconds until the next scheduled sync, within [0, sync interval]."""
        if self._state is not TrackingState.CHECKED_IN or self._next_sync_at is None:
            return self.sync_interval_seconds
        remaining = math.ceil(self._next_sync_at - self.clock.monotonic())
        return max(0, min(self.sync_interval_seconds, remaining))

    def set_countdown_update_callback(self, callback: Optional[CountdownCallback]) -> None:
        """Register the single countdown observer.

        Registering replaces any previous observer; None unregisters. The
        observer is also dropped on checkout, so register again after the
        next check-in.
        """
        self._countdown_callback = callback

    def _notify_countdown(self) -> None:
        callback = self._countdown_callback
        if callback is None or self._state is not TrackingState.CHECKED_IN:
            return
        try:
            callback(self.get_next_sync_countdown())
        except Exception as e:
            logger.error(f"Countdown observer raised: {e}", exc_info=True)

    # ── Timers ───────────────────────────────────────────────────────

    async def _sync_loop(self, delay: float) -> None:
        """Fire the scheduled sync. The first delay is fixed when the session starts."""
        while self._state is TrackingState.CHECKED_IN:
            await asyncio.sleep(delay)
            if self._state is not TrackingState.CHECKED_IN:
                break
            try:
                await self.run_scheduled_sync()
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e}", exc_info=True)
                delay = self.sync_interval_seconds
                continue
            delay = max(0.0, (self._next_sync_at or 0) - self.clock.monotonic())

    async def _countdown_loop(self) -> None:
        while self._state is TrackingState.CHECKED_IN:
            await asyncio.sleep(1)
            if self._state is not TrackingState.CHECKED_IN:
                break
            self._notify_countdown()

    async def _battery_loop(self) -> None:
        while self._state is TrackingState.CHECKED_IN:
            await asyncio.sleep(self.battery_check_interval_seconds)
            if self._state is not TrackingState.CHECKED_IN:
                break
            try:
                await self.check_battery()
            except Exception as e:
                logger.error(f"Battery check failed: {e}", exc_info=True)

    async def check_battery(self) -> Optional[int]:
        """Read the battery once; returns the emergency checkout id if it fired."""
        if self._state is not TrackingState.CHECKED_IN:
            return None
        try:
            level = await asyncio.wait_for(
                self.sampler.provider.get_battery_level(), timeout=self.sampler.fix_timeout,
            )
        except (asyncio.TimeoutError, LocationUnavailableError):
            logger.warning("Battery level unavailable, skipping check")
            return None
        return self.on_battery_level(int(level))

    # ── Persistence passthroughs for the UI bridge ───────────────────

    def get_pending_location_count(self, employee_id: str) -> PendingCount:
        return self.store.count_pending(employee_id)

    async def sync_pending_data_for_employee(self, employee_id: str) -> SyncResult:
        return await self.sync_engine.sync_pending_for_employee(employee_id)

    def clear_employee_data(self, employee_id: str) -> int:
        session = self._session
        if session is not None and session.employee_id == employee_id:
            logger.warning(f"Clearing local data for {employee_id} while their session is active")
        return self.store.clear_employee_data(employee_id)

    def _save_snapshot(self) -> None:
        session = self._session
        if self.snapshot_store is None or session is None:
            return
        self.snapshot_store.save(TrackingSnapshot(
            employee_id=session.employee_id,
            employee_name=session.employee_name,
            started_at=session.started_at,
            last_location_time=session.last_location_time,
        ))

    async def shutdown(self) -> None:
        """Application exit while checked in counts as the app being closed."""
        if self._state is TrackingState.CHECKED_IN:
            try:
                self.on_app_terminating(force=False)
            except StorageError:
                logger.error("Shutdown checkout could not be stored; session closed without a record")
        await self.wait_for_background_sync()
