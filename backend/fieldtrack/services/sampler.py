"""Location sampler.

Wraps the platform location capability behind LocationProvider and produces
one LocationReading per interval on its own asyncio task, independent of
whatever else the tracker is doing (a slow sync never delays a tick).

When a fresh fix cannot be had within the fix timeout, the last known fix is
re-reported with ``stale=True`` instead of blocking the cadence.
"""
import abc
import asyncio
import logging
import random
from typing import Awaitable, Callable, NamedTuple, Optional

from fieldtrack.core.clock import SystemClock
from fieldtrack.core.exceptions import LocationPermissionError, LocationUnavailableError, PermissionLost
from fieldtrack.schemas.tracking import LocationReading

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[str, LocationReading], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class Fix(NamedTuple):
    latitude: float
    longitude: float
    accuracy: float = 0.0
    timestamp: Optional[int] = None  # ms; None = use the device clock


class LocationProvider(abc.ABC):
    """Platform capability: permissions, position fixes, battery level."""

    @abc.abstractmethod
    async def check_permission(self) -> bool:
        ...

    @abc.abstractmethod
    async def request_permission(self) -> bool:
        ...

    @abc.abstractmethod
    async def get_current_position(self) -> Fix:
        """Return a fresh fix or raise LocationUnavailableError."""

    @abc.abstractmethod
    async def get_battery_level(self) -> int:
        ...


class SimulatedLocationProvider(LocationProvider):
    """Random walk around a fixed origin, for the dev server and demos."""

    def __init__(self, latitude: float, longitude: float, battery_level: int = 100, seed: Optional[int] = None):
        self.latitude = latitude
        self.longitude = longitude
        self.battery_level = battery_level
        self.permission_granted = True
        self._rng = random.Random(seed)

    async def check_permission(self) -> bool:
        return self.permission_granted

    async def request_permission(self) -> bool:
        return self.permission_granted

    async def get_current_position(self) -> Fix:
        if not self.permission_granted:
            raise PermissionLost("Location permission revoked")
        # ~10 m steps
        self.latitude = max(-90.0, min(90.0, self.latitude + self._rng.uniform(-1e-4, 1e-4)))
        self.longitude = max(-180.0, min(180.0, self.longitude + self._rng.uniform(-1e-4, 1e-4)))
        return Fix(self.latitude, self.longitude, accuracy=round(self._rng.uniform(3, 25), 1))

    async def get_battery_level(self) -> int:
        return self.battery_level


class LocationSampler:
    def __init__(self, provider: LocationProvider, clock=None, fix_timeout: float = 15.0):
        self.provider = provider
        self.clock = clock or SystemClock()
        self.fix_timeout = fix_timeout

        self.employee_id: Optional[str] = None
        self.interval_seconds: Optional[float] = None
        self._on_reading: Optional[ReadingCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()
        self._running = False

        self.last_reading: Optional[LocationReading] = None
        self._last_timestamp = 0
        self._last_battery = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(
        self,
        employee_id: str,
        interval_seconds: float,
        on_reading: ReadingCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        """Begin sampling. Raises LocationPermissionError if access is refused."""
        if self._running:
            self.stop()

        granted = await self.provider.check_permission()
        if not granted:
            granted = await self.provider.request_permission()
        if not granted:
            raise LocationPermissionError(f"Location permission denied for {employee_id}")

        self.employee_id = employee_id
        self.interval_seconds = interval_seconds
        self._on_reading = on_reading
        self._on_error = on_error
        self.last_reading = None
        self._last_timestamp = 0
        self._running = True

        # First reading right away, then on the interval
        await self.tick()
        if self._running:
            self._task = asyncio.create_task(self._run(), name=f"sampler-{employee_id}")
            logger.info("Sampler started for %s every %ss", employee_id, interval_seconds)

    def stop(self) -> None:
        """Halt sampling. Safe to call when already stopped."""
        if not self._running and self._task is None:
            return
        self._running = False
        task, self._task = self._task, None
        # A stop issued from inside a tick must not cancel the tick itself;
        # the loop exits on its own once the tick returns.
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.info("Sampler stopped for %s", self.employee_id)

    async def _run(self) -> None:
        # Ticks land on a fixed grid of the loop's monotonic clock, so slow
        # fixes do not push the cadence back. A tick that overruns a whole
        # interval restarts the grid at the current time.
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while self._running:
            deadline += self.interval_seconds
            delay = deadline - loop.time()
            if delay < 0:
                deadline, delay = loop.time(), 0
            await asyncio.sleep(delay)
            if not self._running:
                break
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sampler tick failed for {self.employee_id}: {e}", exc_info=True)

    async def tick(self) -> Optional[LocationReading]:
        """Take one reading and hand it to the reading callback.

        Returns None when stopped, when permission is gone, or when no fix
        has ever been obtained.
        """
        async with self._tick_lock:
            if not self._running:
                return None
            employee_id = self.employee_id

            try:
                if not await self.provider.check_permission():
                    raise PermissionLost("Location permission revoked")
                reading = await self._fresh_reading()
            except LocationPermissionError as e:
                await self._permission_lost(e)
                return None
            except (asyncio.TimeoutError, LocationUnavailableError) as e:
                reading = self._stale_reading()
                if reading is None:
                    logger.warning(f"No location fix for {employee_id} and none cached: {str(e) or 'timeout'}")
                    return None
                logger.warning(f"Fresh fix unavailable for {employee_id}, re-reporting last known fix")

            # Discard if checkout happened while we were waiting on the fix
            if not self._running or self.employee_id != employee_id:
                return None

            self.last_reading = reading
            if self._on_reading is not None:
                await self._on_reading(employee_id, reading)
            return reading

    async def _fresh_reading(self) -> LocationReading:
        fix = await asyncio.wait_for(self.provider.get_current_position(), timeout=self.fix_timeout)
        battery = await self._battery_level()
        return LocationReading(
            latitude=fix.latitude,
            longitude=fix.longitude,
            accuracy=max(fix.accuracy or 0.0, 0.0),
            battery_level=battery,
            timestamp=self._next_timestamp(fix.timestamp),
            stale=False,
        )

    def _stale_reading(self) -> Optional[LocationReading]:
        if self.last_reading is None:
            return None
        return self.last_reading.model_copy(update={
            "timestamp": self._next_timestamp(None),
            "battery_level": self._last_battery,
            "stale": True,
        })

    async def _battery_level(self) -> int:
        try:
            level = await asyncio.wait_for(self.provider.get_battery_level(), timeout=self.fix_timeout)
            self._last_battery = max(0, min(100, int(level)))
        except (asyncio.TimeoutError, LocationUnavailableError):
            logger.warning("Battery level unavailable, reusing last value %s", self._last_battery)
        return self._last_battery

    def _next_timestamp(self, fix_timestamp: Optional[int]) -> int:
        # Capture order must stay monotonic even if the fix clock jumps back
        ts = fix_timestamp if fix_timestamp is not None else self.clock.now_ms()
        ts = max(ts, self._last_timestamp)
        self._last_timestamp = ts
        return ts

    async def _permission_lost(self, error: Exception) -> None:
        logger.error(f"Location permission lost for {self.employee_id}: {error}")
        self.stop()
        if self._on_error is not None:
            await self._on_error(error if isinstance(error, PermissionLost) else PermissionLost(str(error)))
