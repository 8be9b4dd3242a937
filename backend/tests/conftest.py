import asyncio
from typing import List

import pytest

from fieldtrack.core.database import build_engine, build_session_factory, init_db
from fieldtrack.core.exceptions import DeliveryError, LocationUnavailableError, PermissionLost
from fieldtrack.services.emergency import EmergencyCheckoutHandler
from fieldtrack.services.location_store import LocationStore
from fieldtrack.services.sampler import Fix, LocationProvider, LocationSampler
from fieldtrack.services.session_state import SessionSnapshotStore
from fieldtrack.services.sync import SyncEngine
from fieldtrack.services.tracker import TrackingService

BASE_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now_ms: int = BASE_MS, mono: float = 1000.0):
        self._now_ms = now_ms
        self._mono = mono

    def now_ms(self) -> int:
        return self._now_ms

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        self._now_ms += int(seconds * 1000)
        self._mono += seconds


class ScriptedProvider(LocationProvider):
    """Walks north 0.001 degrees per fix; every failure mode is a flag."""

    def __init__(self, latitude: float = 28.6, longitude: float = 77.2):
        self.latitude = latitude
        self.longitude = longitude
        self.battery = 80
        self.permission_granted = True
        self.grant_on_request = True
        self.unavailable = False
        self.hang = False
        self.fix_delay = 0.0
        self.fix_timestamps: List[int] = []
        self.position_calls = 0
        self.permission_requests = 0

    async def check_permission(self) -> bool:
        return self.permission_granted

    async def request_permission(self) -> bool:
        self.permission_requests += 1
        self.permission_granted = self.grant_on_request
        return self.permission_granted

    async def get_current_position(self) -> Fix:
        self.position_calls += 1
        if not self.permission_granted:
            raise PermissionLost("revoked")
        if self.hang:
            await asyncio.sleep(3600)
        if self.fix_delay:
            await asyncio.sleep(self.fix_delay)
        if self.unavailable:
            raise LocationUnavailableError("no satellites")
        self.latitude += 0.001
        timestamp = self.fix_timestamps.pop(0) if self.fix_timestamps else None
        return Fix(self.latitude, self.longitude, accuracy=5.0, timestamp=timestamp)

    async def get_battery_level(self) -> int:
        return self.battery


class FakeAttendanceClient:
    def __init__(self):
        self.online = True
        self.is_configured = True
        self.reject_ids = set()
        self.batches = []
        self.checkouts = []

    async def upload_location_batch(self, employee_id, samples):
        samples = list(samples)
        self.batches.append((employee_id, [s.id for s in samples]))
        if not self.online:
            raise DeliveryError("network down")
        return [s.id for s in samples if s.id not in self.reject_ids]

    async def submit_emergency_checkout(self, checkout):
        self.checkouts.append(checkout)
        if not self.online:
            raise DeliveryError("network down")
        return {"success": True}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    init_db(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return LocationStore(session_factory)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def client():
    return FakeAttendanceClient()


@pytest.fixture
def sync_engine(store, client, clock):
    return SyncEngine(store, client, batch_size=2, clock=clock)


@pytest.fixture
def snapshot_store(tmp_path):
    return SessionSnapshotStore(tmp_path / "tracking_state.json")


def make_tracker(store, provider, sync_engine, clock, snapshot_store=None, **kwargs) -> TrackingService:
    sampler = LocationSampler(provider, clock=clock, fix_timeout=0.05)
    options = dict(
        interval_seconds=300,
        battery_check_interval_seconds=30,
        critical_battery_level=5,
        max_session_hours=24,
        retention_days=30,
    )
    options.update(kwargs)
    return TrackingService(
        store=store,
        sampler=sampler,
        sync_engine=sync_engine,
        emergency_handler=EmergencyCheckoutHandler(store, clock),
        clock=clock,
        snapshot_store=snapshot_store,
        **options,
    )


@pytest.fixture
async def tracker(store, provider, sync_engine, clock, snapshot_store):
    service = make_tracker(store, provider, sync_engine, clock, snapshot_store)
    yield service
    await service.stop_tracking()
    await service.wait_for_background_sync()


def insert(store, employee_id: str, timestamp: int, latitude: float = 28.6, battery: int = 80) -> int:
    return store.insert_sample(employee_id, latitude, 77.2, 5.0, battery, timestamp)

