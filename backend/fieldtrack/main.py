import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fieldtrack.core.config import settings
from fieldtrack.core.exceptions import StorageError, TrackingError
from fieldtrack.api import tracking as tracking_api
from fieldtrack.services.tracker import TrackingService

logger = logging.getLogger(__name__)


def build_tracker() -> TrackingService:
    """Wire the tracking core from settings. One per process."""
    from fieldtrack.core.clock import SystemClock
    from fieldtrack.core.database import SessionLocal, engine, init_db
    from fieldtrack.services.attendance_client import AttendanceClient
    from fieldtrack.services.location_store import LocationStore
    from fieldtrack.services.sampler import LocationSampler, SimulatedLocationProvider
    from fieldtrack.services.session_state import SessionSnapshotStore
    from fieldtrack.services.sync import SyncEngine

    logger.info("Creating local location tables...")
    init_db(engine)

    clock = SystemClock()
    store = LocationStore(SessionLocal)
    provider = SimulatedLocationProvider(settings.SIMULATED_LATITUDE, settings.SIMULATED_LONGITUDE)
    sampler = LocationSampler(provider, clock=clock, fix_timeout=settings.LOCATION_FIX_TIMEOUT_SECONDS)
    sync_engine = SyncEngine(
        store, AttendanceClient(), batch_size=settings.SYNC_BATCH_SIZE, clock=clock,
    )

    return TrackingService(
        store=store,
        sampler=sampler,
        sync_engine=sync_engine,
        clock=clock,
        snapshot_store=SessionSnapshotStore(settings.STATE_FILE),
        interval_seconds=settings.UPDATE_INTERVAL_SECONDS,
        sync_interval_seconds=settings.sync_interval_seconds,
    )


def create_app(tracker: Optional[TrackingService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the tracker, resume an interrupted session, close it on exit."""
        app.state.tracker = tracker or build_tracker()
        try:
            await app.state.tracker.resume()
        except TrackingError as e:
            logger.error(f"Could not resume tracking session: {e}")
        yield
        await app.state.tracker.shutdown()

    # Disable API docs in production
    docs_url = "/docs" if settings.ENVIRONMENT != "production" else None

    app = FastAPI(
        title=settings.APP_NAME,
        description="PGN field tracking - background location and attendance sync",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=None,
    )

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request, exc):
        logger.error("Local storage failure: %s", exc)
        return JSONResponse(status_code=500, content={"detail": f"Local storage error: {exc}"})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request, exc):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "pgn-field-tracking", "version": "1.0.0"}

    app.include_router(tracking_api.router)
    return app


app = create_app()


def run():
    """Console entry point: serve the tracking bridge with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="127.0.0.1", port=8000)
