from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_NAME: str = "PGN Field Tracking"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Local durable store (lives on the device, never a network database)
    DATABASE_URL: str = "sqlite:///./location_tracking.db"

    # Active-session snapshot so a restarted process can resume tracking
    STATE_FILE: str = "./tracking_state.json"

    # Remote attendance API
    ATTENDANCE_API_URL: Optional[str] = None
    ATTENDANCE_API_TOKEN: Optional[str] = None
    LOCATION_BATCH_PATH: str = "/attendance/location-batch"
    CHECKOUT_PATH: str = "/attendance/checkout"

    # Tracking cadence
    UPDATE_INTERVAL_SECONDS: int = 300  # 5 minutes
    SYNC_INTERVAL_SECONDS: Optional[int] = None  # defaults to UPDATE_INTERVAL_SECONDS
    LOCATION_FIX_TIMEOUT_SECONDS: float = 15.0
    SYNC_REQUEST_TIMEOUT_SECONDS: float = 15.0
    SYNC_BATCH_SIZE: int = 25

    # Emergency checkout
    BATTERY_CHECK_INTERVAL_SECONDS: int = 30
    CRITICAL_BATTERY_LEVEL: int = 5  # percent, strictly below triggers checkout
    MAX_SESSION_HOURS: int = 24

    # Housekeeping
    RECORD_RETENTION_DAYS: int = 30

    # Dev server location provider
    SIMULATED_LATITUDE: float = 28.6139
    SIMULATED_LONGITUDE: float = 77.2090

    @property
    def sync_interval_seconds(self) -> int:
        return self.SYNC_INTERVAL_SECONDS or self.UPDATE_INTERVAL_SECONDS

    class Config:
        env_file = ".env"


settings = Settings()
