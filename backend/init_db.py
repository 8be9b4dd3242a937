"""
Local store initialization script
Run this to create the location tables, optionally pruning old synced rows:

    python init_db.py [--prune]
"""
import sys

from fieldtrack.core.clock import SystemClock
from fieldtrack.core.config import settings
from fieldtrack.core.database import SessionLocal, engine, init_db
from fieldtrack.services.location_store import LocationStore


def create_tables():
    """Initialize the local store with tables"""
    print(f"Creating location tables in {settings.DATABASE_URL}...")
    init_db(engine)
    print("✓ Tables created successfully")


def prune():
    """Drop synced rows older than the retention window"""
    store = LocationStore(SessionLocal)
    removed = store.prune_synced(settings.RECORD_RETENTION_DAYS, SystemClock().now_ms())
    print(f"✓ Pruned {removed} synced records older than {settings.RECORD_RETENTION_DAYS} days")


if __name__ == "__main__":
    create_tables()
    if "--prune" in sys.argv[1:]:
        prune()
