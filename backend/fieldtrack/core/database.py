from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from fieldtrack.core.config import settings

# Base class for models
Base = declarative_base()


def build_engine(db_url: str):
    """Create an engine for the local store.

    SQLite is opened in WAL mode with synchronous=FULL so a committed sample
    survives process death. In-memory URLs share one connection, otherwise
    every session would see its own empty database.
    """
    kwargs = {"echo": False}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool

    engine = create_engine(db_url, **kwargs)

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=FULL")
            cursor.close()

    return engine


def build_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    """Create the location tables if they do not exist yet."""
    from fieldtrack.models import LocationUpdate, EmergencyCheckout  # noqa: F401 - register tables

    Base.metadata.create_all(bind=engine)


# Create engine
engine = build_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)
