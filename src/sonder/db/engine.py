"""SQLModel engine singleton and session dependency."""
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from sonder.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            connect_args={"check_same_thread": False},  # SQLite only; shared with the sync loop
        )
        init_db(_engine)
    return _engine


def init_db(engine) -> None:
    """Create all tables and apply pending column migrations."""
    # Import all models so metadata is populated before create_all
    from sonder.models.records import Log, Place, Trip  # noqa
    from sonder.models.sync import SyncCursor, SyncLog, Tombstone  # noqa
    SQLModel.metadata.create_all(engine)
    from sonder.db.migrations import run_migrations
    run_migrations(engine)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency that yields a DB session."""
    with Session(get_engine()) as session:
        yield session
