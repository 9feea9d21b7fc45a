"""Tests for local store migration helpers."""
import json

import pytest
from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from sonder.db.migrations import run_migrations
from sonder.models.records import Log, Place, Trip

LEGACY_LOG_DDL = """
CREATE TABLE log (
    id VARCHAR PRIMARY KEY,
    user_id VARCHAR NOT NULL,
    place_id VARCHAR NOT NULL,
    rating VARCHAR NOT NULL,
    photo_url VARCHAR,
    note VARCHAR,
    tags JSON,
    trip_id VARCHAR,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    sync_status VARCHAR NOT NULL
)
"""


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """Schema from before photo_urls and the version column existed."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine, tables=[Place.__table__, Trip.__table__])
    with engine.connect() as conn:
        conn.execute(text(LEGACY_LOG_DDL))
        conn.execute(text(
            "INSERT INTO log (id, user_id, place_id, rating, photo_url, note, tags, "
            "trip_id, created_at, updated_at, sync_status) VALUES "
            "('log-1', 'u1', 'p1', 'SOLID', 'https://cdn.example.test/one.jpg', NULL, '[]', "
            "NULL, '2025-06-01 10:00:00', '2025-06-01 10:00:00', 'SYNCED')"
        ))
        conn.execute(text(
            "INSERT INTO log (id, user_id, place_id, rating, photo_url, note, tags, "
            "trip_id, created_at, updated_at, sync_status) VALUES "
            "('log-2', 'u1', 'p1', 'SKIP', NULL, NULL, '[]', "
            "NULL, '2025-06-01 10:00:00', '2025-06-01 10:00:00', 'SYNCED')"
        ))
        conn.commit()
    yield engine
    engine.dispose()


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)  # second call must be safe


class TestLegacyUpgrade:
    def test_photo_url_backfilled_into_list(self, legacy_engine):
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            raw = conn.execute(text("SELECT photo_urls FROM log WHERE id = 'log-1'")).scalar()
        assert json.loads(raw) == ["https://cdn.example.test/one.jpg"]

    def test_missing_photo_backfills_empty_list(self, legacy_engine):
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            raw = conn.execute(text("SELECT photo_urls FROM log WHERE id = 'log-2'")).scalar()
        assert json.loads(raw) == []

    def test_upgraded_rows_load_as_models(self, legacy_engine):
        run_migrations(legacy_engine)
        with Session(legacy_engine) as s:
            log = s.get(Log, "log-1")
            assert log.photo_urls == ["https://cdn.example.test/one.jpg"]
            assert log.version == 0
            assert log.last_error is None
            assert log.visited_at is None

    def test_backfill_runs_only_once(self, legacy_engine):
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            conn.execute(text("UPDATE log SET photo_urls = '[\"a\", \"b\"]' WHERE id = 'log-1'"))
            conn.commit()
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            raw = conn.execute(text("SELECT photo_urls FROM log WHERE id = 'log-1'")).scalar()
        assert json.loads(raw) == ["a", "b"]
