"""Shared test fixtures."""
import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from sonder.config import Settings
from sonder.db.engine import init_db
from sonder.models.kinds import EntityKind
from sonder.models.records import Log, Place, Rating, Trip
from sonder.photos.queue import PhotoUploadQueue
from sonder.store.local_store import LocalStore
from sonder.sync.codec import to_remote_row
from sonder.sync.engine import SyncEngine
from sonder.timeutils import parse_remote_timestamp

USER_ID = "9b2f6c1e-0d7a-4c55-8a1e-3f0c2b7d9e10"
OTHER_USER_ID = "1c7e0a52-44b1-4f0e-9d6b-8e2a5c3f7b21"
PLACE_ID = "ChIJN1t_tDeuEmsRUsoyG83frY4"


class ManualClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeBackend:
    """In-memory RemoteBackend: upsert-by-id tables, filters, offline switch."""

    def __init__(self, user_id: Optional[str] = USER_ID):
        self.user_id = user_id
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.offline = False
        self.calls: List[tuple] = []
        # record id -> exception raised by upsert/delete of that id
        self.upsert_errors: Dict[str, BaseException] = {}
        self.delete_errors: Dict[str, BaseException] = {}
        # consumed in call order; None means the call succeeds
        self.upload_errors: List[Optional[BaseException]] = []
        self.uploads: Dict[str, bytes] = {}
        self.upload_calls = 0
        self.active_uploads = 0
        self.max_active_uploads = 0
        # when set, upserts wait for it (lets tests write mid-push)
        self.upsert_gate: Optional[asyncio.Event] = None
        self.upsert_started = asyncio.Event()
        self.subscriptions: List[tuple] = []

    def _check_online(self) -> None:
        if self.offline:
            raise httpx.ConnectError("network is unreachable")

    def ops(self, op: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == op]

    async def current_user_id(self) -> Optional[str]:
        self._check_online()
        return self.user_id

    async def upsert(self, table: str, row: Dict[str, Any]) -> None:
        self._check_online()
        self.calls.append(("upsert", table, row["id"]))
        self.upsert_started.set()
        if self.upsert_gate is not None:
            await self.upsert_gate.wait()
        error = self.upsert_errors.get(row["id"])
        if error is not None:
            raise error
        self.tables[table][row["id"]] = dict(row)

    async def select(self, table: str, filters=()) -> List[Dict[str, Any]]:
        self._check_online()
        self.calls.append(("select", table, tuple(filters)))
        return [
            dict(row) for row in self.tables[table].values()
            if all(_matches(row, f) for f in filters)
        ]

    async def delete(self, table: str, record_id: str) -> None:
        self._check_online()
        self.calls.append(("delete", table, record_id))
        error = self.delete_errors.get(record_id)
        if error is not None:
            raise error
        self.tables[table].pop(record_id, None)

    async def subscribe(self, table, filters, on_change):
        handle = (table, tuple(filters), on_change)
        self.subscriptions.append(handle)
        return handle

    async def unsubscribe(self, handle) -> None:
        self.subscriptions.remove(handle)

    async def upload_photo(self, path: str, data: bytes, content_type: str) -> str:
        self._check_online()
        self.upload_calls += 1
        error = self.upload_errors.pop(0) if self.upload_errors else None
        self.active_uploads += 1
        self.max_active_uploads = max(self.max_active_uploads, self.active_uploads)
        try:
            await asyncio.sleep(0.01)
        finally:
            self.active_uploads -= 1
        if error is not None:
            raise error
        self.uploads[path] = data
        return f"https://cdn.example.test/photos/{path}"


def _matches(row: Dict[str, Any], f) -> bool:
    value = row.get(f.column)
    if f.op == "eq":
        return value is not None and str(value) == str(f.value)
    if f.op == "gte":
        return (
            value is not None
            and parse_remote_timestamp(value) >= parse_remote_timestamp(f.value)
        )
    if f.op == "contains":
        return set(f.value) <= set(value or [])
    if f.op == "in":
        return value in f.value
    raise ValueError(f.op)


class StorageFailure(Exception):
    """Storage-style error carrying an HTTP status in its first argument."""

    def __init__(self, status: int):
        super().__init__({"statusCode": status, "message": f"storage error {status}"})


# ─── Record factories ─────────────────────────────────────────────────────────

def make_place(place_id: str = PLACE_ID, **kwargs) -> Place:
    fields = dict(name="Blue Bottle Coffee", address="1 Ferry Building, SF", lat=37.7955, lng=-122.3937)
    fields.update(kwargs)
    return Place(id=place_id, **fields)


def make_log(place_id: str = PLACE_ID, user_id: str = USER_ID, **kwargs) -> Log:
    fields = dict(rating=Rating.MUST_SEE, note="Great pour-over", tags=["coffee"])
    fields.update(kwargs)
    return Log(user_id=user_id, place_id=place_id, **fields)


def make_trip(created_by: str = USER_ID, **kwargs) -> Trip:
    fields = dict(name="Lisbon", description="Spring trip")
    fields.update(kwargs)
    return Trip(created_by=created_by, **fields)


def remote_row(kind: EntityKind, record, updated_at: datetime) -> Dict[str, Any]:
    """A backend row for `record` with the given updated_at."""
    record.updated_at = updated_at
    record.created_at = min(record.created_at, updated_at)
    return to_remote_row(kind, record)


# ─── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="clock")
def clock_fixture() -> ManualClock:
    return ManualClock()


@pytest.fixture(name="store")
def store_fixture(engine, clock) -> LocalStore:
    return LocalStore(engine, clock=clock)


@pytest.fixture(name="settings")
def settings_fixture(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        session_dir=tmp_path / "session",
        start_automatically=False,
        backoff_base_seconds=5.0,
        backoff_max_seconds=300.0,
        network_timeout_seconds=2.0,
        max_concurrent_uploads=2,
        photo_upload_attempts=3,
    )


@pytest.fixture(name="backend")
def backend_fixture() -> FakeBackend:
    return FakeBackend()


@pytest.fixture(name="photo_queue")
def photo_queue_fixture(backend, settings) -> PhotoUploadQueue:
    async def no_sleep(_seconds):
        return None

    return PhotoUploadQueue(backend, settings, sleep=no_sleep)


@pytest.fixture(name="sync_engine")
def sync_engine_fixture(store, backend, settings, photo_queue, clock) -> SyncEngine:
    return SyncEngine(
        store,
        backend,
        settings=settings,
        photo_queue=photo_queue,
        clock=clock,
    )
