"""Domain records: places, logs and trips, each carrying a sync status.

Every table shares the same sync bookkeeping columns:

  sync_status  synced | pending | failed
  version      local optimistic version; bumped on every local mutation and
               compared when a push completes, never sent to the backend
  last_error   message of the last permanent push failure (local only)

List-valued columns are stored as JSON. Assign a new list rather than
mutating in place so SQLAlchemy sees the change.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from sonder.timeutils import utcnow


class SyncStatus(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


DIRTY_STATUSES = (SyncStatus.PENDING, SyncStatus.FAILED)


class Rating(str, Enum):
    SKIP = "skip"
    SOLID = "solid"
    MUST_SEE = "must_see"


def new_id() -> str:
    # Postgres returns uuids lower-cased; keep local ids in the same form
    return str(uuid4()).lower()


class Place(SQLModel, table=True):
    """A venue, keyed by its Google place id."""

    id: str = Field(primary_key=True)
    name: str
    address: str = ""
    lat: float
    lng: float
    types: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    photo_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    version: int = 0
    last_error: Optional[str] = None


class Log(SQLModel, table=True):
    """A user's rating of a place, with optional photos, note and tags."""

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(index=True)
    place_id: str = Field(index=True)
    rating: Rating = Rating.SOLID
    # Resolved URLs plus "pending-upload:<id>" / "upload-failed:<id>" markers
    photo_urls: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    note: Optional[str] = None
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    trip_id: Optional[str] = None
    visited_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    version: int = 0
    last_error: Optional[str] = None


class Trip(SQLModel, table=True):
    """A named collection of logs, shareable with collaborators."""

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    description: Optional[str] = None
    cover_photo_url: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    collaborator_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    created_by: str = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)

    sync_status: SyncStatus = Field(default=SyncStatus.PENDING, index=True)
    version: int = 0
    last_error: Optional[str] = None
