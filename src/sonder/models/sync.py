"""Sync bookkeeping tables: tombstones, pull cursors and the cycle audit log."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from sonder.timeutils import EPOCH, utcnow


class Tombstone(SQLModel, table=True):
    """A local deletion not yet confirmed by the backend.

    Written in the same transaction that removes the record, purged only
    after the remote delete succeeds.
    """

    kind: str = Field(primary_key=True)
    record_id: str = Field(primary_key=True)
    deleted_at: datetime = Field(default_factory=utcnow)
    failed: bool = False
    last_error: Optional[str] = None


class SyncCursor(SQLModel, table=True):
    """Per-kind watermark bounding incremental pulls."""

    kind: str = Field(primary_key=True)
    pulled_through: datetime = EPOCH
    updated_at: datetime = Field(default_factory=utcnow)


class SyncLog(SQLModel, table=True):
    """Records each reconciliation cycle for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "offline", "error"
    records_pushed: int = 0
    records_pulled: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
