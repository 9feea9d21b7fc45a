"""
LocalStore: durable on-device persistence with per-record sync status.

Every method opens one short session and commits before returning; no
transaction is ever held across a network await. The UI and the sync loop
write independently. Consistency comes from the `version` column: a local
save bumps it, and mark_synced()/mark_failed() only apply when the version
the engine pushed is still the current one.

Status transitions are reported to listeners as (kind, old, new), where
old is None for inserts and new is None for removals. Tombstones report
transitions with kind set and the record status of the tombstone itself
(pending, or failed after a permanent delete error).

Any SQLAlchemy error is re-raised as StorageFatalError.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from sonder.models.kinds import EntityKind, Record, kind_of
from sonder.models.records import DIRTY_STATUSES, SyncStatus
from sonder.models.sync import SyncCursor, SyncLog, Tombstone
from sonder.sync.codec import (
    FAILED_UPLOAD_PREFIX,
    from_remote_row,
    photo_refs,
    set_photo_refs,
)
from sonder.sync.errors import StorageFatalError
from sonder.timeutils import EPOCH, utcnow

logger = logging.getLogger(__name__)

StatusListener = Callable[[EntityKind, Optional[SyncStatus], Optional[SyncStatus]], None]


class LocalStore:
    """Record persistence plus the sync bookkeeping tables."""

    def __init__(self, engine, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            clock: Returns the current naive-UTC time; injected by tests.
        """
        self.engine = engine
        self._clock = clock
        self._listeners: List[StatusListener] = []

    # ─── Plumbing ─────────────────────────────────────────────────────────────

    @contextmanager
    def _session(self):
        try:
            with Session(self.engine) as s:
                yield s
        except SQLAlchemyError as exc:
            logger.error("Local store failure: %s", exc)
            raise StorageFatalError(str(exc)) from exc

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _emit(
        self,
        kind: EntityKind,
        old: Optional[SyncStatus],
        new: Optional[SyncStatus],
    ) -> None:
        if old == new:
            return
        for listener in self._listeners:
            listener(kind, old, new)

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, kind: EntityKind, record_id: str) -> Optional[Record]:
        with self._session() as s:
            return s.get(kind.model, record_id)

    def fetch(
        self,
        kind: EntityKind,
        *,
        statuses: Optional[Iterable[SyncStatus]] = None,
        ids: Optional[Iterable[str]] = None,
        updated_since: Optional[datetime] = None,
    ) -> List[Record]:
        """Fetch records of one kind, optionally filtered by status, id or cursor."""
        model = kind.model
        stmt = select(model)
        if statuses is not None:
            stmt = stmt.where(model.sync_status.in_(list(statuses)))
        if ids is not None:
            stmt = stmt.where(model.id.in_(list(ids)))
        if updated_since is not None:
            stmt = stmt.where(model.updated_at >= updated_since)
        stmt = stmt.order_by(model.updated_at)
        with self._session() as s:
            return list(s.exec(stmt).all())

    def dirty(self, kind: EntityKind) -> List[Record]:
        """Records awaiting push: pending, or failed and eligible again."""
        return self.fetch(kind, statuses=DIRTY_STATUSES)

    def existing_ids(self, kind: EntityKind, ids: Iterable[str]) -> Set[str]:
        model = kind.model
        with self._session() as s:
            return set(s.exec(select(model.id).where(model.id.in_(list(ids)))).all())

    # ─── Local writes ─────────────────────────────────────────────────────────

    def save(self, record: Record) -> Record:
        """Insert or update a record and mark it pending in the same commit."""
        kind = kind_of(record)
        with self._session() as s:
            existing = s.get(kind.model, record.id)
            old_status = existing.sync_status if existing is not None else None
            next_version = (existing.version if existing is not None else 0) + 1

            merged = s.merge(record)
            merged.version = next_version
            merged.sync_status = SyncStatus.PENDING
            merged.updated_at = self._clock()
            merged.last_error = None
            s.add(merged)

            # A re-created id must not be deleted remotely by an old tombstone
            tomb = s.get(Tombstone, (kind.value, record.id))
            tomb_status = _tombstone_status(tomb)
            if tomb is not None:
                s.delete(tomb)

            s.commit()
            s.refresh(merged)
        if tomb_status is not None:
            self._emit(kind, tomb_status, None)
        self._emit(kind, old_status, SyncStatus.PENDING)
        return merged

    def delete(self, kind: EntityKind, record_id: str) -> bool:
        """Delete a record locally and leave a tombstone for the remote delete.

        The tombstone is written even if the row is already gone locally, so
        a stale delete still reaches the backend.

        Returns:
            True if a local row was removed.
        """
        with self._session() as s:
            record = s.get(kind.model, record_id)
            old_status = record.sync_status if record is not None else None
            if record is not None:
                s.delete(record)
            tomb = s.get(Tombstone, (kind.value, record_id))
            old_tomb_status = _tombstone_status(tomb)
            if tomb is None:
                tomb = Tombstone(kind=kind.value, record_id=record_id)
            tomb.deleted_at = self._clock()
            tomb.failed = False
            tomb.last_error = None
            s.add(tomb)
            s.commit()
        if record is not None:
            self._emit(kind, old_status, None)
        self._emit(kind, old_tomb_status, SyncStatus.PENDING)
        return record is not None

    def patch_photo_refs(
        self,
        kind: EntityKind,
        record_id: str,
        replacements: Dict[str, str],
    ) -> Optional[Record]:
        """Swap photo references (placeholder → URL or failure marker).

        The patch is a local mutation: the record goes back to pending so the
        resolved URLs get pushed.

        Returns:
            The updated record, or None if it no longer exists or nothing matched.
        """
        return self._rewrite_photo_refs(
            kind, record_id, lambda refs: [replacements.get(r, r) for r in refs]
        )

    def drop_failed_photos(self, kind: EntityKind, record_id: str) -> Optional[Record]:
        """Remove failure markers from a record, giving up on those images."""
        return self._rewrite_photo_refs(
            kind,
            record_id,
            lambda refs: [r for r in refs if not r.startswith(FAILED_UPLOAD_PREFIX)],
        )

    def _rewrite_photo_refs(self, kind, record_id, rewrite) -> Optional[Record]:
        with self._session() as s:
            record = s.get(kind.model, record_id)
            if record is None:
                return None
            refs = photo_refs(kind, record)
            new_refs = rewrite(refs)
            if new_refs == refs:
                return None
            old_status = record.sync_status
            set_photo_refs(kind, record, new_refs)
            record.version += 1
            record.sync_status = SyncStatus.PENDING
            record.updated_at = self._clock()
            s.add(record)
            s.commit()
            s.refresh(record)
        self._emit(kind, old_status, SyncStatus.PENDING)
        return record

    def requeue_failed(self) -> int:
        """Manual retry: failed records and failed tombstones go back to pending."""
        requeued = 0
        for kind in EntityKind:
            model = kind.model
            with self._session() as s:
                result = s.execute(
                    update(model)
                    .where(model.sync_status == SyncStatus.FAILED)
                    .values(sync_status=SyncStatus.PENDING)
                )
                s.commit()
            for _ in range(result.rowcount or 0):
                self._emit(kind, SyncStatus.FAILED, SyncStatus.PENDING)
            requeued += result.rowcount or 0

        with self._session() as s:
            failed = s.exec(select(Tombstone).where(Tombstone.failed == True)).all()  # noqa: E712
            for tomb in failed:
                tomb.failed = False
                s.add(tomb)
            kinds = [EntityKind(t.kind) for t in failed]
            s.commit()
        for kind in kinds:
            self._emit(kind, SyncStatus.FAILED, SyncStatus.PENDING)
        return requeued + len(kinds)

    # ─── Sync engine writes ───────────────────────────────────────────────────

    def mark_synced(self, kind: EntityKind, record_id: str, version: int) -> bool:
        """Mark synced only if `version` is still the current local version."""
        return self._transition(kind, record_id, version, SyncStatus.SYNCED, None)

    def mark_failed(
        self, kind: EntityKind, record_id: str, version: int, error: str
    ) -> bool:
        """Mark failed only if `version` is still the current local version."""
        return self._transition(kind, record_id, version, SyncStatus.FAILED, error)

    def _transition(self, kind, record_id, version, new_status, error) -> bool:
        model = kind.model
        with self._session() as s:
            record = s.get(model, record_id)
            if record is None or record.version != version:
                return False
            old_status = record.sync_status
            # Compare-and-set so a save from another thread is never overwritten
            result = s.execute(
                update(model)
                .where(model.id == record_id, model.version == version)
                .values(sync_status=new_status, last_error=error)
            )
            s.commit()
        if not result.rowcount:
            return False
        self._emit(kind, old_status, new_status)
        return True

    def merge_remote(
        self,
        kind: EntityKind,
        rows: Sequence[Dict[str, Any]],
        *,
        cursor: Optional[datetime] = None,
    ) -> int:
        """Merge a pulled batch and, if given, advance the kind's cursor.

        Merge policy:
          - ids with a local tombstone are skipped (no resurrection)
          - unknown ids are inserted as synced
          - local pending/failed records are left alone until pushed
          - local synced records take the remote fields when the remote
            updated_at is newer

        The whole batch and the cursor advance share one commit.

        Returns:
            Number of local rows inserted or updated.

        Raises:
            PermanentValidationError: a row could not be decoded; nothing is merged.
        """
        decoded = [from_remote_row(kind, row) for row in rows]
        model = kind.model
        changed = 0
        with self._session() as s:
            tombstoned = set(
                s.exec(select(Tombstone.record_id).where(Tombstone.kind == kind.value)).all()
            )
            for fields in decoded:
                record_id = fields["id"]
                if record_id in tombstoned:
                    continue
                local = s.get(model, record_id)
                if local is None:
                    s.add(model(**fields, sync_status=SyncStatus.SYNCED, version=0))
                    changed += 1
                elif local.sync_status != SyncStatus.SYNCED:
                    continue
                elif fields["updated_at"] > local.updated_at:
                    for key, value in fields.items():
                        if key != "id":
                            setattr(local, key, value)
                    s.add(local)
                    changed += 1
            if cursor is not None:
                self._advance_cursor(s, kind, cursor)
            s.commit()
        return changed

    # ─── Tombstones ───────────────────────────────────────────────────────────

    def tombstones(self, include_failed: bool = False) -> List[Tombstone]:
        stmt = select(Tombstone)
        if not include_failed:
            stmt = stmt.where(Tombstone.failed == False)  # noqa: E712
        with self._session() as s:
            return list(s.exec(stmt.order_by(Tombstone.deleted_at)).all())

    def tombstoned_ids(self, kind: EntityKind) -> Set[str]:
        with self._session() as s:
            return set(
                s.exec(select(Tombstone.record_id).where(Tombstone.kind == kind.value)).all()
            )

    def purge_tombstone(self, kind: EntityKind, record_id: str) -> None:
        """Drop a tombstone once the remote delete is confirmed."""
        with self._session() as s:
            tomb = s.get(Tombstone, (kind.value, record_id))
            if tomb is None:
                return
            old_status = _tombstone_status(tomb)
            s.delete(tomb)
            s.commit()
        self._emit(kind, old_status, None)

    def fail_tombstone(self, kind: EntityKind, record_id: str, error: str) -> None:
        with self._session() as s:
            tomb = s.get(Tombstone, (kind.value, record_id))
            if tomb is None or tomb.failed:
                return
            tomb.failed = True
            tomb.last_error = error
            s.add(tomb)
            s.commit()
        self._emit(kind, SyncStatus.PENDING, SyncStatus.FAILED)

    # ─── Cursors ──────────────────────────────────────────────────────────────

    def get_cursor(self, kind: EntityKind) -> datetime:
        """Last pulled-through timestamp; the epoch forces a full pull."""
        with self._session() as s:
            cursor = s.get(SyncCursor, kind.value)
            return cursor.pulled_through if cursor is not None else EPOCH

    def _advance_cursor(self, s: Session, kind: EntityKind, value: datetime) -> None:
        cursor = s.get(SyncCursor, kind.value)
        if cursor is None:
            cursor = SyncCursor(kind=kind.value, pulled_through=value)
        elif value > cursor.pulled_through:
            cursor.pulled_through = value
        else:
            return
        cursor.updated_at = self._clock()
        s.add(cursor)

    def reset_cursors(self) -> None:
        """Explicit user data reset: the next pull of every kind is a full pull."""
        with self._session() as s:
            for cursor in s.exec(select(SyncCursor)).all():
                s.delete(cursor)
            s.commit()
        logger.info("Sync cursors reset; next pull is a full pull")

    # ─── Status projection ────────────────────────────────────────────────────

    def status_counts(self) -> Dict[str, int]:
        """Pending and failed totals across all kinds, tombstones included."""
        counts = {SyncStatus.PENDING.value: 0, SyncStatus.FAILED.value: 0}
        with self._session() as s:
            for kind in EntityKind:
                model = kind.model
                rows = s.exec(
                    select(model.sync_status, func.count())
                    .where(model.sync_status.in_(list(DIRTY_STATUSES)))
                    .group_by(model.sync_status)
                ).all()
                for status, count in rows:
                    counts[SyncStatus(status).value] += count
            rows = s.exec(
                select(Tombstone.failed, func.count()).group_by(Tombstone.failed)
            ).all()
            for failed, count in rows:
                key = SyncStatus.FAILED if failed else SyncStatus.PENDING
                counts[key.value] += count
        return counts

    # ─── Cycle audit log ──────────────────────────────────────────────────────

    def begin_sync_log(self) -> SyncLog:
        log = SyncLog(started_at=self._clock(), status="running")
        with self._session() as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def finish_sync_log(
        self,
        log: SyncLog,
        *,
        status: str,
        records_pushed: int = 0,
        records_pulled: int = 0,
        records_failed: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session() as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = self._clock()
            db_log.records_pushed = records_pushed
            db_log.records_pulled = records_pulled
            db_log.records_failed = records_failed
            db_log.error_message = error_message
            s.add(db_log)
            s.commit()

    def latest_sync_log(self) -> Optional[SyncLog]:
        with self._session() as s:
            return s.exec(select(SyncLog).order_by(SyncLog.started_at.desc())).first()

    def last_successful_sync(self) -> Optional[datetime]:
        with self._session() as s:
            log = s.exec(
                select(SyncLog)
                .where(SyncLog.status == "success")
                .order_by(SyncLog.finished_at.desc())
            ).first()
            return log.finished_at if log is not None else None


def _tombstone_status(tomb: Optional[Tombstone]) -> Optional[SyncStatus]:
    if tomb is None:
        return None
    return SyncStatus.FAILED if tomb.failed else SyncStatus.PENDING
