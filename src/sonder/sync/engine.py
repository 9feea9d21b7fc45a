"""
SyncEngine: reconciles the Local Store with the remote backend.

One reconciliation cycle:
  1. Skip silently if offline, auth is suspended, or there is no session.
  2. Create SyncLog (status="running").
  3. Push, in foreign-key order:
       places (dirty, or referenced by dirty logs) → logs → trips → tombstones
     Each record is upserted by id and marked synced only if its local
     version did not change while the request was in flight.
  4. Pull trips, then logs, each from its own cursor; a failure in one kind
     does not block the other.
  5. Update SyncLog, counters and backoff state.

Failure handling:
  - transient    record stays pending and the cycle moves on; timer ticks
                 back off exponentially
  - unreachable  (ConnectivityError) the rest of the push and the pull are
                 abandoned for this cycle
  - permanent    record marked failed (version-checked); cycle continues
  - auth         sync suspended until resume()
  - storage      StorageFatalError stops the engine and propagates

At most one cycle runs at a time. sync_now() while a cycle is in flight
only sets needs_resync, which makes the running cycle go again as soon as
it finishes.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, TypeVar

from sonder.config import Settings, get_settings
from sonder.models.kinds import PULL_ORDER, EntityKind, Record, kind_of
from sonder.models.sync import Tombstone
from sonder.remote.backend import Filter
from sonder.scheduler.jobs import build_scheduler
from sonder.store.local_store import LocalStore
from sonder.sync.codec import has_unresolved_photos, to_remote_row
from sonder.sync.errors import (
    AuthExpiredError,
    ConnectivityError,
    PermanentValidationError,
    StorageFatalError,
    SyncError,
    TransientNetworkError,
    classify_error,
)
from sonder.sync.network import NetworkMonitor
from sonder.sync.retry import Backoff
from sonder.sync.status import SyncStatusObserver
from sonder.timeutils import parse_remote_timestamp, to_remote_timestamp, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    ERROR_BACKOFF = "error_backoff"
    STOPPED = "stopped"


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle."""

    pushed: int = 0
    pulled: int = 0
    failed: int = 0
    held: int = 0
    transient_error: Optional[str] = None
    connectivity_lost: bool = False
    auth_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    skipped: Optional[str] = None  # "offline", "auth_required", "no_session", "stopped"

    @property
    def interrupted(self) -> bool:
        return self.connectivity_lost or self.auth_error is not None

    @property
    def status(self) -> str:
        if self.skipped:
            return "offline" if self.skipped == "offline" else "skipped"
        if not self.errors:
            return "success"
        return "partial" if self.pushed or self.pulled else "error"


class SyncEngine:
    """Push/pull reconciliation loop over a LocalStore and a RemoteBackend."""

    def __init__(
        self,
        store: LocalStore,
        backend,
        *,
        settings: Optional[Settings] = None,
        photo_queue=None,
        network: Optional[NetworkMonitor] = None,
        observer: Optional[SyncStatusObserver] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: LocalStore over the on-device database.
            backend: RemoteBackend (SupabaseBackend, or a fake in tests).
            settings: Interval, timeout and backoff configuration.
            photo_queue: PhotoUploadQueue whose batch results get patched in.
            network: Reachability monitor; defaults to always-online.
            observer: Status projection; created if not given.
            clock: Returns naive-UTC now; tests inject a manual clock.
        """
        self.store = store
        self.backend = backend
        self.settings = settings or get_settings()
        self.photo_queue = photo_queue
        self.network = network or NetworkMonitor()
        self.observer = observer or SyncStatusObserver()
        self._clock = clock

        self.state = SyncState.IDLE
        self.needs_resync = False
        self.cycles_run = 0
        self._running = False
        self._started = False
        self._stopped = False
        self._auth_suspended = False
        self._consecutive_failures = 0
        self._backoff_until: Optional[datetime] = None
        self._backoff = Backoff(
            base_seconds=self.settings.backoff_base_seconds,
            max_seconds=self.settings.backoff_max_seconds,
        )
        self._scheduler = None
        self._subscriptions: List[Any] = []
        self._tasks: Set[asyncio.Task] = set()

        store.add_status_listener(self.observer.on_status_change)
        self.network.add_listener(self._on_network_change)
        if photo_queue is not None:
            photo_queue.add_listener(self.apply_photo_results)

        self.observer.is_online = self.network.is_online
        self.observer.last_sync_at = store.last_successful_sync()
        self.observer.rebase(store.status_counts())

    # ─── UI-facing projection ─────────────────────────────────────────────────

    @property
    def pending_count(self) -> int:
        return self.observer.pending_count

    @property
    def failed_count(self) -> int:
        return self.observer.failed_count

    @property
    def last_sync_at(self) -> Optional[datetime]:
        return self.observer.last_sync_at

    @property
    def is_syncing(self) -> bool:
        return self._running

    @property
    def backoff_until(self) -> Optional[datetime]:
        return self._backoff_until

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic timer (and realtime triggers, if enabled).

        Does nothing when start_automatically is off; sync_now() still works.
        """
        if not self.settings.start_automatically:
            logger.info("Automatic sync disabled; call sync_now() explicitly")
            return
        self._stopped = False
        self._started = True
        self._set_state(SyncState.IDLE)
        if self._scheduler is None:
            self._scheduler = build_scheduler(self, self.settings)
        self._scheduler.start()
        logger.info("Sync started (every %ds)", self.settings.sync_interval_seconds)
        if self.settings.realtime_enabled:
            await self._subscribe()

    async def stop(self) -> None:
        """Stop after the in-flight cycle, if any; no new cycle starts."""
        self._halt()
        for handle in self._subscriptions:
            try:
                await self.backend.unsubscribe(handle)
            except Exception as exc:
                logger.warning("Unsubscribe failed: %s", exc)
        self._subscriptions = []
        logger.info("Sync stopped")

    def _halt(self) -> None:
        self._stopped = True
        self._started = False
        self._set_state(SyncState.STOPPED)
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

    def resume(self) -> None:
        """Lift an auth suspension after the user has re-authenticated."""
        self._auth_suspended = False
        self.observer.auth_required = False
        self.trigger()

    # ─── Triggers ─────────────────────────────────────────────────────────────

    async def sync_now(self) -> CycleResult:
        """Run a reconciliation cycle now, or flag a resync if one is running.

        Raises:
            StorageFatalError: the local store failed; the engine is stopped.
        """
        if self._running:
            self.needs_resync = True
            return CycleResult(skipped="in_flight")
        if self._stopped:
            return CycleResult(skipped="stopped")

        self._running = True
        self.observer.is_syncing = True
        try:
            while True:
                self.needs_resync = False
                result = await self._run_cycle()
                if not self.needs_resync or self._stopped or self.state is not SyncState.IDLE:
                    return result
                logger.debug("Local write landed during sync; running again")
        finally:
            self._running = False
            self.observer.is_syncing = False

    def trigger(self) -> None:
        """Fire-and-forget sync for local write paths.

        Only active once the engine has been started; before that, writes
        wait for an explicit sync_now().
        """
        if self._running:
            self.needs_resync = True
            return
        if not self._started or self._stopped:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; the next timer tick will sync")
            return
        task = loop.create_task(self.sync_now())
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sync stopped: %s", task.exception())

    async def run_scheduled(self) -> None:
        """Timer tick: probe when offline, honour backoff, then sync."""
        if self._stopped:
            return
        if not self.network.is_online:
            # Coming back online triggers a sync through the network listener
            await self.network.probe()
            return
        if self._backoff_until is not None and self._clock() < self._backoff_until:
            logger.debug("In error backoff until %s", self._backoff_until)
            return
        await self.sync_now()

    def _on_network_change(self, online: bool) -> None:
        self.observer.is_online = online
        if online:
            self.trigger()

    # ─── Local write helpers ──────────────────────────────────────────────────

    def save(self, record: Record) -> Record:
        """Save a local mutation (status → pending) and trigger a sync."""
        saved = self.store.save(record)
        self.trigger()
        return saved

    def delete(self, kind: EntityKind, record_id: str) -> bool:
        """Delete locally, leave a tombstone, and trigger a sync."""
        removed = self.store.delete(kind, record_id)
        self.trigger()
        return removed

    def retry_failed(self) -> int:
        """Manual retry: re-queue failed records and deletions as pending."""
        count = self.store.requeue_failed()
        logger.info("Re-queued %d failed item(s)", count)
        if count:
            self.trigger()
        return count

    # ─── Photos ───────────────────────────────────────────────────────────────

    def save_with_photos(self, record: Record, images: Sequence[bytes], user_id: str) -> Record:
        """Queue photos and save the record holding their placeholders.

        Placeholders are written before control returns to the event loop,
        so a batch can never complete before its record exists.
        """
        from sonder.photos.queue import UploadContext

        kind = kind_of(record)
        batch = self.photo_queue.queue_batch_upload(
            images, UploadContext(user_id=user_id, kind=kind, record_id=record.id)
        )
        if kind is EntityKind.LOG:
            record.photo_urls = list(record.photo_urls or []) + batch.placeholders
        elif kind is EntityKind.TRIP and batch.placeholders:
            record.cover_photo_url = batch.placeholders[0]
        return self.save(record)

    async def apply_photo_results(self, context, results) -> None:
        """Photo batch listener: patch resolved URLs / failure markers into the record."""
        if not results or context.record_id is None:
            return
        replacements: Dict[str, str] = {}
        for result in results:
            replacements.update(result.replacements())
        record = self.store.patch_photo_refs(context.kind, context.record_id, replacements)
        if record is None:
            logger.info(
                "Photo results for %s %s had nothing to patch",
                context.kind.value, context.record_id,
            )
            return
        self.trigger()

    def retry_failed_photos(self, kind: EntityKind, record_id: str):
        """Manually re-upload a record's failed photos.

        Returns:
            The retry PhotoBatch, or None if nothing had failed.
        """
        if self.photo_queue is None:
            return None
        return self.photo_queue.retry_failed(record_id)

    def drop_failed_photos(self, kind: EntityKind, record_id: str) -> Optional[Record]:
        """Give up on a record's failed photos so the record can sync."""
        record = self.store.drop_failed_photos(kind, record_id)
        if record is not None:
            self.trigger()
        return record

    # ─── Cycle ────────────────────────────────────────────────────────────────

    async def _run_cycle(self) -> CycleResult:
        result = CycleResult()
        if not self.network.is_online:
            logger.info("Offline - skipping sync")
            result.skipped = "offline"
            return result
        if self._auth_suspended:
            logger.info("Auth required - skipping sync")
            result.skipped = "auth_required"
            return result

        try:
            user_id = await self._remote(self.backend.current_user_id())
        except AuthExpiredError as exc:
            self._suspend_auth(exc, result)
            result.skipped = "auth_required"
            return result
        except (TransientNetworkError, PermanentValidationError) as exc:
            logger.info("Session check failed - skipping sync: %s", exc)
            self._enter_backoff()
            result.skipped = "offline"
            return result
        if user_id is None:
            logger.info("No session - skipping sync")
            result.skipped = "no_session"
            return result

        try:
            log = self.store.begin_sync_log()
            self.cycles_run += 1

            self._set_state(SyncState.PUSHING)
            await self._push(user_id, result)
            if not result.interrupted:
                self._set_state(SyncState.PULLING)
                await self._pull(user_id, result)

            self._finish_cycle(log, result)
        except StorageFatalError as exc:
            self._fatal(exc)
            raise
        return result

    def _finish_cycle(self, log, result: CycleResult) -> None:
        if result.transient_error is not None:
            self._enter_backoff()
        else:
            self._consecutive_failures = 0
            self._backoff_until = None
            self._set_state(SyncState.IDLE)
            if result.auth_error is None:
                self.observer.last_sync_at = self._clock()

        self.observer.rebase(self.store.status_counts())
        self.store.finish_sync_log(
            log,
            status=result.status,
            records_pushed=result.pushed,
            records_pulled=result.pulled,
            records_failed=result.failed,
            error_message="; ".join(result.errors) or None,
        )
        logger.info(
            "Sync %s: pushed=%d pulled=%d failed=%d held=%d",
            result.status, result.pushed, result.pulled, result.failed, result.held,
        )

    # ─── Push ─────────────────────────────────────────────────────────────────

    async def _push(self, user_id: str, result: CycleResult) -> None:
        logs = self.store.dirty(EntityKind.LOG)
        place_ids = {log.place_id for log in logs}

        places = {place.id: place for place in self.store.dirty(EntityKind.PLACE)}
        referenced = place_ids - set(places)
        if referenced:
            for place in self.store.fetch(EntityKind.PLACE, ids=referenced):
                places[place.id] = place

        unpushed_places = set()
        for place in places.values():
            if not await self._push_record(EntityKind.PLACE, place, result):
                unpushed_places.add(place.id)
            if result.interrupted:
                return

        missing_places = place_ids - set(places)
        for log in logs:
            if log.place_id in missing_places:
                self._reject(EntityKind.LOG, log, "place not found locally", result)
                continue
            if log.place_id in unpushed_places:
                continue
            if has_unresolved_photos(EntityKind.LOG, log):
                result.held += 1
                continue
            await self._push_record(EntityKind.LOG, log, result)
            if result.interrupted:
                return

        for trip in self.store.dirty(EntityKind.TRIP):
            if trip.created_by != user_id:
                # Collaborator trips are managed by their owner
                self._reject(EntityKind.TRIP, trip, "trip is owned by another user", result)
                continue
            if has_unresolved_photos(EntityKind.TRIP, trip):
                result.held += 1
                continue
            await self._push_record(EntityKind.TRIP, trip, result)
            if result.interrupted:
                return

        for tomb in self.store.tombstones():
            await self._push_deletion(tomb, result)
            if result.interrupted:
                return

    async def _push_record(self, kind: EntityKind, record: Record, result: CycleResult) -> bool:
        """Upsert one record. Returns True if the backend accepted it."""
        version = record.version
        try:
            row = to_remote_row(kind, record)
            await self._remote(self.backend.upsert(kind.table, row))
        except TransientNetworkError as exc:
            logger.info("Push of %s %s deferred: %s", kind.value, record.id, exc)
            self._note_transient(exc, f"{kind.value} {record.id}", result)
            return False
        except AuthExpiredError as exc:
            self._suspend_auth(exc, result)
            return False
        except PermanentValidationError as exc:
            self._reject(kind, record, str(exc), result)
            return False

        if self.store.mark_synced(kind, record.id, version):
            result.pushed += 1
        else:
            logger.debug("%s %s changed during push; left pending", kind.value, record.id)
        return True

    async def _push_deletion(self, tomb: Tombstone, result: CycleResult) -> None:
        kind = EntityKind(tomb.kind)
        try:
            await self._remote(self.backend.delete(kind.table, tomb.record_id))
        except TransientNetworkError as exc:
            logger.info("Delete of %s %s deferred: %s", kind.value, tomb.record_id, exc)
            self._note_transient(exc, f"delete {kind.value} {tomb.record_id}", result)
            return
        except AuthExpiredError as exc:
            self._suspend_auth(exc, result)
            return
        except PermanentValidationError as exc:
            logger.warning("Delete of %s %s rejected: %s", kind.value, tomb.record_id, exc)
            self.store.fail_tombstone(kind, tomb.record_id, str(exc))
            result.failed += 1
            result.errors.append(f"{kind.value} {tomb.record_id}: {exc}")
            return
        self.store.purge_tombstone(kind, tomb.record_id)
        result.pushed += 1

    def _note_transient(self, exc: TransientNetworkError, what: str, result: CycleResult) -> None:
        result.transient_error = str(exc)
        result.errors.append(f"{what}: {exc}")
        if isinstance(exc, ConnectivityError):
            result.connectivity_lost = True

    def _reject(self, kind: EntityKind, record: Record, error: str, result: CycleResult) -> None:
        logger.warning("Push of %s %s rejected: %s", kind.value, record.id, error)
        if self.store.mark_failed(kind, record.id, record.version, error):
            result.failed += 1
        result.errors.append(f"{kind.value} {record.id}: {error}")

    # ─── Pull ─────────────────────────────────────────────────────────────────

    async def _pull(self, user_id: str, result: CycleResult) -> None:
        for kind in PULL_ORDER:
            try:
                result.pulled += await self._pull_kind(kind, user_id)
            except TransientNetworkError as exc:
                logger.info("Pull %s interrupted: %s", kind.value, exc)
                self._note_transient(exc, f"pull {kind.value}", result)
                if result.connectivity_lost:
                    return
            except AuthExpiredError as exc:
                self._suspend_auth(exc, result)
                return
            except PermanentValidationError as exc:
                logger.warning("Pull %s failed: %s", kind.value, exc)
                result.errors.append(f"pull {kind.value}: {exc}")

    async def _pull_kind(self, kind: EntityKind, user_id: str) -> int:
        """Fetch rows changed since the kind's cursor and merge them.

        Returns:
            Number of local rows inserted or updated.
        """
        since = to_remote_timestamp(self.store.get_cursor(kind))
        changed_since = Filter.gte("updated_at", since)
        complete = True

        if kind is EntityKind.TRIP:
            rows = await self._remote(
                self.backend.select(kind.table, [Filter.eq("created_by", user_id), changed_since])
            )
            try:
                shared = await self._remote(
                    self.backend.select(
                        kind.table, [Filter.contains("collaborator_ids", [user_id]), changed_since]
                    )
                )
            except (TransientNetworkError, PermanentValidationError) as exc:
                # Best effort; without them the cursor must not move past shared rows
                logger.info("Collaborator trips unavailable: %s", exc)
                shared = []
                complete = False
            rows = _dedupe(rows + shared)
        else:
            rows = await self._remote(
                self.backend.select(kind.table, [Filter.eq("user_id", user_id), changed_since])
            )
            await self._pull_missing_places(rows)

        if not rows:
            return 0
        cursor = _max_updated_at(rows) if complete else None
        changed = self.store.merge_remote(kind, rows, cursor=cursor)
        logger.info("Pull %s: %d row(s) fetched, %d merged", kind.value, len(rows), changed)
        return changed

    async def _pull_missing_places(self, log_rows: List[Dict[str, Any]]) -> None:
        place_ids = {row["place_id"] for row in log_rows if row.get("place_id")}
        if not place_ids:
            return
        missing = place_ids - self.store.existing_ids(EntityKind.PLACE, place_ids)
        if not missing:
            return
        places = await self._remote(
            self.backend.select(EntityKind.PLACE.table, [Filter.in_("id", sorted(missing))])
        )
        self.store.merge_remote(EntityKind.PLACE, places)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _remote(self, call: Awaitable[T]) -> T:
        """Await a backend call under the network timeout, classifying failures."""
        try:
            return await asyncio.wait_for(call, timeout=self.settings.network_timeout_seconds)
        except Exception as exc:
            error = classify_error(exc)
            if error is exc:
                raise
            raise error from exc

    def _set_state(self, state: SyncState) -> None:
        if self._stopped and state is not SyncState.STOPPED:
            # A cycle finishing after stop() must not revive the state
            return
        self.state = state
        self.observer.state = state.value

    def _enter_backoff(self) -> None:
        delay = self._backoff.delay(self._consecutive_failures)
        self._consecutive_failures += 1
        self._backoff_until = self._clock() + timedelta(seconds=delay)
        self._set_state(SyncState.ERROR_BACKOFF)
        logger.info("Sync backing off for %.0fs", delay)

    def _suspend_auth(self, exc: SyncError, result: CycleResult) -> None:
        logger.warning("Sync suspended until re-authentication: %s", exc)
        self._auth_suspended = True
        self.observer.auth_required = True
        result.auth_error = str(exc)
        result.errors.append(f"auth: {exc}")

    def _fatal(self, exc: StorageFatalError) -> None:
        logger.error("Local storage failure; sync halted: %s", exc)
        self.observer.fatal_error = str(exc)
        self._halt()

    async def _subscribe(self) -> None:
        """Row-change subscriptions as a sync trigger; polling remains the fallback."""
        try:
            user_id = await self._remote(self.backend.current_user_id())
            if user_id is None:
                return
            for kind, column in ((EntityKind.LOG, "user_id"), (EntityKind.TRIP, "created_by")):
                handle = await self.backend.subscribe(
                    kind.table, [Filter.eq(column, user_id)], self._on_remote_change
                )
                self._subscriptions.append(handle)
        except Exception as exc:
            logger.warning("Realtime subscription unavailable: %s", exc)

    def _on_remote_change(self, payload: Dict[str, Any]) -> None:
        logger.debug("Remote change: %s", payload.get("eventType") if isinstance(payload, dict) else payload)
        self.trigger()


def _dedupe(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        seen.setdefault(str(row.get("id")).lower(), row)
    return list(seen.values())


def _max_updated_at(rows: List[Dict[str, Any]]) -> Optional[datetime]:
    stamps = [parse_remote_timestamp(row.get("updated_at")) for row in rows]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None
