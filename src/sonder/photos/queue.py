"""
PhotoUploadQueue: best-effort background photo uploads.

Flow for a batch:
  1. queue_batch_upload() returns at once with one "pending-upload:<id>"
     reference per image, so the owning record can be saved immediately.
  2. Each image becomes a PhotoUploadJob run as its own task; at most
     max_concurrent_uploads run at a time.
  3. A job compresses its image (thread pool), then uploads it, retrying
     transient failures a bounded number of times.
  4. When every job has resolved, the batch completes once: `await batch`
     returns the results and the optional completion callback receives
     them. Registered listeners are called once per owning record with
     that record's share of the results.

Failed jobs keep their compressed bytes in memory so retry_failed() can
re-run them on user request. Nothing is retried automatically after the
bounded attempts, and nothing survives a process restart.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from sonder.config import Settings, get_settings
from sonder.models.kinds import EntityKind
from sonder.photos.compress import compress_image
from sonder.sync.codec import FAILED_UPLOAD_PREFIX, PENDING_UPLOAD_PREFIX
from sonder.sync.errors import SyncError
from sonder.sync.retry import Backoff, retry_transient

logger = logging.getLogger(__name__)

JPEG_CONTENT_TYPE = "image/jpeg"


@dataclass
class UploadContext:
    """Who owns the uploaded photos: the user and, optionally, the record to patch."""

    user_id: str
    kind: EntityKind = EntityKind.LOG
    record_id: Optional[str] = None


@dataclass
class PhotoUploadJob:
    placeholder_id: str
    image: bytes
    context: UploadContext
    compressed: Optional[bytes] = None

    @property
    def path(self) -> str:
        return f"{self.context.user_id}/{self.placeholder_id}.jpg"


@dataclass
class UploadResult:
    placeholder_id: str
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.url is not None

    @property
    def placeholder(self) -> str:
        return PENDING_UPLOAD_PREFIX + self.placeholder_id

    @property
    def failure_marker(self) -> str:
        return FAILED_UPLOAD_PREFIX + self.placeholder_id

    @property
    def resolved_ref(self) -> str:
        """What the record should hold for this image now."""
        return self.url if self.ok else self.failure_marker

    def replacements(self) -> Dict[str, str]:
        """Reference rewrites for LocalStore.patch_photo_refs()."""
        new_ref = self.resolved_ref
        return {self.placeholder: new_ref, self.failure_marker: new_ref}


BatchCompletion = Callable[[List[UploadResult]], Any]
BatchListener = Callable[[UploadContext, List[UploadResult]], Any]


@dataclass
class PhotoBatch:
    """Handle for one queued batch. Await it for the results.

    `context` is the first job's owner; a retry of every failed upload can
    cover more than one record.
    """

    context: UploadContext
    placeholders: List[str]
    _task: "asyncio.Task[List[UploadResult]]" = field(repr=False)

    def __await__(self):
        return self._task.__await__()

    def done(self) -> bool:
        return self._task.done()


class PhotoUploadQueue:
    """Compresses and uploads photos with bounded concurrency."""

    def __init__(
        self,
        backend,
        settings: Optional[Settings] = None,
        *,
        backoff: Optional[Backoff] = None,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            backend: RemoteBackend (or AsyncMock in tests) providing upload_photo().
            settings: Compression, concurrency and retry limits.
            backoff: Delay schedule between transient upload retries.
            sleep: Injected by tests to skip real waiting.
        """
        self._backend = backend
        self._settings = settings or get_settings()
        self._backoff = backoff or Backoff(base_seconds=1.0, max_seconds=8.0)
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_uploads)
        self._listeners: List[BatchListener] = []
        self._failed: Dict[str, PhotoUploadJob] = {}
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def add_listener(self, listener: BatchListener) -> None:
        """Register a callback (sync or async) run after every batch completes."""
        self._listeners.append(listener)

    @property
    def pending_upload_count(self) -> int:
        return len(self._in_flight)

    def failed_placeholders(self, record_id: Optional[str] = None) -> List[str]:
        return [
            pid for pid, job in self._failed.items()
            if record_id is None or job.context.record_id == record_id
        ]

    # ─── Public API ───────────────────────────────────────────────────────────

    def queue_batch_upload(
        self,
        images: Sequence[bytes],
        context: UploadContext,
        completion: Optional[BatchCompletion] = None,
    ) -> PhotoBatch:
        """Queue images for upload; returns placeholders without waiting.

        Must be called from a running event loop.
        """
        jobs = [PhotoUploadJob(uuid4().hex, image, context) for image in images]
        logger.info("Queued %d photo(s) for %s %s", len(jobs), context.kind.value, context.record_id)
        return self._start_batch(jobs, context, completion)

    def retry_failed(
        self,
        record_id: Optional[str] = None,
        completion: Optional[BatchCompletion] = None,
    ) -> Optional[PhotoBatch]:
        """Re-run failed uploads (all, or those owned by one record).

        Returns:
            The retry batch, or None if there was nothing to retry.
        """
        placeholder_ids = self.failed_placeholders(record_id)
        if not placeholder_ids:
            return None
        jobs = [self._failed.pop(pid) for pid in placeholder_ids]
        logger.info("Retrying %d failed photo upload(s)", len(jobs))
        return self._start_batch(jobs, jobs[0].context, completion)

    async def join(self) -> None:
        """Wait until every batch queued so far has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def upload_photo(self, image: bytes, context: UploadContext) -> Optional[str]:
        """Upload one image and wait for its URL (e.g. a trip cover photo).

        Returns:
            The public URL, or None if the upload failed.
        """
        job = PhotoUploadJob(uuid4().hex, image, context)
        result = await self._run_job(job, keep_on_failure=False)
        return result.url

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _start_batch(self, jobs, context, completion) -> PhotoBatch:
        task = asyncio.get_running_loop().create_task(
            self._run_batch(jobs, completion)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        placeholders = [PENDING_UPLOAD_PREFIX + job.placeholder_id for job in jobs]
        return PhotoBatch(context=context, placeholders=placeholders, _task=task)

    async def _run_batch(
        self,
        jobs: List[PhotoUploadJob],
        completion: Optional[BatchCompletion],
    ) -> List[UploadResult]:
        results = list(await asyncio.gather(*(self._run_job(job) for job in jobs)))
        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning("Photo batch finished with %d/%d failure(s)", failed, len(results))

        # One listener call per owning record; a retry batch can span several
        by_owner: Dict[tuple, Tuple[UploadContext, List[UploadResult]]] = {}
        for job, result in zip(jobs, results):
            owner = (job.context.kind, job.context.record_id)
            by_owner.setdefault(owner, (job.context, []))[1].append(result)
        for listener in list(self._listeners):
            for owner_context, owner_results in by_owner.values():
                await _maybe_await(listener(owner_context, owner_results))
        if completion is not None:
            await _maybe_await(completion(results))
        return results

    async def _run_job(self, job: PhotoUploadJob, keep_on_failure: bool = True) -> UploadResult:
        self._in_flight.add(job.placeholder_id)
        try:
            async with self._semaphore:
                if job.compressed is None:
                    job.compressed = await self._compress(job.image)
                url = await retry_transient(
                    lambda: self._backend.upload_photo(job.path, job.compressed, JPEG_CONTENT_TYPE),
                    attempts=self._settings.photo_upload_attempts,
                    backoff=self._backoff,
                    sleep=self._sleep,
                    label=f"photo upload {job.placeholder_id}",
                )
        except SyncError as exc:
            logger.warning("Photo upload %s failed: %s", job.placeholder_id, exc)
            if keep_on_failure:
                self._failed[job.placeholder_id] = job
            return UploadResult(job.placeholder_id, error=str(exc))
        finally:
            self._in_flight.discard(job.placeholder_id)
        return UploadResult(job.placeholder_id, url=url)

    async def _compress(self, image: bytes) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            lambda: compress_image(
                image,
                max_dimension=self._settings.photo_max_dimension,
                max_bytes=self._settings.photo_max_bytes,
                quality=self._settings.photo_jpeg_quality,
            ),
        )


async def _maybe_await(value) -> None:
    if inspect.isawaitable(value):
        await value
