"""
APScheduler job for the periodic sync timer.

The timer fires every sync_interval_seconds and hands control to
SyncEngine.run_scheduled(), which probes connectivity while offline and
honours error backoff. max_instances=1 keeps a slow cycle from stacking
a second tick on top of it; the engine's own in-flight flag covers
sync_now() calls from other triggers.

The scheduler runs inside the same process as the engine (see
SyncEngine.start()).
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sonder.config import Settings, get_settings

logger = logging.getLogger(__name__)

PERIODIC_SYNC_JOB_ID = "periodic_sync"


def build_scheduler(sync_engine, settings: Settings = None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        sync_engine: SyncEngine whose run_scheduled() the timer calls.
        settings: Supplies sync_interval_seconds.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = settings or get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _periodic_sync,
        trigger="interval",
        seconds=settings.sync_interval_seconds,
        id=PERIODIC_SYNC_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
        kwargs={"sync_engine": sync_engine},
    )

    return scheduler


async def _periodic_sync(sync_engine) -> None:
    """
    Timer job: one scheduled reconciliation attempt.

    Only storage failures escape the engine; they stop it, so there is
    nothing to keep alive and they are logged rather than re-raised into
    the scheduler.
    """
    from sonder.sync.errors import StorageFatalError

    try:
        await sync_engine.run_scheduled()
    except StorageFatalError as exc:
        logger.error("Periodic sync halted: %s", exc)
