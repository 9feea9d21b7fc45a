"""Sync trigger, status and manual retry routes."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlmodel import Session, select

from sonder.db.engine import get_session
from sonder.models.sync import SyncLog
from sonder.sync.errors import StorageFatalError
from sonder.sync.runtime import get_sync_engine

logger = logging.getLogger(__name__)

router = APIRouter()


class SyncStatusResponse(BaseModel):
    pending_count: int
    failed_count: int
    last_sync_at: Optional[datetime]
    is_online: bool
    is_syncing: bool
    state: str
    auth_required: bool
    fatal_error: Optional[str]
    last_cycle_status: str
    last_cycle_started_at: Optional[datetime]
    last_cycle_error: Optional[str]


class NetworkStatusRequest(BaseModel):
    online: bool


async def _do_sync(sync_engine) -> None:
    """Background task: one sync_now() call."""
    try:
        await sync_engine.sync_now()
    except StorageFatalError as exc:
        logger.error("Sync halted: %s", exc)


@router.post("/trigger")
async def trigger_sync(
    background_tasks: BackgroundTasks,
    sync_engine=Depends(get_sync_engine),
):
    """
    Request a reconciliation cycle (pull-to-refresh).
    Returns immediately; the cycle runs in the background.
    """
    background_tasks.add_task(_do_sync, sync_engine)
    return {"message": "Sync started", "already_running": sync_engine.is_syncing}


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(
    session: Session = Depends(get_session),
    sync_engine=Depends(get_sync_engine),
):
    """Counters and connectivity, plus the most recent cycle from the audit log."""
    snapshot = sync_engine.observer.snapshot()
    log = session.exec(
        select(SyncLog).order_by(SyncLog.started_at.desc())
    ).first()
    return SyncStatusResponse(
        **snapshot.to_dict(),
        last_cycle_status=log.status if log else "never_run",
        last_cycle_started_at=log.started_at if log else None,
        last_cycle_error=log.error_message if log else None,
    )


@router.post("/retry")
async def retry_failed(
    background_tasks: BackgroundTasks,
    sync_engine=Depends(get_sync_engine),
):
    """Re-queue every failed record and deletion, then sync."""
    count = sync_engine.retry_failed()
    if count:
        background_tasks.add_task(_do_sync, sync_engine)
    return {"requeued": count}


@router.post("/network")
async def set_network_status(
    request: NetworkStatusRequest,
    sync_engine=Depends(get_sync_engine),
):
    """Reachability report from the host app; going online triggers a sync."""
    sync_engine.network.set_online(request.online)
    return {"is_online": sync_engine.network.is_online}
