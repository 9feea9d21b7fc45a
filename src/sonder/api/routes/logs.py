"""Log routes: local write paths that mark records pending and trigger a sync."""
import base64
import binascii
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from sonder.db.engine import get_session
from sonder.models.kinds import EntityKind
from sonder.models.records import Log, Place, Rating
from sonder.sync.runtime import get_sync_engine

router = APIRouter()


class PlaceIn(BaseModel):
    id: str
    name: str
    address: str = ""
    lat: float
    lng: float
    types: List[str] = []
    photo_reference: Optional[str] = None


class LogCreate(BaseModel):
    user_id: str
    place: PlaceIn
    rating: Rating = Rating.SOLID
    note: Optional[str] = None
    tags: List[str] = []
    trip_id: Optional[str] = None
    visited_at: Optional[datetime] = None
    photos: List[str] = []  # base64-encoded image bytes


class LogUpdate(BaseModel):
    rating: Optional[Rating] = None
    note: Optional[str] = None
    tags: Optional[List[str]] = None
    trip_id: Optional[str] = None


def decode_photos(photos: List[str]) -> List[bytes]:
    try:
        return [base64.b64decode(p, validate=True) for p in photos]
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=422, detail="photos must be base64-encoded")


@router.get("/", response_model=List[Log])
def list_logs(
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    """List logs, newest first, with their sync status."""
    return session.exec(
        select(Log).order_by(Log.created_at.desc()).offset(offset).limit(limit)
    ).all()


@router.get("/{log_id}", response_model=Log)
def get_log(log_id: str, session: Session = Depends(get_session)):
    log = session.get(Log, log_id.lower())
    if not log:
        raise HTTPException(status_code=404, detail="Log not found")
    return log


@router.post("/", response_model=Log, status_code=201)
async def create_log(request: LogCreate, sync_engine=Depends(get_sync_engine)):
    """Save a log (and its place, if new) locally; photos upload in the background."""
    images = decode_photos(request.photos)
    store = sync_engine.store

    if store.get(EntityKind.PLACE, request.place.id) is None:
        sync_engine.save(Place(**request.place.model_dump()))

    log = Log(
        user_id=request.user_id,
        place_id=request.place.id,
        rating=request.rating,
        note=request.note,
        tags=list(request.tags),
        trip_id=request.trip_id,
        visited_at=request.visited_at,
    )
    if images and sync_engine.photo_queue is not None:
        return sync_engine.save_with_photos(log, images, request.user_id)
    return sync_engine.save(log)


@router.patch("/{log_id}", response_model=Log)
async def update_log(log_id: str, request: LogUpdate, sync_engine=Depends(get_sync_engine)):
    log = sync_engine.store.get(EntityKind.LOG, log_id.lower())
    if not log:
        raise HTTPException(status_code=404, detail="Log not found")
    for key, value in request.model_dump(exclude_unset=True).items():
        setattr(log, key, value)
    return sync_engine.save(log)


@router.delete("/{log_id}", status_code=204)
async def delete_log(log_id: str, sync_engine=Depends(get_sync_engine)):
    """Delete locally; the remote delete is pushed on the next cycle."""
    if sync_engine.store.get(EntityKind.LOG, log_id.lower()) is None:
        raise HTTPException(status_code=404, detail="Log not found")
    sync_engine.delete(EntityKind.LOG, log_id.lower())


@router.post("/{log_id}/photos/retry")
async def retry_photos(log_id: str, sync_engine=Depends(get_sync_engine)):
    """Manually re-upload this log's failed photos."""
    batch = sync_engine.retry_failed_photos(EntityKind.LOG, log_id.lower())
    return {"retrying": len(batch.placeholders) if batch is not None else 0}


@router.post("/{log_id}/photos/discard", response_model=Log)
async def discard_failed_photos(log_id: str, sync_engine=Depends(get_sync_engine)):
    """Give up on failed photos so the log can sync without them."""
    log = sync_engine.drop_failed_photos(EntityKind.LOG, log_id.lower())
    if log is None:
        log = sync_engine.store.get(EntityKind.LOG, log_id.lower())
    if log is None:
        raise HTTPException(status_code=404, detail="Log not found")
    return log
