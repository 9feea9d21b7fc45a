"""Trip routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from sonder.api.routes.logs import decode_photos
from sonder.db.engine import get_session
from sonder.models.kinds import EntityKind
from sonder.models.records import Trip
from sonder.sync.runtime import get_sync_engine

router = APIRouter()


class TripCreate(BaseModel):
    created_by: str
    name: str
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    collaborator_ids: List[str] = []
    cover_photo: Optional[str] = None  # base64-encoded image bytes


class TripUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    collaborator_ids: Optional[List[str]] = None


@router.get("/", response_model=List[Trip])
def list_trips(session: Session = Depends(get_session)):
    """List trips, newest first."""
    return session.exec(select(Trip).order_by(Trip.created_at.desc())).all()


@router.get("/{trip_id}", response_model=Trip)
def get_trip(trip_id: str, session: Session = Depends(get_session)):
    trip = session.get(Trip, trip_id.lower())
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    return trip


@router.post("/", response_model=Trip, status_code=201)
async def create_trip(request: TripCreate, sync_engine=Depends(get_sync_engine)):
    trip = Trip(**request.model_dump(exclude={"cover_photo"}))
    if request.cover_photo and sync_engine.photo_queue is not None:
        images = decode_photos([request.cover_photo])
        return sync_engine.save_with_photos(trip, images, request.created_by)
    return sync_engine.save(trip)


@router.patch("/{trip_id}", response_model=Trip)
async def update_trip(trip_id: str, request: TripUpdate, sync_engine=Depends(get_sync_engine)):
    trip = sync_engine.store.get(EntityKind.TRIP, trip_id.lower())
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    for key, value in request.model_dump(exclude_unset=True).items():
        setattr(trip, key, value)
    return sync_engine.save(trip)


@router.delete("/{trip_id}", status_code=204)
async def delete_trip(trip_id: str, sync_engine=Depends(get_sync_engine)):
    if sync_engine.store.get(EntityKind.TRIP, trip_id.lower()) is None:
        raise HTTPException(status_code=404, detail="Trip not found")
    sync_engine.delete(EntityKind.TRIP, trip_id.lower())
