"""
Remote row codec.

Converts records into the row dicts the backend tables expect, and remote
rows back into field dicts that map directly onto the SQLModel columns. No
DB access here; callers (LocalStore, SyncEngine) handle persistence.

Local-only columns (sync_status, version, last_error) never leave the
device. Unresolved photo references ("pending-upload:<id>",
"upload-failed:<id>") are stripped from outgoing rows; the engine holds
records that still carry them, so this only matters for direct callers.

Remote column names differ from the local ones in a few places:

  places.lat / places.lng       Place.lat / Place.lng
  trips.description             Trip.description
  logs.photo_urls               Log.photo_urls (legacy rows: photo_url)
"""
from typing import Any, Callable, Dict, List, Optional

from sonder.models.kinds import EntityKind, Record
from sonder.models.records import Log, Place, Rating, Trip
from sonder.sync.errors import PermanentValidationError
from sonder.timeutils import parse_remote_timestamp, to_remote_timestamp, utcnow

PENDING_UPLOAD_PREFIX = "pending-upload:"
FAILED_UPLOAD_PREFIX = "upload-failed:"


def is_unresolved_photo_ref(ref: Optional[str]) -> bool:
    return bool(ref) and ref.startswith((PENDING_UPLOAD_PREFIX, FAILED_UPLOAD_PREFIX))


def photo_refs(kind: EntityKind, record: Record) -> List[str]:
    """All photo references held by a record (URLs and markers)."""
    if kind is EntityKind.LOG:
        return list(record.photo_urls or [])
    if kind is EntityKind.TRIP:
        return [record.cover_photo_url] if record.cover_photo_url else []
    return []


def set_photo_refs(kind: EntityKind, record: Record, refs: List[str]) -> None:
    if kind is EntityKind.LOG:
        record.photo_urls = list(refs)
    elif kind is EntityKind.TRIP:
        record.cover_photo_url = refs[0] if refs else None


def has_unresolved_photos(kind: EntityKind, record: Record) -> bool:
    return any(is_unresolved_photo_ref(ref) for ref in photo_refs(kind, record))


# ─── Encoding ─────────────────────────────────────────────────────────────────


def _encode_place(place: Place) -> Dict[str, Any]:
    return {
        "id": place.id,
        "name": place.name,
        "address": place.address,
        "lat": place.lat,
        "lng": place.lng,
        "types": list(place.types or []),
        "photo_reference": place.photo_reference,
        "created_at": to_remote_timestamp(place.created_at),
        "updated_at": to_remote_timestamp(place.updated_at),
    }


def _encode_log(log: Log) -> Dict[str, Any]:
    return {
        "id": log.id,
        "user_id": log.user_id,
        "place_id": log.place_id,
        "rating": Rating(log.rating).value,
        "photo_urls": [u for u in (log.photo_urls or []) if not is_unresolved_photo_ref(u)],
        "note": log.note,
        "tags": list(log.tags or []),
        "trip_id": log.trip_id,
        "visited_at": to_remote_timestamp(log.visited_at),
        "created_at": to_remote_timestamp(log.created_at),
        "updated_at": to_remote_timestamp(log.updated_at),
    }


def _encode_trip(trip: Trip) -> Dict[str, Any]:
    cover = trip.cover_photo_url
    return {
        "id": trip.id,
        "name": trip.name,
        "description": trip.description,
        "cover_photo_url": None if is_unresolved_photo_ref(cover) else cover,
        "start_date": to_remote_timestamp(trip.start_date),
        "end_date": to_remote_timestamp(trip.end_date),
        "collaborator_ids": list(trip.collaborator_ids or []),
        "created_by": trip.created_by,
        "created_at": to_remote_timestamp(trip.created_at),
        "updated_at": to_remote_timestamp(trip.updated_at),
    }


_ENCODERS: Dict[EntityKind, Callable[[Any], Dict[str, Any]]] = {
    EntityKind.PLACE: _encode_place,
    EntityKind.LOG: _encode_log,
    EntityKind.TRIP: _encode_trip,
}


def to_remote_row(kind: EntityKind, record: Record) -> Dict[str, Any]:
    """Build the upsert payload for a record."""
    return _ENCODERS[kind](record)


# ─── Decoding ─────────────────────────────────────────────────────────────────


def _require(row: Dict[str, Any], key: str) -> Any:
    value = row.get(key)
    if value is None:
        raise PermanentValidationError(f"remote row {row.get('id')!r} missing {key!r}")
    return value


def _timestamps(row: Dict[str, Any]) -> Dict[str, Any]:
    created = parse_remote_timestamp(row.get("created_at")) or utcnow()
    updated = parse_remote_timestamp(row.get("updated_at")) or created
    return {"created_at": created, "updated_at": updated}


def _decode_place(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(_require(row, "id")),
        "name": _require(row, "name"),
        "address": row.get("address") or "",
        "lat": float(_require(row, "lat")),
        "lng": float(_require(row, "lng")),
        "types": list(row.get("types") or []),
        "photo_reference": row.get("photo_reference"),
        **_timestamps(row),
    }


def _decode_log(row: Dict[str, Any]) -> Dict[str, Any]:
    photo_urls = row.get("photo_urls")
    if photo_urls is None:
        legacy = row.get("photo_url")
        photo_urls = [legacy] if legacy else []
    try:
        rating = Rating(row.get("rating") or Rating.SOLID.value)
    except ValueError:
        rating = Rating.SOLID
    return {
        "id": str(_require(row, "id")).lower(),
        "user_id": str(_require(row, "user_id")),
        "place_id": str(_require(row, "place_id")),
        "rating": rating,
        "photo_urls": list(photo_urls),
        "note": row.get("note"),
        "tags": list(row.get("tags") or []),
        "trip_id": row.get("trip_id"),
        "visited_at": parse_remote_timestamp(row.get("visited_at")),
        **_timestamps(row),
    }


def _decode_trip(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(_require(row, "id")).lower(),
        "name": _require(row, "name"),
        "description": row.get("description"),
        "cover_photo_url": row.get("cover_photo_url"),
        "start_date": parse_remote_timestamp(row.get("start_date")),
        "end_date": parse_remote_timestamp(row.get("end_date")),
        "collaborator_ids": list(row.get("collaborator_ids") or []),
        "created_by": str(_require(row, "created_by")),
        **_timestamps(row),
    }


_DECODERS: Dict[EntityKind, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    EntityKind.PLACE: _decode_place,
    EntityKind.LOG: _decode_log,
    EntityKind.TRIP: _decode_trip,
}


def from_remote_row(kind: EntityKind, row: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize a remote row into a field dict for kind's model.

    Raises:
        PermanentValidationError: if a required column is missing or malformed.
    """
    try:
        return _DECODERS[kind](row)
    except (TypeError, ValueError) as exc:
        raise PermanentValidationError(
            f"malformed {kind.value} row {row.get('id')!r}: {exc}"
        ) from exc
