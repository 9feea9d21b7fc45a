"""Process-wide SyncEngine wiring: store, backend, photo queue, network monitor."""
import logging
from typing import Optional

from sonder.config import Settings, get_settings
from sonder.db.engine import get_engine
from sonder.photos.queue import PhotoUploadQueue
from sonder.remote.supabase_backend import SupabaseBackend, connectivity_url
from sonder.store.local_store import LocalStore
from sonder.sync.engine import SyncEngine
from sonder.sync.network import NetworkMonitor

logger = logging.getLogger(__name__)

_sync_engine: Optional[SyncEngine] = None


def build_sync_engine(
    settings: Optional[Settings] = None,
    *,
    db_engine=None,
    backend=None,
) -> SyncEngine:
    """Assemble a SyncEngine from settings.

    Args:
        settings: Defaults to get_settings().
        db_engine: SQLAlchemy engine; defaults to the shared get_engine().
        backend: RemoteBackend; defaults to a (not yet connected) SupabaseBackend.
    """
    settings = settings or get_settings()
    store = LocalStore(db_engine if db_engine is not None else get_engine())
    backend = backend if backend is not None else SupabaseBackend(settings)
    probe_url = connectivity_url(settings) if settings.supabase_url else None
    network = NetworkMonitor(probe_url, timeout_seconds=settings.network_timeout_seconds)
    photo_queue = PhotoUploadQueue(backend, settings)
    return SyncEngine(
        store,
        backend,
        settings=settings,
        photo_queue=photo_queue,
        network=network,
    )


def get_sync_engine() -> SyncEngine:
    """Return the module-level SyncEngine, creating it on first call."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = build_sync_engine()
    return _sync_engine
