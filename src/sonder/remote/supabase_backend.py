"""
Async wrapper around the supabase Python client.

The table and storage APIs of the supabase client are synchronous; we run
them in the default thread pool executor so they don't block the asyncio
event loop. Every call is bounded by the configured network timeout. A
timed-out call is abandoned, not killed: the worker thread finishes the
request and its result is discarded.

Realtime row-change subscriptions are only available on the async client,
which is created lazily the first time subscribe() is called.

Exceptions from the client libraries propagate unchanged; the sync engine
classifies them at the call site (see sonder.sync.errors).
"""
import asyncio
import logging
from typing import Any, List, Optional, Sequence

from supabase import Client, acreate_client, create_client

from sonder.config import Settings, get_settings
from sonder.remote.auth import SessionStore
from sonder.remote.backend import ChangeHandler, Filter, Row

logger = logging.getLogger(__name__)


class SupabaseBackend:
    """
    Thin async wrapper over supabase.Client.

    Call connect() before any data methods. connect() restores the saved
    session via SessionStore; no credentials are needed at runtime.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_store: Optional[SessionStore] = None,
    ):
        self._settings = settings or get_settings()
        self._sessions = session_store or SessionStore(self._settings.session_dir)
        self._client: Optional[Client] = None
        self._realtime = None
        self._user_id: Optional[str] = None

    async def connect(self) -> None:
        """
        Build the client and restore the saved session.

        Raises:
            NoSessionError: if `python -m sonder login` has not been run.
            SessionExpiredError: if the saved session is no longer valid.
        """
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._connect_sync)

    def _connect_sync(self) -> None:
        client = create_client(self._settings.supabase_url, self._settings.supabase_key)
        self._user_id = self._sessions.restore(client)
        self._client = client

    async def _run(self, fn, *args, **kwargs):
        """Run a sync client call in the thread pool, bounded by the network timeout."""
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(None, lambda: fn(*args, **kwargs)),
            timeout=self._settings.network_timeout_seconds,
        )

    # ─── Auth ─────────────────────────────────────────────────────────────────

    async def current_user_id(self) -> Optional[str]:
        """The signed-in user's id, or None when there is no usable session."""
        if self._client is None:
            return None
        response = await self._run(self._client.auth.get_user)
        if response is None or response.user is None:
            return None
        self._user_id = str(response.user.id)
        return self._user_id

    # ─── Tables ───────────────────────────────────────────────────────────────

    async def upsert(self, table: str, row: Row) -> None:
        """Insert or update by primary key (idempotent)."""
        query = self._client.table(table).upsert(row, on_conflict="id")
        await self._run(query.execute)

    async def select(self, table: str, filters: Sequence[Filter] = ()) -> List[Row]:
        query = self._client.table(table).select("*")
        for f in filters:
            query = _apply_filter(query, f)
        response = await self._run(query.execute)
        return list(response.data or [])

    async def delete(self, table: str, record_id: str) -> None:
        """Delete by id. Deleting a row that no longer exists succeeds."""
        query = self._client.table(table).delete().eq("id", record_id)
        await self._run(query.execute)

    # ─── Realtime ─────────────────────────────────────────────────────────────

    async def subscribe(
        self, table: str, filters: Sequence[Filter], on_change: ChangeHandler
    ) -> Any:
        """Subscribe to row changes on a table; returns the channel handle."""
        if self._realtime is None:
            self._realtime = await acreate_client(
                self._settings.supabase_url, self._settings.supabase_key
            )
            data = self._sessions.load()
            await self._realtime.auth.set_session(data["access_token"], data["refresh_token"])

        channel = self._realtime.channel(f"sonder-{table}")
        channel.on_postgres_changes(
            "*",
            schema="public",
            table=table,
            filter=filters[0].to_realtime() if filters else None,
            callback=on_change,
        )
        await channel.subscribe()
        logger.info("Subscribed to %s changes", table)
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        if self._realtime is not None:
            await self._realtime.remove_channel(handle)

    # ─── Storage ──────────────────────────────────────────────────────────────

    async def upload_photo(self, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes to the photo bucket and return the public URL.

        Uploads overwrite, so a retry after a timed-out first attempt that
        actually landed does not fail with a duplicate-object error.
        """
        bucket = self._client.storage.from_(self._settings.photo_bucket)
        await self._run(
            bucket.upload, path, data, {"content-type": content_type, "upsert": "true"}
        )
        return await self._run(bucket.get_public_url, path)


def _apply_filter(query, f: Filter):
    if f.op == "eq":
        return query.eq(f.column, f.value)
    if f.op == "gte":
        return query.gte(f.column, f.value)
    if f.op == "contains":
        return query.contains(f.column, f.value)
    if f.op == "in":
        return query.in_(f.column, f.value)
    raise ValueError(f"Unsupported filter op: {f.op!r}")


def connectivity_url(settings: Settings) -> str:
    """URL probed by the network monitor."""
    return settings.supabase_url.rstrip("/") + "/rest/v1/"
