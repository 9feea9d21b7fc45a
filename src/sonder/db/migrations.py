"""
Database migrations for the local store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from init_db() after create_all() so both fresh
installs and existing databases are handled without manual steps.
"""
import json

from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.
    Supports SQLite only (uses PRAGMA table_info).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # Log: single photo_url was replaced by a photo_urls list
        added = _add_column_if_missing(conn, "log", "photo_urls", "JSON")
        if added:
            _backfill_photo_urls(conn)
        _add_column_if_missing(conn, "log", "visited_at", "DATETIME")

        # Sync bookkeeping added after the first release
        for table in ("place", "log", "trip"):
            _add_column_if_missing(conn, table, "version", "INTEGER NOT NULL DEFAULT 0")
            _add_column_if_missing(conn, table, "last_error", "VARCHAR")
        _add_column_if_missing(conn, "place", "updated_at", "DATETIME")

        conn.commit()


def _columns(conn, table: str) -> set:
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    return {row[1] for row in result}


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> bool:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "JSON", "DATETIME".

    Returns:
        True if the column was added.
    """
    if column in _columns(conn, table):
        return False
    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
    return True


def _backfill_photo_urls(conn) -> None:
    """Copy the legacy photo_url value into the new photo_urls list."""
    if "photo_url" not in _columns(conn, "log"):
        return
    rows = conn.execute(text("SELECT id, photo_url FROM log")).fetchall()
    for log_id, photo_url in rows:
        urls = [photo_url] if photo_url else []
        conn.execute(
            text("UPDATE log SET photo_urls = :urls WHERE id = :id"),
            {"urls": json.dumps(urls), "id": log_id},
        )
