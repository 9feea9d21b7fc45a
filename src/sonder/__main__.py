"""
Main entrypoint: runs the sync engine and its timer headless.

The local API runs separately under uvicorn and starts its own engine.

Usage:
    python -m sonder login          # one-time sign-in
    python -m sonder reset          # reset pull cursors (next pull is full)
    python -m sonder                # starts the sync daemon
    uvicorn sonder.api.main:app --host 127.0.0.1 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_login() -> None:
    from sonder.scripts.login import run_login
    run_login()


def _run_reset() -> None:
    from sonder.db.engine import get_engine
    from sonder.store.local_store import LocalStore

    LocalStore(get_engine()).reset_cursors()


async def _run_daemon() -> None:
    from sonder.config import get_settings
    from sonder.remote.auth import NoSessionError, SessionExpiredError
    from sonder.sync.runtime import get_sync_engine

    settings = get_settings()
    sync_engine = get_sync_engine()

    # Check the session before starting
    try:
        await sync_engine.backend.connect()
    except (NoSessionError, SessionExpiredError) as exc:
        logger.error("%s", exc)
        sys.exit(1)

    await sync_engine.start()
    logger.info(
        "Sync daemon running (interval %ds). Press Ctrl+C to stop.",
        settings.sync_interval_seconds,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        await sync_engine.stop()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m sonder login|reset` or just `python -m sonder`
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "login":
        _run_login()
    elif command == "reset":
        _run_reset()
    else:
        asyncio.run(_run_daemon())
