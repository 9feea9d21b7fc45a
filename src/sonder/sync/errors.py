"""
Sync error taxonomy and classification.

  TransientNetworkError     retry silently on the next cycle
    ConnectivityError       host unreachable; abandon the rest of the cycle
  PermanentValidationError  mark the record failed, surface the count
  AuthExpiredError          suspend sync until the user re-authenticates
  StorageFatalError         stop the loop; the only error that propagates

Network-originated exceptions from the backend libraries are mapped onto
this taxonomy by classify_error() at the push/pull/upload call site.
"""
import asyncio
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError


class SyncError(Exception):
    """Base class for classified sync errors."""


class TransientNetworkError(SyncError):
    """Network unreachable, timeout, 5xx or rate limit."""


class ConnectivityError(TransientNetworkError):
    """The backend host could not be reached at all."""


class PermanentValidationError(SyncError):
    """The backend rejected the payload; retrying the same data won't help."""


class PhotoCompressionError(PermanentValidationError):
    """The image could not be decoded or re-encoded."""


class AuthExpiredError(SyncError):
    """The session is missing or no longer accepted by the backend."""


class StorageFatalError(SyncError):
    """The Local Store failed (disk full, corrupt database, ...)."""


# PostgREST codes for JWT problems
_AUTH_CODES = frozenset({"PGRST301", "PGRST302", "PGRST303"})
# PostgREST could not reach or was timed out by the database
_TRANSIENT_PGRST_CODES = frozenset({"PGRST000", "PGRST001", "PGRST002", "PGRST003"})
# Postgres SQLSTATE classes: connection exception, insufficient resources,
# operator intervention (includes statement timeout), transaction rollback
_TRANSIENT_SQLSTATE_CLASSES = frozenset({"08", "53", "57", "40"})


def classify_error(exc: BaseException) -> SyncError:
    """Map an exception raised by a network call onto the sync taxonomy."""
    if isinstance(exc, SyncError):
        return exc

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return TransientNetworkError(f"timed out: {exc}")
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code, str(exc))
    if isinstance(exc, (httpx.ConnectError, ConnectionError)):
        return ConnectivityError(str(exc) or type(exc).__name__)
    if isinstance(exc, httpx.TransportError):
        return TransientNetworkError(str(exc) or type(exc).__name__)
    if isinstance(exc, APIError):
        return _classify_api_error(exc)
    if isinstance(exc, OSError):
        return TransientNetworkError(str(exc) or type(exc).__name__)

    status = _status_code(exc)
    if status is not None:
        return _classify_status(status, str(exc))

    return PermanentValidationError(f"{type(exc).__name__}: {exc}")


def _classify_status(status: int, message: str) -> SyncError:
    if status == 401:
        return AuthExpiredError(message)
    if status in (408, 425, 429) or status >= 500:
        return TransientNetworkError(message)
    return PermanentValidationError(message)


def _classify_api_error(exc: APIError) -> SyncError:
    code = str(exc.code or "")
    message = exc.message or str(exc)
    if code in _AUTH_CODES or "JWT" in message:
        return AuthExpiredError(message)
    if code in _TRANSIENT_PGRST_CODES:
        return TransientNetworkError(message)
    if code.isdigit() and len(code) == 3:
        # Some client versions put the HTTP status in `code`
        return _classify_status(int(code), message)
    if len(code) == 5 and code[:2] in _TRANSIENT_SQLSTATE_CLASSES:
        return TransientNetworkError(message)
    return PermanentValidationError(f"{code}: {message}" if code else message)


def _status_code(exc: BaseException) -> Optional[int]:
    """Best-effort HTTP status from storage-style exceptions.

    Storage errors carry the status either as an attribute or inside the
    error dict passed as the first argument ({"statusCode": 413, ...}).
    """
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        status = _as_int(value)
        if status is not None:
            return status
    if exc.args and isinstance(exc.args[0], dict):
        for key in ("statusCode", "status_code", "status"):
            status = _as_int(exc.args[0].get(key))
            if status is not None:
                return status
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        status = int(value)
    except (TypeError, ValueError):
        return None
    return status if 100 <= status <= 599 else None
