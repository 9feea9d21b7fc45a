"""
Supabase session persistence.

Signing in with email + password yields an access token (short-lived JWT)
and a refresh token. We serialize both to JSON on disk so the password is
only needed once:

    {
        "access_token": "...",
        "refresh_token": "...",
        "user_id": "4f1c...",
    }

On start the tokens are restored into the client; the auth library
refreshes the access token as needed. If the refresh token itself has been
revoked or expired, SessionExpiredError is raised and the user must run
`python -m sonder login` again.
"""
import json
import os
import stat
from pathlib import Path
from typing import Any, Dict, Optional

from sonder.sync.errors import AuthExpiredError

SESSION_FILE_NAME = "session.json"


class NoSessionError(AuthExpiredError):
    """Raised when no saved session exists."""


class SessionExpiredError(AuthExpiredError):
    """Raised when a saved session is rejected by the backend."""


class SessionStore:
    """
    Manages Supabase session persistence.

    Usage:
        store = SessionStore(settings.session_dir)
        if not store.has_session():
            store.authenticate_and_save(client, email, password)
        store.restore(client)
    """

    def __init__(self, session_dir: Path):
        self._session_dir = Path(session_dir)
        self._session_file = self._session_dir / SESSION_FILE_NAME

    @property
    def session_dir(self) -> Path:
        return self._session_dir

    # ── Persistence ───────────────────────────────────────────────────────────

    def has_session(self) -> bool:
        """Return True if a session file exists on disk."""
        return self._session_file.exists()

    def save(self, session_data: Dict[str, Any]) -> None:
        """
        Persist session_data to disk with owner-only permissions.

        Directory: 0700 (rwx------)
        File:      0600 (rw-------)
        """
        self._session_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self._session_dir, stat.S_IRWXU)  # 0700

        self._session_file.write_text(json.dumps(session_data, indent=2))
        os.chmod(self._session_file, stat.S_IRUSR | stat.S_IWUSR)  # 0600

    def load(self) -> Dict[str, Any]:
        """
        Load session_data from disk.

        Raises:
            NoSessionError: if no session file exists.
        """
        if not self._session_file.exists():
            raise NoSessionError(
                f"No session found at {self._session_file}. "
                "Run `python -m sonder login` to authenticate."
            )
        return json.loads(self._session_file.read_text())

    def clear(self) -> None:
        """Delete the session file (does not raise if already absent)."""
        if self._session_file.exists():
            self._session_file.unlink()

    # ── Auth ──────────────────────────────────────────────────────────────────

    def authenticate_and_save(self, client, email: str, password: str) -> str:
        """
        Sign in with email + password and save the resulting tokens.

        Args:
            client: supabase Client.
            email: account email.
            password: account password (not stored on disk).

        Returns:
            The signed-in user's id.
        """
        response = client.auth.sign_in_with_password({"email": email, "password": password})
        session = response.session
        user_id = str(response.user.id)
        self.save(
            {
                "access_token": session.access_token,
                "refresh_token": session.refresh_token,
                "user_id": user_id,
            }
        )
        return user_id

    def restore(self, client) -> Optional[str]:
        """
        Restore the saved session into a supabase client.

        Returns:
            The user id of the restored session.

        Raises:
            NoSessionError: if no session is saved.
            SessionExpiredError: if the backend rejects the saved tokens.
        """
        data = self.load()
        try:
            response = client.auth.set_session(data["access_token"], data["refresh_token"])
        except Exception as exc:
            raise SessionExpiredError(
                "Session has expired. Run `python -m sonder login` to re-authenticate."
            ) from exc

        session = getattr(response, "session", None)
        if session is not None and session.refresh_token != data["refresh_token"]:
            # Refresh tokens rotate; keep the newest one on disk
            data["access_token"] = session.access_token
            data["refresh_token"] = session.refresh_token
            self.save(data)
        user = getattr(response, "user", None)
        return str(user.id) if user is not None else data.get("user_id")
