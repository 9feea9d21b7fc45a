"""Tests for Supabase session token persistence."""
import json
from unittest.mock import MagicMock

import pytest

from sonder.remote.auth import (
    SESSION_FILE_NAME,
    NoSessionError,
    SessionExpiredError,
    SessionStore,
)
from sonder.sync.errors import AuthExpiredError

# ─── Fixtures ─────────────────────────────────────────────────────────────────

FAKE_SESSION_DATA = {
    "access_token": "access-1",
    "refresh_token": "refresh-1",
    "user_id": "user-1",
}


@pytest.fixture
def tmp_session_dir(tmp_path):
    """A temporary directory to act as the session store."""
    return tmp_path / "session"


@pytest.fixture
def sessions(tmp_session_dir):
    return SessionStore(tmp_session_dir)


# ─── Tests: save / load ───────────────────────────────────────────────────────

class TestSaveLoad:
    def test_save_creates_session_file(self, sessions, tmp_session_dir):
        sessions.save(FAKE_SESSION_DATA)
        assert (tmp_session_dir / SESSION_FILE_NAME).exists()

    def test_load_returns_session_data(self, sessions):
        sessions.save(FAKE_SESSION_DATA)
        assert sessions.load() == FAKE_SESSION_DATA

    def test_load_raises_no_session_when_missing(self, sessions):
        with pytest.raises(NoSessionError):
            sessions.load()

    def test_no_session_is_an_auth_error(self):
        assert issubclass(NoSessionError, AuthExpiredError)

    def test_has_session(self, sessions):
        assert sessions.has_session() is False
        sessions.save(FAKE_SESSION_DATA)
        assert sessions.has_session() is True

    def test_clear_removes_session_file(self, sessions, tmp_session_dir):
        sessions.save(FAKE_SESSION_DATA)
        sessions.clear()
        assert not (tmp_session_dir / SESSION_FILE_NAME).exists()

    def test_clear_is_safe_when_no_session(self, sessions):
        sessions.clear()  # should not raise

    def test_saved_file_permissions_owner_only(self, sessions, tmp_session_dir):
        sessions.save(FAKE_SESSION_DATA)
        mode = oct((tmp_session_dir / SESSION_FILE_NAME).stat().st_mode)[-3:]
        assert mode == "600", f"Expected 600, got {mode}"

    def test_saved_dir_permissions_owner_only(self, sessions, tmp_session_dir):
        sessions.save(FAKE_SESSION_DATA)
        mode = oct(tmp_session_dir.stat().st_mode)[-3:]
        assert mode == "700", f"Expected 700, got {mode}"


# ─── Tests: authenticate_and_save ────────────────────────────────────────────

class TestAuthenticateAndSave:
    def test_saves_tokens_not_password(self, sessions, tmp_session_dir):
        client = MagicMock()
        response = client.auth.sign_in_with_password.return_value
        response.session.access_token = "access-1"
        response.session.refresh_token = "refresh-1"
        response.user.id = "user-1"

        user_id = sessions.authenticate_and_save(client, "me@example.com", "hunter2")

        assert user_id == "user-1"
        client.auth.sign_in_with_password.assert_called_once_with(
            {"email": "me@example.com", "password": "hunter2"}
        )
        raw = (tmp_session_dir / SESSION_FILE_NAME).read_text()
        assert "hunter2" not in raw
        assert json.loads(raw)["refresh_token"] == "refresh-1"

    def test_raises_on_failed_login(self, sessions):
        client = MagicMock()
        client.auth.sign_in_with_password.side_effect = Exception("Invalid login credentials")
        with pytest.raises(Exception, match="Invalid login"):
            sessions.authenticate_and_save(client, "me@example.com", "wrong")
        assert not sessions.has_session()


# ─── Tests: restore ───────────────────────────────────────────────────────────

class TestRestore:
    def test_restore_sets_session(self, sessions):
        sessions.save(FAKE_SESSION_DATA)
        client = MagicMock()
        client.auth.set_session.return_value.session.refresh_token = "refresh-1"
        client.auth.set_session.return_value.user.id = "user-1"

        assert sessions.restore(client) == "user-1"
        client.auth.set_session.assert_called_once_with("access-1", "refresh-1")

    def test_rotated_refresh_token_is_saved(self, sessions):
        sessions.save(FAKE_SESSION_DATA)
        client = MagicMock()
        response = client.auth.set_session.return_value
        response.session.access_token = "access-2"
        response.session.refresh_token = "refresh-2"

        sessions.restore(client)

        assert sessions.load()["refresh_token"] == "refresh-2"

    def test_rejected_tokens_raise_session_expired(self, sessions):
        sessions.save(FAKE_SESSION_DATA)
        client = MagicMock()
        client.auth.set_session.side_effect = Exception("Invalid Refresh Token")
        with pytest.raises(SessionExpiredError):
            sessions.restore(client)

    def test_restore_without_session(self, sessions):
        with pytest.raises(NoSessionError):
            sessions.restore(MagicMock())
