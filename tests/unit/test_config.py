"""Tests for environment-driven Settings."""
from sonder.config import Settings


def test_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("SONDER_SYNC_INTERVAL_SECONDS", "120")
    monkeypatch.setenv("SONDER_REALTIME_ENABLED", "true")
    settings = Settings(_env_file=None)
    assert settings.sync_interval_seconds == 120
    assert settings.realtime_enabled is True


def test_ignores_unprefixed_environment(monkeypatch):
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "5")
    assert Settings(_env_file=None).sync_interval_seconds == 30


def test_reads_env_file(tmp_path, monkeypatch):
    monkeypatch.delenv("SONDER_MAX_CONCURRENT_UPLOADS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("SONDER_MAX_CONCURRENT_UPLOADS=7\n")
    assert Settings(_env_file=env_file).max_concurrent_uploads == 7
