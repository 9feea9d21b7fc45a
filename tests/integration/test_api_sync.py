"""Integration tests for /sync routes."""
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from conftest import make_log, make_place
from sonder.api.main import create_app
from sonder.db.engine import get_session
from sonder.models.kinds import EntityKind
from sonder.models.records import SyncStatus
from sonder.sync.runtime import get_sync_engine


@pytest.fixture(name="client")
def client_fixture(engine, sync_engine):
    app = create_app(start_sync=False)

    def override_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    with TestClient(app) as c:
        yield c


class TestSyncRoutes:
    def test_status_never_run(self, client):
        resp = client.get("/sync/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["last_cycle_status"] == "never_run"
        assert body["pending_count"] == 0
        assert body["is_online"] is True

    def test_trigger_pushes_pending_records(self, client, store, backend):
        store.save(make_place())
        log = store.save(make_log())

        resp = client.post("/sync/trigger")

        assert resp.status_code == 200
        assert "started" in resp.json()["message"].lower()
        assert log.id in backend.tables["logs"]
        assert store.get(EntityKind.LOG, log.id).sync_status == SyncStatus.SYNCED

    def test_status_after_sync(self, client, store):
        store.save(make_place())
        client.post("/sync/trigger")

        body = client.get("/sync/status").json()
        assert body["last_cycle_status"] == "success"
        assert body["pending_count"] == 0
        assert body["last_sync_at"] is not None
        assert body["state"] == "idle"

    def test_pending_count_reported(self, client, store):
        store.save(make_log())
        store.save(make_log())
        assert client.get("/sync/status").json()["pending_count"] == 2

    def test_retry_requeues_failed(self, client, store, backend):
        store.save(make_place())
        log = store.save(make_log())
        store.mark_failed(EntityKind.LOG, log.id, log.version, "rejected")

        resp = client.post("/sync/retry")

        assert resp.json() == {"requeued": 1}
        assert store.get(EntityKind.LOG, log.id).sync_status == SyncStatus.SYNCED

    def test_retry_with_nothing_failed(self, client):
        assert client.post("/sync/retry").json() == {"requeued": 0}

    def test_network_report(self, client, sync_engine):
        resp = client.post("/sync/network", json={"online": False})
        assert resp.json() == {"is_online": False}
        assert client.get("/sync/status").json()["is_online"] is False
