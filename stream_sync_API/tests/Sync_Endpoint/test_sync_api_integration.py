# tests/Sync_Endpoint/test_sync_api_integration.py
#
#
# Imports
import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock
#
# Third-Party Imports
#
# Local Imports
from stream_sync_API.app.main import create_app
from stream_sync_API.app.core.config import settings as default_settings
from stream_sync_API.app.api.v1.endpoints import sync as sync_endpoint_module
from stream_sync_API.app.api.v1.API_Deps.Sync_DB_Deps import get_sync_store
from stream_sync_API.app.core.DB_Management.Sync_Store_DB import SyncStoreError
#
########################################################################################################################
#
# Functions:

@pytest.fixture
def app_settings(tmp_path):
    settings = dict(default_settings)
    settings.update({
        "SYNC_DB_PATH": str(tmp_path / "api_sync.db"),
        "ALLOWED_ORIGINS": ["*"],
        "MAX_BODY_BYTES": 1024 * 1024,
    })
    return settings


@pytest.fixture
def client(app_settings, monkeypatch):
    monkeypatch.setattr(sync_endpoint_module.limiter, "enabled", False)
    app = create_app(app_settings)
    with TestClient(app) as test_client:  # runs the lifespan (store open/close)
        yield test_client


def pull(client, user_id, since=None):
    payload = {"userId": user_id}
    if since is not None:
        payload["since"] = since
    return client.post("/sync/pull", json=payload)


def push(client, user_id, items):
    return client.post("/sync/push", json={"userId": user_id, "items": items})


# --- Test Cases ---

class TestRoundTrip:
    def test_push_then_pull(self, client):
        response = push(client, "user-1", [{"key": "notes", "value": '[{"id":"n1"}]', "updatedAt": 100}])
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert isinstance(body["timestamp"], int)

        response = pull(client, "user-1", 0)
        assert response.status_code == 200
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["key"] == "notes"
        assert items[0]["value"] == '[{"id":"n1"}]'
        assert items[0]["updatedAt"] == 100
        assert items[0]["deletedAt"] is None

    def test_pull_since_defaults_to_zero(self, client):
        push(client, "user-1", [{"key": "settings", "value": "{}", "updatedAt": 1}])
        response = pull(client, "user-1")
        assert response.status_code == 200
        assert [i["key"] for i in response.json()["items"]] == ["settings"]

    def test_pull_reports_server_time(self, client):
        response = pull(client, "nobody", 0)
        assert response.status_code == 200
        body = response.json()
        assert body["items"] == []
        assert body["timestamp"] > 0

    def test_push_without_items_is_accepted(self, client):
        response = client.post("/sync/push", json={"userId": "user-1"})
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_repeated_push_is_idempotent(self, client):
        item = {"key": "notes", "value": "[]", "updatedAt": 250}
        push(client, "user-1", [item])
        push(client, "user-1", [item])
        items = pull(client, "user-1", 0).json()["items"]
        assert len(items) == 1
        assert items[0]["updatedAt"] == 250


class TestPullBoundaryAndIsolation:
    def test_since_is_exclusive(self, client):
        push(client, "user-1", [
            {"key": "a", "value": "1", "updatedAt": 100},
            {"key": "b", "value": "2", "updatedAt": 200},
        ])
        keys = [i["key"] for i in pull(client, "user-1", 100).json()["items"]]
        assert keys == ["b"]

    def test_owners_are_isolated(self, client):
        push(client, "alice", [{"key": "notes", "value": "alice", "updatedAt": 10}])
        push(client, "bob", [{"key": "notes", "value": "bob", "updatedAt": 10}])
        for since in (0, 5, 9):
            values = [i["value"] for i in pull(client, "bob", since).json()["items"]]
            assert values == ["bob"]

    def test_tombstone_propagates(self, client):
        push(client, "user-1", [{"key": "k", "value": "v", "updatedAt": 50}])
        push(client, "user-1", [{"key": "k", "value": None, "updatedAt": 80, "deletedAt": 80}])
        items = pull(client, "user-1", 60).json()["items"]
        assert items == [{"key": "k", "value": None, "updatedAt": 80, "deletedAt": 80}]


class TestValidation:
    def assert_invalid(self, response):
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_PAYLOAD"
        assert body["message"]

    def test_push_missing_user_id(self, client):
        self.assert_invalid(client.post("/sync/push", json={"items": [{"key": "k", "value": "v", "updatedAt": 1}]}))

    def test_push_item_missing_updated_at_changes_nothing(self, client):
        response = push(client, "user-1", [
            {"key": "good", "value": "v", "updatedAt": 1},
            {"key": "bad", "value": "v"},
        ])
        self.assert_invalid(response)
        assert "updatedAt" in response.json()["message"]
        assert pull(client, "user-1", 0).json()["items"] == []

    @pytest.mark.parametrize("item", [
        {"key": "", "value": "v", "updatedAt": 1},
        {"key": "k", "value": "v", "updatedAt": -1},
        {"key": "k", "value": "v", "updatedAt": "1"},
        {"key": "k", "value": "v", "updatedAt": 1.5},
        {"key": "k", "value": "v", "updatedAt": 1, "deletedAt": -5},
        {"key": "k", "value": {"not": "a string"}, "updatedAt": 1},
        {"key": "k", "value": "v", "updatedAt": 2**70},
        {"key": "k", "value": None, "updatedAt": 1, "deletedAt": 2**70},
    ])
    def test_push_invalid_item(self, client, item):
        self.assert_invalid(push(client, "user-1", [item]))
        assert pull(client, "user-1", 0).json()["items"] == []

    @pytest.mark.parametrize("payload", [
        {"since": 0},
        {"userId": "", "since": 0},
        {"userId": "user-1", "since": -1},
        {"userId": "user-1", "since": "10"},
        {"userId": "user-1", "since": 2**70},
    ])
    def test_pull_invalid(self, client, payload):
        self.assert_invalid(client.post("/sync/pull", json=payload))

    def test_largest_storable_timestamp_accepted(self, client):
        response = push(client, "user-1", [{"key": "k", "value": "v", "updatedAt": 2**63 - 1}])
        assert response.status_code == 200
        assert pull(client, "user-1", 2**63 - 1).json()["items"] == []

    def test_malformed_json(self, client):
        response = client.post("/sync/push", content=b"{not json", headers={"Content-Type": "application/json"})
        self.assert_invalid(response)


class TestErrorsAndMisc:
    def test_unknown_route(self, client):
        response = client.get("/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"error": "NOT_FOUND"}

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert isinstance(body["timestamp"], int)

    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_body_too_large(self, app_settings, monkeypatch):
        monkeypatch.setattr(sync_endpoint_module.limiter, "enabled", False)
        app_settings["MAX_BODY_BYTES"] = 64
        app = create_app(app_settings)
        with TestClient(app) as small_client:
            response = push(small_client, "user-1", [{"key": "k", "value": "x" * 200, "updatedAt": 1}])
        assert response.status_code == 413
        assert response.json()["error"] == "PAYLOAD_TOO_LARGE"

    def test_storage_failure_is_generic_500(self, app_settings, monkeypatch):
        monkeypatch.setattr(sync_endpoint_module.limiter, "enabled", False)
        failing_store = MagicMock()
        failing_store.upsert_documents.side_effect = SyncStoreError("disk I/O error at /secret/path")
        app = create_app(app_settings)
        app.dependency_overrides[get_sync_store] = lambda: failing_store
        with TestClient(app) as failing_client:
            response = push(failing_client, "user-1", [{"key": "k", "value": "v", "updatedAt": 1}])
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "STORAGE_FAILURE"
        assert "/secret/path" not in body["message"]

    def test_store_closed_on_shutdown(self, app_settings, monkeypatch):
        monkeypatch.setattr(sync_endpoint_module.limiter, "enabled", False)
        app = create_app(app_settings)
        with TestClient(app) as test_client:
            store = app.state.sync_store
            push(test_client, "user-1", [{"key": "k", "value": "v", "updatedAt": 1}])
            assert store._open_connections
        assert app.state.sync_store is None
        assert store._open_connections == []
