# tests/Sync_Client/test_sync_transport.py
#
# Imports
import pytest
import requests
from unittest.mock import MagicMock, patch
#
# Local Imports
from stream_sync_API.app.core.Sync.events import SyncEventBus
from stream_sync_API.app.core.Sync.exceptions import TransportError
from stream_sync_API.app.core.Sync.models import SyncDocument, SyncEvent, SyncStatus
from stream_sync_API.app.core.Sync.transport import HttpApiTransport
#
#######################################################################################################################
#
# Functions:

POST_PATH = "stream_sync_API.app.core.Sync.transport.requests.post"


def fake_response(status_code=200, json_data=None, json_error=False):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    if json_error:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = json_data
    return response


@pytest.fixture
def transport():
    return HttpApiTransport("http://sync.example", timeout=3)


class TestHttpApiTransport:
    def test_pull_parses_documents(self, transport):
        body = {"items": [
            {"key": "notes", "value": "[]", "updatedAt": 10, "deletedAt": None},
            {"key": "settings", "value": None, "updatedAt": 20, "deletedAt": 20},
        ], "timestamp": 99}
        with patch(POST_PATH, return_value=fake_response(json_data=body)) as mock_post:
            result = transport.pull("user-1", 5)

        mock_post.assert_called_once()
        args, kwargs = mock_post.call_args
        assert args[0] == "http://sync.example/sync/pull"
        assert kwargs["json"] == {"userId": "user-1", "since": 5}
        assert kwargs["timeout"] == 3
        assert result.server_time == 99
        assert [d.key for d in result.documents] == ["notes", "settings"]
        assert result.documents[1].is_tombstone

    def test_push_sends_wire_format(self, transport):
        docs = [
            SyncDocument(key="notes", value="[1]", updated_at=50),
            SyncDocument(key="old", value=None, updated_at=60, deleted_at=60),
        ]
        with patch(POST_PATH, return_value=fake_response(json_data={"success": True, "timestamp": 70})) as mock_post:
            assert transport.push("user-1", docs) == 70
        payload = mock_post.call_args.kwargs["json"]
        assert mock_post.call_args.args[0] == "http://sync.example/sync/push"
        assert payload == {"userId": "user-1", "items": [
            {"key": "notes", "value": "[1]", "updatedAt": 50},
            {"key": "old", "value": None, "updatedAt": 60, "deletedAt": 60},
        ]}

    def test_network_error(self, transport):
        with patch(POST_PATH, side_effect=requests.exceptions.ConnectionError("refused")):
            with pytest.raises(TransportError, match="refused"):
                transport.pull("user-1", 0)

    def test_timeout_is_failure(self, transport):
        with patch(POST_PATH, side_effect=requests.exceptions.Timeout("slow")):
            with pytest.raises(TransportError):
                transport.push("user-1", [SyncDocument(key="k", value="v", updated_at=1)])

    def test_http_error_carries_code(self, transport):
        error_body = {"error": "INVALID_PAYLOAD", "message": "items.0.updatedAt: Field required"}
        with patch(POST_PATH, return_value=fake_response(400, error_body)):
            with pytest.raises(TransportError) as exc_info:
                transport.push("user-1", [])
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "INVALID_PAYLOAD"
        assert "HTTP 400" in str(exc_info.value)

    def test_http_error_without_json(self, transport):
        with patch(POST_PATH, return_value=fake_response(502, json_error=True)):
            with pytest.raises(TransportError) as exc_info:
                transport.pull("user-1", 0)
        assert exc_info.value.status_code == 502

    @pytest.mark.parametrize("body", [
        None,
        {"items": "nope", "timestamp": 1},
        {"items": []},
        {"items": [{"key": "", "updatedAt": 1}], "timestamp": 1},
    ])
    def test_malformed_pull_response(self, transport, body):
        with patch(POST_PATH, return_value=fake_response(json_data=body)):
            with pytest.raises(TransportError):
                transport.pull("user-1", 0)

    def test_push_not_acknowledged(self, transport):
        with patch(POST_PATH, return_value=fake_response(json_data={"success": False, "timestamp": 1})):
            with pytest.raises(TransportError, match="acknowledge"):
                transport.push("user-1", [])

    def test_base_url_required(self):
        with pytest.raises(ValueError):
            HttpApiTransport("")


class TestSyncEventBus:
    def test_publish_and_unsubscribe(self):
        bus = SyncEventBus()
        received = []
        subscription = bus.subscribe(received.append)
        event = SyncEvent(kind="cycle_complete", status=SyncStatus.SYNCED, keys=("notes",))
        assert bus.publish(event) == 1
        assert received == [event]

        subscription.unsubscribe()
        assert bus.publish(event) == 0
        assert bus.listener_count == 0
        assert bus.unsubscribe(subscription) is False

    def test_failing_listener_does_not_block_others(self):
        bus = SyncEventBus()
        received = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        assert bus.publish(SyncEvent(kind="status", status=SyncStatus.SYNCING)) == 1
        assert len(received) == 1

    def test_subscription_as_context_manager(self):
        bus = SyncEventBus()
        with bus.subscribe(lambda e: None):
            assert bus.listener_count == 1
        assert bus.listener_count == 0

    def test_rejects_non_callable(self):
        with pytest.raises(TypeError):
            SyncEventBus().subscribe("not callable")
