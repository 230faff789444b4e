"""
Tests for the /api routes.
"""
from unittest.mock import Mock

from conftest import ADMIN_TOKEN
from action_monitor.models import ActionStatus

AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def post_event(client, **fields):
    event = {"node_type": "post", "node_id": 1, "action_type": "UPDATE"}
    event.update(fields)
    return client.post("/api/mutations", json=event)


class TestMutations:

    def test_single_event_is_recorded(self, client):
        response = post_event(client, node_id=42, action_type="CREATE")

        assert response.status_code == 202
        data = response.get_json()
        assert data["dropped"] == 0
        assert data["recorded"][0]["sequence"] == 1
        assert data["recorded"][0]["dedup_key"] == "CONTENT:post:42"
        assert data["recorded"][0]["poll_token"] is None
        assert data["recorded"][0]["poll_status"] is None

    def test_batch_coalesces_within_request(self, client, monitor):
        response = client.post("/api/mutations", json={"events": [
            {"node_type": "post", "node_id": 1, "action_type": "CREATE"},
            {"node_type": "post", "node_id": 1, "action_type": "UPDATE"},
            {"node_type": "term", "node_id": 9, "action_type": "DELETE"},
        ]})

        data = response.get_json()
        assert [r["sequence"] for r in data["recorded"]] == [1, 1, 2]
        assert monitor.store.get(1).action_type.value == "UPDATE"

    def test_malformed_events_are_dropped_not_rejected(self, client):
        response = client.post("/api/mutations", json={"events": [
            {"node_type": "post", "action_type": "UPDATE"},
            {"node_type": "widget", "node_id": 3, "action_type": "UPDATE"},
            {"node_type": "post", "node_id": 3, "action_type": "UPDATE", "is_autosave": True},
        ]})

        assert response.status_code == 202
        data = response.get_json()
        assert data["recorded"] == []
        assert data["dropped"] == 3
        assert [d["reason"] for d in data["dropped_reasons"]] == ["malformed", "malformed", "autosave"]

    def test_non_json_body_is_dropped(self, client):
        response = client.post("/api/mutations", data="not json", content_type="text/plain")
        assert response.status_code == 202
        assert response.get_json()["dropped"] == 1

    def test_preview_event_returns_poll_token(self, client):
        response = post_event(client, is_preview=True, preview_context={"revision_id": "5"})

        recorded = response.get_json()["recorded"][0]
        assert recorded["stream_type"] == "PREVIEW"
        assert recorded["poll_token"]
        assert recorded["poll_status"] == "PENDING"

    def test_preview_folded_into_expired_token_reports_expired(self, client, clock):
        first = post_event(client, is_preview=True).get_json()["recorded"][0]
        clock.advance(61)

        again = post_event(client, is_preview=True, preview_context={"revision_id": "6"}).get_json()["recorded"][0]

        assert again["sequence"] == first["sequence"]
        assert again["poll_token"] == first["poll_token"]
        assert again["poll_status"] == "EXPIRED"


class TestPreviewPolling:

    def test_poll_pending_then_done(self, client, mock_post):
        token = post_event(client, is_preview=True).get_json()["recorded"][0]["poll_token"]

        response = client.get(f"/api/preview/{token}")
        assert response.status_code == 200
        assert response.get_json()["status"] == "PENDING"

        client.post("/api/dispatch", headers=AUTH)
        assert client.get(f"/api/preview/{token}").get_json()["status"] == "DONE"

    def test_poll_expired(self, client, clock):
        token = post_event(client, is_preview=True).get_json()["recorded"][0]["poll_token"]
        clock.advance(61)
        assert client.get(f"/api/preview/{token}").get_json()["status"] == "EXPIRED"

    def test_unknown_token_is_404(self, client):
        response = client.get("/api/preview/nope")
        assert response.status_code == 404


class TestListActions:

    def test_since_returns_newer_actions(self, client):
        for node_id in (1, 2, 3):
            post_event(client, node_id=node_id)

        data = client.get("/api/actions?since=1").get_json()

        assert [a["sequence"] for a in data["actions"]] == [2, 3]
        assert data["last_sequence"] == 3
        assert data["actions"][0]["status"] == "PENDING"

    def test_empty_page_keeps_since(self, client):
        data = client.get("/api/actions?since=10").get_json()
        assert data["actions"] == []
        assert data["last_sequence"] == 10

    def test_preview_stream_requires_token(self, client):
        post_event(client, is_preview=True)

        assert client.get("/api/actions?stream_type=PREVIEW").status_code == 401

        response = client.get("/api/actions?stream_type=PREVIEW", headers=AUTH)
        assert response.status_code == 200
        assert response.get_json()["count"] == 1

    def test_anonymous_read_hides_preview_actions(self, client):
        post_event(client, node_id=1)
        post_event(client, node_id=2, is_preview=True)

        anonymous = client.get("/api/actions").get_json()
        authorized = client.get("/api/actions", headers=AUTH).get_json()

        assert [a["stream_type"] for a in anonymous["actions"]] == ["CONTENT"]
        assert authorized["count"] == 2

    def test_bad_parameters(self, client):
        assert client.get("/api/actions?since=abc").status_code == 400
        assert client.get("/api/actions?stream_type=OTHER").status_code == 400


class TestAdminRoutes:

    def test_admin_routes_require_token(self, client):
        assert client.post("/api/dispatch").status_code == 401
        assert client.get("/api/deliveries").status_code == 401
        assert client.post("/api/actions/1/requeue").status_code == 401
        assert client.post("/api/dispatch", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_dispatch_reports_cycle(self, client, mock_post):
        post_event(client, node_id=1)

        response = client.post("/api/dispatch", headers=AUTH)

        assert response.status_code == 200
        data = response.get_json()
        assert data["deliveries"] == 1
        content = next(s for s in data["streams"] if s["stream_type"] == "CONTENT")
        assert content["delivery"]["outcome"] == "delivered"
        assert content["delivery"]["delivered"] == [1]

    def test_deliveries_lists_attempts(self, client, mock_post):
        post_event(client, node_id=1)
        client.post("/api/dispatch", headers=AUTH)

        data = client.get("/api/deliveries", headers=AUTH).get_json()

        assert len(data["deliveries"]) == 1
        assert data["deliveries"][0]["outcome"] == "delivered"
        assert data["deliveries"][0]["action_sequences"] == [1]

    def test_requeue_failed_action(self, client, monitor, mock_post):
        mock_post.return_value = Mock(status_code=400)
        post_event(client, node_id=1)
        client.post("/api/dispatch", headers=AUTH)
        assert monitor.store.get(1).status == ActionStatus.FAILED

        response = client.post("/api/actions/1/requeue", headers=AUTH)

        assert response.status_code == 200
        assert response.get_json()["action"]["status"] == "PENDING"
        assert response.get_json()["action"]["attempt_count"] == 0

    def test_requeue_conflicts(self, client, monitor, mock_post):
        assert client.post("/api/actions/99/requeue", headers=AUTH).status_code == 404

        post_event(client, node_id=1)
        assert client.post("/api/actions/1/requeue", headers=AUTH).status_code == 409

        mock_post.return_value = Mock(status_code=400)
        client.post("/api/dispatch", headers=AUTH)
        post_event(client, node_id=1)
        assert client.post("/api/actions/1/requeue", headers=AUTH).status_code == 409


class TestHealth:

    def test_health_reports_pending_counts(self, client):
        post_event(client, node_id=1)
        post_event(client, node_id=2, is_preview=True)

        data = client.get("/api/health").get_json()

        assert data["status"] == "ok"
        assert data["pending"] == {"CONTENT": 1, "PREVIEW": 1}

    def test_unknown_route_is_json_404(self, client):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found"}
