"""
End-to-end tests for the HTTP and socket surfaces.

Tests cover:
- Health probes, including degraded mode
- Room history, unread, mark-delivered, status and stats routes
- Happy path: chat:send over the socket, then persisted by the consumer
- Offline catch-up on user:online
- Degraded mode: chat:send answers message:error, HTTP keeps working
- Losing the Event Log at runtime switches to degraded mode
- Metrics endpoint and request id header
"""

from fastapi.testclient import TestClient

from chat_pipeline import storage
from chat_pipeline.main import create_app
from chat_pipeline.storage import SessionLocal

from conftest import InMemoryEventLog, make_document, make_services, seconds_ago, wait_until


def seed(*documents):
    with SessionLocal() as db:
        storage.bulk_insert_messages(db, list(documents))


def receive_until(ws, event: str, limit: int = 10) -> dict:
    """Read frames until one named event arrives and return its data."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame["data"]
    raise AssertionError(f"no {event} frame received")


def room_messages(client, room_id: str) -> list:
    return client.get(f"/api/messages/room/{room_id}").json()["data"]


class TestHealth:

    def test_liveness(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness_reports_components(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["components"]["chatIngestion"] == "available"
        assert data["components"]["consumer"]["state"] == "running"
        assert data["components"]["fanout"]["enabled"] is False

    def test_readiness_when_event_log_down(self, degraded_client):
        response = degraded_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["consumer"]["state"] == "stopped"

    def test_readiness_after_event_log_lost(self, db_tables):
        """Test a consumer that gives up on reads takes chat ingestion down with it."""
        services = make_services(InMemoryEventLog(read_failures=10), max_read_retries=1)
        app = create_app(services_factory=lambda: services)

        with TestClient(app) as client:
            assert wait_until(lambda: not services.chat_available)
            data = client.get("/health/ready").json()
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"event": "chat:send", "data": {"message": "hi", "roomId": "r1"}})
                error = receive_until(ws, "message:error")

        assert data["status"] == "degraded"
        assert data["components"]["chatIngestion"] == "degraded"
        assert data["components"]["consumer"]["state"] == "stopped"
        assert services.producer.is_available is False
        assert error["message"] == "Failed to send message"


class TestMessageRoutes:
    """Test the message HTTP routes."""

    def test_room_history_with_pagination(self, client):
        seed(*[make_document(f"m{i}", created_at=seconds_ago(60 - i)) for i in range(1, 6)])

        response = client.get("/api/messages/room/r1", params={"limit": 2, "offset": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert [m["messageId"] for m in data["data"]] == ["m3", "m4"]
        assert data["pagination"] == {"limit": 2, "offset": 1, "count": 2}

    def test_message_fields(self, client):
        seed(make_document("m1", recipients=["u2"]))

        [message] = room_messages(client, "r1")

        assert message["roomId"] == "r1"
        assert message["senderId"] == "u1"
        assert message["content"] == "hello"
        assert message["messageType"] == "text"
        assert message["status"] == "pending"
        assert message["recipients"] == ["u2"]
        assert message["metadata"] == {"requiresDelivery": True, "priority": "normal"}
        assert message["createdAt"].endswith("Z")

    def test_invalid_limit(self, client):
        response = client.get("/api/messages/room/r1", params={"limit": 0})
        assert response.status_code == 422

    def test_unread_and_mark_delivered(self, client):
        seed(
            make_document("m1", recipients=["u2"], created_at=seconds_ago(10)),
            make_document("m2", recipients=["u2"]),
        )

        unread = client.get("/api/messages/unread/u2").json()
        assert unread["count"] == 2
        assert [m["messageId"] for m in unread["data"]] == ["m1", "m2"]

        response = client.post("/api/messages/delivered", json={"userId": "u2", "messageIds": ["m1"]})
        assert response.status_code == 200
        assert response.json()["success"] is True

        unread = client.get("/api/messages/unread/u2").json()
        assert [m["messageId"] for m in unread["data"]] == ["m2"]

    def test_status_update(self, client):
        seed(make_document("m1"))

        response = client.put("/api/messages/m1/status", json={"status": "read"})

        assert response.status_code == 200
        assert room_messages(client, "r1")[0]["status"] == "read"

    def test_status_update_unknown_message(self, client):
        response = client.put("/api/messages/missing/status", json={"status": "read"})
        assert response.status_code == 404

    def test_status_regression_conflict(self, client):
        seed(make_document("m1", status="read"))

        response = client.put("/api/messages/m1/status", json={"status": "sent"})

        assert response.status_code == 409
        assert "cannot move" in response.json()["detail"]

    def test_status_update_invalid_value(self, client):
        seed(make_document("m1"))
        response = client.put("/api/messages/m1/status", json={"status": "archived"})
        assert response.status_code == 422

    def test_room_stats(self, client):
        seed(
            make_document("m1"),
            make_document("m2", status="delivered"),
            make_document("m3", status="read"),
            make_document("m4", status="read"),
        )

        response = client.get("/api/messages/stats/r1")

        assert response.status_code == 200
        assert response.json()["data"] == {"totalMessages": 4, "totalDelivered": 1, "totalRead": 2}

    def test_response_includes_request_id_header(self, client):
        response = client.get("/api/messages/stats/r1")
        assert "x-request-id" in response.headers


class TestSocketFlows:
    """Test chat flows over the WebSocket endpoint."""

    def test_happy_path(self, client):
        """Test chat:send is acknowledged and later readable from room history."""
        with client.websocket_connect("/ws") as ws:
            ws.send_json({
                "event": "chat:send",
                "data": {"message": "hi", "roomId": "r1", "senderId": "u1", "recipients": ["u2"]},
            })
            ack = receive_until(ws, "message:delivered")

        assert ack["status"] == "sent"
        assert ack["message"] == "hi"
        assert wait_until(lambda: len(room_messages(client, "r1")) == 1)
        [message] = room_messages(client, "r1")
        assert message["content"] == "hi"
        assert message["messageId"] == ack["id"]

    def test_offline_catch_up(self, client):
        """Test a recipient offline at send time receives the message on user:online."""
        with client.websocket_connect("/ws") as sender:
            sender.send_json({
                "event": "chat:send",
                "data": {"message": "while you were away", "roomId": "r1", "senderId": "u1", "recipients": ["u2"]},
            })
            ack = receive_until(sender, "message:delivered")
        assert wait_until(lambda: len(room_messages(client, "r1")) == 1)

        with client.websocket_connect("/ws") as recipient:
            recipient.send_json({"event": "user:online", "data": {"userId": "u2"}})
            pushed = receive_until(recipient, "chat:receive")
            # Events on one socket are handled in order; this round trip
            # completes only after the catch-up has been marked delivered.
            recipient.send_json({"event": "notification:send", "data": {"ping": True}})
            receive_until(recipient, "notification:receive")

        assert pushed["id"] == ack["id"]
        assert pushed["message"] == "while you were away"
        assert pushed["status"] == "delivered"
        assert client.get("/api/messages/unread/u2").json()["count"] == 0
        assert room_messages(client, "r1")[0]["status"] == "delivered"

    def test_room_join_broadcast(self, client):
        with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
            first.send_json({"event": "room:join", "data": {"roomId": "r1", "userId": "u1"}})
            first.send_json({"event": "notification:send", "data": {"sync": 1}})
            receive_until(second, "notification:receive")

            second.send_json({"event": "room:join", "data": {"roomId": "r1", "userId": "u2"}})
            joined = receive_until(first, "user:joined")

        assert joined["userId"] == "u2"
        assert joined["roomId"] == "r1"

    def test_malformed_frames_keep_socket_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not a frame")
            ws.send_json({"event": "unknown:event", "data": {}})
            ws.send_json({"event": "message:status", "data": {"messageId": "missing", "status": "read"}})
            ws.send_json({"event": "notification:send", "data": {"still": "open"}})

            assert receive_until(ws, "notification:receive") == {"still": "open"}

    def test_degraded_mode(self, degraded_client):
        """Test chat:send fails visibly while the rest of the API keeps serving."""
        with degraded_client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "chat:send", "data": {"message": "hi", "roomId": "r1"}})
            error = receive_until(ws, "message:error")

        assert error["message"] == "Failed to send message"
        assert degraded_client.get("/api/messages/room/r1").status_code == 200
        assert degraded_client.get("/health/live").status_code == 200


class TestMetrics:

    def test_metrics_endpoint(self, client):
        client.get("/api/messages/stats/r1")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert 'path="/api/messages/stats/{room_id}"' in response.text
