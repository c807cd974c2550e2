"""
Tests for the GET /stats, health and metrics endpoints.
"""

from app import storage


class TestStats:

    def test_empty_database(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_conversations": 0,
            "conversations_by_status": {},
            "total_messages": 0,
            "messages_by_direction": {},
            "messages_by_status": {},
        }

    def test_counts(self, client, post_inbound, carrier, db):
        post_inbound(from_="+15550000001", body="Hola, necesito un aventón", message_sid="SM1")
        post_inbound(from_="+15550000002", body="Hello", message_sid="SM2")
        conversation = storage.get_conversation_by_phone(db, "+15550000001")
        client.post("/api/send", json={
            "conversationId": conversation.id, "messageText": "On my way", "volunteerId": "vol-1",
        })
        carrier.failures = 10
        client.post("/api/send", json={
            "conversationId": conversation.id, "messageText": "Running late", "volunteerId": "vol-1",
        })

        data = client.get("/stats").json()

        assert data["total_conversations"] == 2
        assert data["conversations_by_status"] == {"active": 1, "new": 1}
        assert data["total_messages"] == 4
        assert data["messages_by_direction"] == {"inbound": 2, "outbound": 2}
        assert data["messages_by_status"] == {"sent": 3, "failed": 1}


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_schema(self, client, monkeypatch):
        monkeypatch.setattr("app.main.check_db_health", lambda: False)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestMetrics:

    def test_exposes_relay_counters(self, client, post_inbound):
        post_inbound()
        post_inbound(signature="invalid")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'webhook_requests_total{result="created"}' in response.text
        assert 'webhook_requests_total{result="invalid_signature"}' in response.text
        assert "send_requests_total" in response.text
        assert "delivery_attempts_total" in response.text

    def test_request_id_header(self, client):
        response = client.get("/health/live")

        assert response.headers["X-Request-ID"]
