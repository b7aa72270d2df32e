"""
Tests for health probes and the /metrics endpoint.
"""

from line_crm import main
from line_crm.storage import Base, engine

from test_webhook import make_body, message_event, post_webhook


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_channel_secret(self, client, monkeypatch):
        monkeypatch.setattr(main.settings, "LINE_CHANNEL_SECRET", "")

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "LINE_CHANNEL_SECRET not configured"

    def test_not_ready_without_schema(self, client):
        """Dropped tables make the service unready."""
        Base.metadata.drop_all(bind=engine)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"


class TestMetrics:
    def test_exposes_webhook_counters(self, client):
        post_webhook(client, make_body(message_event("U1", "m1")))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text = response.text
        assert 'webhook_requests_total{result="processed"}' in text
        assert 'webhook_events_total{kind="message",outcome="applied"}' in text
        assert "request_latency_seconds_bucket" in text
