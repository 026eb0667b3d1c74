"""Tests for the main FastAPI application."""

import pytest


class TestMainApplication:
    """Test cases for the HTTP endpoints."""

    @pytest.mark.unit
    def test_health_endpoint(self, test_client):
        """Test the health check endpoint."""
        response = test_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "murya-stt"
        assert "speech_provider" in data["checks"]
        assert data["checks"]["active_connections"]["count"] == 0

    @pytest.mark.unit
    def test_liveness_probe(self, test_client):
        """Test the liveness probe endpoint."""
        response = test_client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.unit
    def test_readiness_probe(self, test_client):
        """Test the readiness probe endpoint."""
        response = test_client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["active_connections"] == 0

    @pytest.mark.unit
    def test_service_status(self, test_client):
        """Test the detailed service status endpoint."""
        response = test_client.get("/status")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "murya-stt"
        assert data["sessions"] == {"active": 0, "streams": 0}
        assert data["providers"] == {"speech": "echo", "translation": "none"}
        assert data["resources"]["usage_store"] == "memory"

    @pytest.mark.unit
    def test_metrics_endpoint(self, test_client):
        """Test the Prometheus metrics endpoint."""
        response = test_client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.unit
    def test_request_id_header(self, test_client):
        """Responses echo the caller's request id or mint one."""
        echoed = test_client.get("/health/live", headers={"X-Request-ID": "abc123"})
        minted = test_client.get("/health/live")

        assert echoed.headers["X-Request-ID"] == "abc123"
        assert len(minted.headers["X-Request-ID"]) == 32

    @pytest.mark.unit
    def test_usage_unknown_user(self, test_client):
        """Unknown users are reported in the standard error shape."""
        response = test_client.get("/usage/ghost")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    @pytest.mark.unit
    def test_usage_stats(self, test_client):
        """Stats include tier, points and effective limits."""
        from murya_stt import main

        test_client.portal.call(main.usage_store.create_account, "u1", "gold")

        response = test_client.get("/usage/u1")

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "gold"
        assert data["points"] == 0
        assert data["limits"]["daily_real_time_streaming_minutes"] == 10


class TestTranscriptionSocket:
    """Test cases for the /transcription websocket."""

    @pytest.mark.unit
    def test_offline_session_round_trip(self, test_client):
        """Join, send binary audio, end."""
        with test_client.websocket_connect("/transcription") as websocket:
            websocket.send_json({"event": "join_session", "data": {"mode": "offline"}})
            status = websocket.receive_json()
            assert status["event"] == "session_status"
            assert status["data"]["status"] == "active"
            session_id = status["data"]["sessionId"]
            assert websocket.receive_json() == {"event": "ready", "data": {"sessionId": session_id}}

            websocket.send_bytes(b"\x00\x01\x02\x03")
            assert websocket.receive_json() == {"event": "ready", "data": {"sessionId": session_id}}

            websocket.send_json({"event": "end_session", "data": {"sessionId": session_id}})
            assert websocket.receive_json() == {
                "event": "session_status",
                "data": {"sessionId": session_id, "status": "completed"},
            }

    @pytest.mark.unit
    def test_online_requires_premium(self, test_client):
        """Online mode is refused without the premium entitlement."""
        with test_client.websocket_connect("/transcription") as websocket:
            websocket.send_json({"event": "join_session", "data": {"mode": "online"}})
            message = websocket.receive_json()

        assert message["event"] == "error"
        assert message["data"]["code"] == "PREMIUM_REQUIRED"

    @pytest.mark.unit
    def test_legacy_premium_flag(self, test_client):
        """The premium query flag unlocks online mode."""
        with test_client.websocket_connect("/transcription?premium=true") as websocket:
            websocket.send_json({"event": "join_session", "data": {"mode": "online"}})
            message = websocket.receive_json()

        assert message["event"] == "session_status"
        assert message["data"]["status"] == "active"

    @pytest.mark.unit
    def test_invalid_envelope(self, test_client):
        """Malformed text frames are answered with BAD_REQUEST."""
        with test_client.websocket_connect("/transcription") as websocket:
            websocket.send_text("not json")
            first = websocket.receive_json()
            websocket.send_json({"data": {}})
            second = websocket.receive_json()

        assert first["event"] == "error"
        assert first["data"]["code"] == "BAD_REQUEST"
        assert second["data"]["code"] == "BAD_REQUEST"

    @pytest.mark.unit
    def test_unknown_event(self, test_client):
        """Unknown events are rejected without closing the socket."""
        with test_client.websocket_connect("/transcription") as websocket:
            websocket.send_json({"event": "dance", "data": {}})
            message = websocket.receive_json()

        assert message["data"] == {
            "code": "BAD_REQUEST",
            "message": "Unknown event: dance",
            "details": {"field": "event"},
        }
