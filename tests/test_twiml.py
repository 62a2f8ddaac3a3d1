"""
Tests for the HTTP endpoints.
"""

import os
from unittest.mock import patch
import xml.etree.ElementTree as ET

from fastapi.testclient import TestClient


def _client():
    from src.intake.config import get_config
    get_config.cache_clear()

    from server.app import app
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for the incoming-call webhook."""

    def test_twiml_connects_media_stream(self):
        response = _client().post("/incoming")

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert "<Connect>" in content
        assert "<Stream" in content
        assert "wss://test.ngrok.io/connection" in content

    def test_twiml_is_valid_xml(self):
        response = _client().get("/incoming")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        stream = root.find("./Connect/Stream")
        assert stream is not None
        assert stream.get("url") == "wss://test.ngrok.io/connection"

    def test_twiml_uses_correct_host(self):
        test_host = "my-custom-domain.example.com"

        with patch.dict(os.environ, {"PUBLIC_HOST": test_host}):
            response = _client().post("/incoming")

        assert f"wss://{test_host}/connection" in response.text


class TestHealthEndpoint:
    def test_health_returns_ok(self):
        response = _client().get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data
        assert data["active_sessions"] == 0


class TestMetricsEndpoint:
    def test_metrics_returns_json(self):
        response = _client().get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in ("uptime_seconds", "total_connections", "active_connections", "total_calls", "active_sessions", "errors"):
            assert key in data


class TestLifespan:
    def test_startup_builds_registries(self):
        from src.intake.availability import get_contractor_directory
        get_contractor_directory.cache_clear()

        with _client() as client:
            app = client.app
            assert len(app.state.sessions) == 0
            assert app.state.capabilities.names == ["check_availability", "request_booking"]
            assert client.get("/health").json()["active_sessions"] == 0
