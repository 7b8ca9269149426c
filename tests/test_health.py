"""
Health endpoints and cross-cutting middleware.

Tests cover:
  - /health/ready and /health/live
  - Security headers and request-id propagation
  - JSON 404 handler
  - JSON log formatter context fields
"""
import json
import logging

from app.middleware.logging_config import JSONFormatter
from app.services.jwt_service import decode_access_token, generate_access_token


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["scheduler"]["status"] == "disabled"
        assert data["checks"]["app"]["name"] == "ERP Approval Engine"


class TestMiddleware:
    def test_security_headers(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.headers["X-Content-Type-Options"] == "nosniff"
        assert res.headers["X-Frame-Options"] == "DENY"
        assert res.headers["Cache-Control"] == "no-store"
        assert "Server" not in res.headers

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "trace-123"})
        assert res.headers["X-Request-ID"] == "trace-123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_request_id_generated(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "x" * 65})
        assert len(res.headers["X-Request-ID"]) == 12

    def test_unknown_route_json_404(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestTokens:
    def test_round_trip_claims(self):
        payload = decode_access_token(generate_access_token(7, ["project_manager"]))
        assert payload["sub"] == "7"
        assert payload["roles"] == ["project_manager"]


def test_json_formatter_includes_context():
    record = logging.LogRecord("app.services.approval_service", logging.INFO, __file__, 1,
                               "Request %s approved", (7,), None)
    record.request_id = "abc123"
    record.approval_request_id = 7
    line = json.loads(JSONFormatter().format(record))
    assert line["message"] == "Request 7 approved"
    assert line["request_id"] == "abc123"
    assert line["approval_request_id"] == 7
    assert "user_id" not in line
