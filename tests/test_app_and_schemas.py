import importlib

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from arkeep import app as app_module
from arkeep.api import schemas
from arkeep.config import reset_settings_cache


@pytest.fixture
def fresh_app(monkeypatch):
    """Reload the app module to respect env overrides for CORS and HSTS."""

    monkeypatch.delenv("CORS_ALLOW_ORIGINS", raising=False)
    monkeypatch.setenv("ENABLE_HSTS", "true")
    reset_settings_cache()
    reloaded = importlib.reload(app_module)
    try:
        yield reloaded.app
    finally:
        monkeypatch.delenv("ENABLE_HSTS", raising=False)
        reset_settings_cache()
        importlib.reload(app_module)


def test_security_headers(fresh_app):
    client = TestClient(fresh_app, base_url="https://testserver")
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Strict-Transport-Security"].startswith("max-age=")
    assert response.headers["Content-Security-Policy"].startswith("default-src")
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert response.headers["access-control-allow-credentials"] == "true"


def test_no_hsts_over_plain_http():
    client = TestClient(app_module.app)
    response = client.get("/healthz")
    assert "Strict-Transport-Security" not in response.headers


def test_unknown_origin_not_allowed():
    client = TestClient(app_module.app)
    response = client.get("/healthz", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in response.headers


def test_allowed_origins_default():
    origins = app_module._allowed_origins()
    assert "http://localhost" in origins
    assert "http://127.0.0.1:5173" in origins
    assert "*" not in origins


def test_allowed_origins_override(monkeypatch):
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://example.com, https://demo.local")
    reset_settings_cache()
    try:
        reloaded = importlib.reload(app_module)
        assert reloaded._allowed_origins() == ["https://example.com", "https://demo.local"]
    finally:
        monkeypatch.delenv("CORS_ALLOW_ORIGINS")
        reset_settings_cache()
        importlib.reload(app_module)


def test_envelope_status_validation():
    with pytest.raises(ValidationError):
        schemas.Envelope(status="pending")


def test_login_request_requires_token():
    with pytest.raises(ValidationError):
        schemas.GoogleLoginRequest(id_token="")
    with pytest.raises(ValidationError):
        schemas.GoogleLoginRequest(id_token="x" * 8193)


def test_refresh_request_token_optional():
    assert schemas.TokenRefreshRequest().refresh_token is None
    with pytest.raises(ValidationError):
        schemas.TokenRefreshRequest(refresh_token="x" * 2049)


def test_auth_response_has_no_refresh_field():
    assert "refresh_token" not in schemas.AuthResponse.model_fields
