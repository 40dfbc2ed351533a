"""
Tests for CORS configuration and the request monitoring middleware.
"""
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tracklive.core.config import Settings, settings
from tracklive.core.security_config import RequestMonitoringMiddleware, get_cors_config


def test_cors_single_origin(monkeypatch):
    monkeypatch.setattr(settings, "CORS_ORIGIN", "http://localhost:3000")

    config = get_cors_config()

    assert config["allow_origins"] == ["http://localhost:3000"]
    assert config["allow_methods"] == ["GET", "OPTIONS"]


def test_cors_wildcard(monkeypatch):
    monkeypatch.setattr(settings, "CORS_ORIGIN", "*")

    config = get_cors_config()

    assert config["allow_origins"] == ["*"]
    assert config["allow_credentials"] is False


def test_cors_origins_split_on_commas():
    assert Settings(CORS_ORIGIN="http://a.test, http://b.test,").cors_origins == ["http://a.test", "http://b.test"]


def test_settings_defaults():
    defaults = Settings()

    assert defaults.PORT == 3000
    assert defaults.TRAJECTORY_LIMIT == 200
    assert defaults.GEOIP_TIMEOUT_SECONDS == 5.0


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestMonitoringMiddleware)

    @app.get("/ok")
    async def ok():
        return {"ok": True}

    @app.get("/boom")
    async def boom():
        raise ValueError("boom")

    return app


def test_security_headers_added():
    response = TestClient(_app()).get("/ok")

    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


def test_unhandled_exception_becomes_500():
    response = TestClient(_app()).get("/boom")

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}
