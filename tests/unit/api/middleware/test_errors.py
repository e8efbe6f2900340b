"""Tests for error rendering and request ids."""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from oauth_pool.api.middleware.errors import setup_error_handlers
from oauth_pool.api.middleware.logging import AccessLogMiddleware
from oauth_pool.exceptions import (
    AttemptExpiredError,
    ExchangeFailedError,
    TransientNetworkError,
)


@pytest.fixture
def client() -> TestClient:
    app = FastAPI()
    setup_error_handlers(app)
    app.add_middleware(AccessLogMiddleware)

    @app.get("/expired")
    async def expired() -> None:
        raise AttemptExpiredError()

    @app.get("/exchange")
    async def exchange() -> None:
        raise ExchangeFailedError("Token exchange failed", upstream_status=400)

    @app.get("/transient")
    async def transient() -> None:
        raise TransientNetworkError()

    @app.get("/http")
    async def http_error() -> None:
        raise HTTPException(status_code=418, detail="teapot")

    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("secret internals")

    @app.get("/ok")
    async def ok() -> dict[str, bool]:
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("path", "status_code", "error_type"),
    [
        ("/expired", 410, "expired_error"),
        ("/exchange", 502, "exchange_failed_error"),
        ("/transient", 503, "transient_network_error"),
        ("/http", 418, "http_error"),
    ],
)
def test_errors_are_rendered(client, path, status_code, error_type):
    response = client.get(path)
    assert response.status_code == status_code
    assert response.json()["error"]["type"] == error_type


@pytest.mark.unit
def test_unhandled_error_hides_details(client):
    response = client.get("/boom")
    assert response.status_code == 500
    assert "secret internals" not in response.text
    assert response.json()["error"]["type"] == "internal_server_error"


@pytest.mark.unit
def test_request_id_is_echoed(client):
    response = client.get("/ok", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"
    assert client.get("/ok").headers["x-request-id"]
