"""Request Pipeline — end-to-end through the FastAPI app.

Tests cover:
    - health is non-2xx before storage connects and 200 once Serving
    - self (liveness) answers in every phase
    - unknown paths → 404 {kind: NotFound} through the shared handler
    - sync, async, and typed errors from routes all reach the same funnel
    - Internal bodies never carry cause or context
    - requests before Serving never reach the rate-limit stage
    - the 6th store-dependent request in a window gets 429 with headers
    - only real CORS preflights bypass admission; a bare OPTIONS is admitted
    - a dropped store fails open and health reports it Disconnected
    - rotating client-supplied X-Forwarded-For entries cannot dodge the limit
    - handle() is idempotent for the same (error, context)
    - middleware order is fixed: security headers → CORS → pipeline
"""

import pytest
from fastapi.middleware.cors import CORSMiddleware
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel

from gatehouse.api.error_handlers import handle
from gatehouse.api.pipeline import RequestPipelineMiddleware, SecurityHeadersMiddleware
from gatehouse.core.errors import InternalError, UpstreamError, ValidationError
from gatehouse.core.request_context import RequestContext
from gatehouse.lifecycle import Bootstrapper
from gatehouse.main import create_app
from gatehouse.models.rate_limit_window import RateLimitWindow


class _Widget(BaseModel):
    name: str
    size: int


@pytest.fixture
def app(app):
    """App with a few store-dependent demo routes that fail in different ways."""

    @app.get("/api/v1/widgets")
    async def list_widgets():
        return {"items": []}

    @app.post("/api/v1/widgets")
    async def create_widget(widget: _Widget):
        return widget

    @app.get("/api/v1/sync-boom")
    def sync_boom():
        raise KeyError("secret-key-material")

    @app.get("/api/v1/async-boom")
    async def async_boom():
        raise InternalError(
            "db password=hunter2",
            cause=UpstreamError("10.0.0.7 refused"),
            context={"query": "SELECT * FROM users"},
        )

    @app.get("/api/v1/typed")
    async def typed():
        raise ValidationError("size must be positive")

    return app


# ─── health / self ───────────────────────────────────────────────

async def test_health_before_storage_is_unavailable(client, bootstrapper):
    res = await client.get("/api/v1/health")
    assert res.status_code == 503
    assert res.json()["phase"] == "idle"
    assert res.json()["checks"]["storage"] == "disconnected"


async def test_health_after_serving_is_ok(serving_client):
    res = await serving_client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.json()["phase"] == "serving"


async def test_health_reports_dropped_storage(serving_client, bootstrapper):
    bootstrapper.connector.mark_disconnected()
    res = await serving_client.get("/api/v1/health")
    assert res.status_code == 503
    assert res.json()["checks"]["storage"] == "disconnected"


async def test_self_answers_before_boot(client):
    res = await client.get("/api/v1/self")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


async def test_liveness_routes_are_never_rate_limited(serving_client):
    for _ in range(10):
        res = await serving_client.get("/api/v1/self")
        assert res.status_code == 200
    assert "X-RateLimit-Limit" not in res.headers


# ─── error funnel ────────────────────────────────────────────────

async def test_unknown_path_is_not_found(serving_client):
    res = await serving_client.get("/unknown/path")
    assert res.status_code == 404
    body = res.json()
    assert body["kind"] == "NotFound"
    assert "/unknown/path" in body["message"]
    assert set(body) == {"kind", "message"}


async def test_sync_exception_becomes_internal(serving_client):
    res = await serving_client.get("/api/v1/sync-boom")
    assert res.status_code == 500
    assert res.json() == {"kind": "Internal", "message": "An unexpected error occurred"}
    assert "secret-key-material" not in res.text


async def test_internal_error_never_leaks_cause_or_context(serving_client):
    res = await serving_client.get("/api/v1/async-boom")
    assert res.status_code == 500
    assert set(res.json()) == {"kind", "message"}
    for leaked in ("hunter2", "10.0.0.7", "SELECT", "cause", "context"):
        assert leaked not in res.text


async def test_typed_client_error_keeps_message(serving_client):
    res = await serving_client.get("/api/v1/typed")
    assert res.status_code == 400
    assert res.json() == {"kind": "ValidationError", "message": "size must be positive"}


async def test_request_validation_goes_through_funnel(serving_client):
    res = await serving_client.post("/api/v1/widgets", json={"name": "x"})
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"
    assert "size" in res.json()["message"]


async def test_method_not_allowed_goes_through_funnel(serving_client):
    res = await serving_client.delete("/api/v1/self")
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"


async def test_request_id_is_echoed(serving_client):
    res = await serving_client.get("/unknown", headers={"X-Request-Id": "req-42"})
    assert res.headers["X-Request-Id"] == "req-42"


async def test_security_headers_on_error_responses(serving_client):
    res = await serving_client.get("/unknown")
    assert res.headers["X-Content-Type-Options"] == "nosniff"
    assert res.headers["X-Frame-Options"] == "DENY"


# ─── admission ───────────────────────────────────────────────────

async def test_store_routes_rejected_before_serving(client, bootstrapper):
    bootstrapper.bind_listener()
    res = await client.get("/api/v1/widgets")

    assert res.status_code == 502
    assert res.json()["kind"] == "Upstream"
    assert bootstrapper.rate_limiter is None


async def test_rate_limit_stage_not_reached_before_serving(client, bootstrapper, monkeypatch):
    await bootstrapper.start()
    calls = []
    original = bootstrapper.rate_limiter.check

    async def spy(identity):
        calls.append(identity)
        return await original(identity)

    monkeypatch.setattr(bootstrapper.rate_limiter, "check", spy)
    monkeypatch.setattr(type(bootstrapper), "is_serving", property(lambda self: False))

    res = await client.get("/api/v1/widgets")

    assert res.status_code == 502
    assert calls == []


async def test_sixth_request_is_rate_limited(serving_client):
    for i in range(5):
        res = await serving_client.get("/api/v1/widgets")
        assert res.status_code == 200
        assert res.headers["X-RateLimit-Remaining"] == str(4 - i)

    res = await serving_client.get("/api/v1/widgets")

    assert res.status_code == 429
    assert res.json()["kind"] == "RateLimited"
    assert int(res.headers["Retry-After"]) >= 1
    assert res.headers["X-RateLimit-Limit"] == "5"


async def test_cors_preflight_bypasses_admission(client):
    res = await client.options(
        "/api/v1/widgets",
        headers={
            "Origin": "http://localhost:5173",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert res.status_code == 200
    assert res.headers["access-control-allow-origin"] == "http://localhost:5173"


async def test_bare_options_goes_through_admission(client, bootstrapper):
    bootstrapper.bind_listener()
    res = await client.options("/api/v1/widgets")

    assert res.status_code == 502
    assert res.json()["kind"] == "Upstream"


async def test_bare_options_is_rate_limited(serving_client):
    for _ in range(5):
        await serving_client.options("/api/v1/widgets")

    res = await serving_client.options("/api/v1/widgets")

    assert res.status_code == 429


async def test_store_drop_fails_open_and_health_reports_it(serving_client, bootstrapper):
    async with bootstrapper.connector.engine.begin() as conn:
        await conn.run_sync(RateLimitWindow.__table__.drop)

    res = await serving_client.get("/api/v1/widgets")
    assert res.status_code == 200

    health = await serving_client.get("/api/v1/health")
    assert health.status_code == 503
    assert health.json()["checks"]["storage"] == "disconnected"


# ─── forwarded-for identity ──────────────────────────────────────

@pytest.fixture
async def proxied_client(settings):
    """Client for a Serving app that trusts one proxy hop of X-Forwarded-For."""
    trusted = settings.model_copy(update={"trust_forwarded_for": True})
    boot = Bootstrapper(trusted)
    app = create_app(trusted, boot)

    @app.get("/api/v1/widgets")
    async def list_widgets():
        return {"items": []}

    await boot.start()
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test",
    ) as c:
        yield c
    await boot.shutdown()


async def test_rotating_forwarded_for_cannot_dodge_the_limit(proxied_client):
    statuses = []
    for i in range(6):
        res = await proxied_client.get(
            "/api/v1/widgets",
            headers={"X-Forwarded-For": f"10.9.9.{i}, 203.0.113.5"},
        )
        statuses.append(res.status_code)

    assert statuses == [200] * 5 + [429]


async def test_distinct_proxied_clients_are_counted_apart(proxied_client):
    for _ in range(5):
        await proxied_client.get(
            "/api/v1/widgets", headers={"X-Forwarded-For": "203.0.113.5"},
        )

    res = await proxied_client.get(
        "/api/v1/widgets", headers={"X-Forwarded-For": "203.0.113.6"},
    )

    assert res.status_code == 200


# ─── handle() ────────────────────────────────────────────────────

def test_handle_is_idempotent():
    ctx = RequestContext(request_id="r-1", client_identity="c", method="GET", path="/x")
    err = InternalError("boom", context={"k": "v"})
    first = handle(err, ctx)
    second = handle(err, ctx)
    assert first.body == second.body
    assert first.status_code == second.status_code == 500


def test_handle_keeps_first_error_for_context():
    ctx = RequestContext(request_id="r-2", client_identity="c")
    handle(ValidationError("first"), ctx)
    res = handle(InternalError("second"), ctx)
    assert res.status_code == 400


def test_middleware_order_is_fixed(app):
    order = [m.cls for m in app.user_middleware]
    assert order == [SecurityHeadersMiddleware, CORSMiddleware, RequestPipelineMiddleware]
