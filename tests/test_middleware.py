"""Tests for the request id and rate limiting middleware."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

import core.middleware as middleware


@pytest.fixture
def counter(monkeypatch):
    fake = MagicMock()
    fake.incr = AsyncMock(return_value=1)
    fake.expire = AsyncMock(return_value=True)
    fake.ttl = AsyncMock(return_value=42)
    monkeypatch.setattr(middleware, "async_redis", fake)
    return fake


@pytest.fixture
def limited_app():
    app = FastAPI()
    app.add_middleware(middleware.RateLimitMiddleware, max_requests=2)
    app.add_middleware(middleware.RequestIDMiddleware)

    @app.get("/call-logs")
    async def call_logs():
        return {"ok": True}

    @app.post("/webhook/scheduling")
    async def webhook():
        return {"ok": True}

    return TestClient(app)


class TestRateLimit:
    def test_first_request_starts_window(self, limited_app, counter):
        assert limited_app.get("/call-logs").status_code == 200
        counter.expire.assert_awaited_once_with("rl:ip:testclient", 60)

    def test_over_limit_is_429_with_retry_after(self, limited_app, counter):
        counter.incr.return_value = 3
        response = limited_app.get("/call-logs")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["retry_after"] == 42

    def test_webhooks_are_exempt(self, limited_app, counter):
        counter.incr.return_value = 99
        assert limited_app.post("/webhook/scheduling").status_code == 200
        counter.incr.assert_not_called()

    def test_redis_outage_lets_request_through(self, limited_app, counter):
        counter.incr.side_effect = RedisConnectionError("refused")
        assert limited_app.get("/call-logs").status_code == 200

    def test_bearer_tokens_are_counted_per_user(self, limited_app, counter, db, make_user, auth_headers):
        user = make_user()
        limited_app.get("/call-logs", headers=auth_headers(user))
        assert counter.incr.call_args.args == (f"rl:user:{user.id}",)


class TestRequestId:
    def test_generated_when_absent(self, limited_app, counter):
        assert limited_app.get("/call-logs").headers["X-Request-ID"]
