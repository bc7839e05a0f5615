"""Shared fixtures for the Laine admin test suite."""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from unittest.mock import AsyncMock, MagicMock

import pytest


NEXHEALTH_SECRET = "test-nexhealth-webhook-secret"
VAPI_SECRET = "test-vapi-webhook-secret"


def pytest_configure(config):
    """Set environment before collection so config.py picks it up on import."""
    os.environ["DATABASE_URL"] = "sqlite://"
    os.environ.setdefault("SECRET_KEY", "test-secret-key")
    os.environ["NEXHEALTH_WEBHOOK_SECRET"] = NEXHEALTH_SECRET
    os.environ["VAPI_WEBHOOK_SECRET"] = VAPI_SECRET
    os.environ["NEXHEALTH_API_KEY"] = "test-nexhealth-key"
    os.environ["VAPI_API_KEY"] = ""
    os.environ["RATE_LIMIT_ENABLED"] = "false"
    os.environ["APP_BASE_URL"] = "https://laine.example.com"


def sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def dumps(payload: dict) -> bytes:
    return json.dumps(payload).encode()


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory engine."""
    from core.database import Base, SessionLocal, engine
    import core.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def nexhealth():
    from sdk.nexhealth_sdk import NexHealthApi

    return AsyncMock(spec=NexHealthApi)


@pytest.fixture
def vapi():
    from sdk.vapi_sdk import VapiApi

    mock = AsyncMock(spec=VapiApi)
    mock.configured = True
    return mock


@pytest.fixture
def redis_mock(monkeypatch):
    import infra.login_helper as login_helper

    fake = MagicMock()
    fake.get = AsyncMock(return_value=None)
    fake.incr = AsyncMock(return_value=1)
    fake.expire = AsyncMock(return_value=True)
    fake.delete = AsyncMock(return_value=1)
    monkeypatch.setattr(login_helper, "async_redis", fake)
    return fake


@pytest.fixture
def client(db, nexhealth, vapi):
    from fastapi.testclient import TestClient
    from main import app

    previous = (app.state.nexhealth, app.state.vapi)
    app.state.nexhealth = nexhealth
    app.state.vapi = vapi
    yield TestClient(app)
    app.state.nexhealth, app.state.vapi = previous


@pytest.fixture
def make_user(db):
    from auth.oauth2 import hashpassword
    from core.models import Users

    def _make(email: str = "owner@example.com", password: str = "s3cret-pass"):
        user = Users(username=email.split("@")[0], email=email, password=hashpassword(password))
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_practice(db, make_user):
    from core.models import Practice

    def _make(subdomain: str = "brightsmiles", assistant_id: str = "asst-1", owner=None, **fields):
        owner = owner or make_user(email=f"{subdomain}@example.com")
        practice = Practice(
            owner_id=owner.id,
            name=fields.pop("name", f"{subdomain.title()} Dental"),
            nexhealth_subdomain=subdomain,
            nexhealth_location_id=fields.pop("nexhealth_location_id", "loc-1"),
            selected_provider_ids=fields.pop("selected_provider_ids", ["101"]),
            default_operatory_ids=fields.pop("default_operatory_ids", ["201"]),
            vapi_assistant_id=assistant_id,
            **fields,
        )
        db.add(practice)
        db.commit()
        db.refresh(practice)
        return practice

    return _make


@pytest.fixture
def auth_headers():
    from auth.oauth2 import create_access_token

    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user=user)}"}

    return _headers
