"""Pytest configuration for courtsignal tests

WHAT: Provides shared fixtures for relay, dispatcher, ledger and webhook tests
WHY: Ensures consistent test setup, database isolation, and a Meta API that
     never leaves the process (httpx.MockTransport)
REFERENCES:
    - courtsignal/main.py: FastAPI application
    - courtsignal/database.py: Database configuration
    - courtsignal/deps.py: Dependency injection
"""

import hashlib
import hmac
import json
import os
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before the app modules read it
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("LOMI_WEBHOOK_SECRET", "whsec_test")
os.environ.pop("SENTRY_DSN", None)

TEST_WEBHOOK_SECRET = "whsec_test"
TEST_PIXEL_ID = "1234567890"
TEST_ACCESS_TOKEN = "test-access-token"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    # StaticPool: TestClient runs endpoints on another thread, which must see
    # the same in-memory database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from courtsignal.database import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session with rollback."""
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_db_engine
    )

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def make_reservation(test_db_session):
    """Factory persisting a pending reservation."""
    from courtsignal.models import Reservation, ReservationStatusEnum

    def _make(**overrides):
        start = datetime(2026, 10, 12, 18, 0)
        values = {
            "id": uuid.uuid4(),
            "court_id": "court-1",
            "start_time": start,
            "end_time": start + timedelta(hours=1, minutes=30),
            "total_price": Decimal("300.00"),
            "currency": "MAD",
            "status": ReservationStatusEnum.pending,
            "user_email": "player@example.com",
        }
        values.update(overrides)
        reservation = Reservation(**values)
        test_db_session.add(reservation)
        test_db_session.commit()
        return reservation

    return _make


# ============================================================================
# Settings & Meta API Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    """Settings with a configured pixel and webhook secret, ignoring .env."""
    from courtsignal.deps import Settings

    return Settings(
        _env_file=None,
        META_CAPI_PIXEL_ID=TEST_PIXEL_ID,
        META_CAPI_ACCESS_TOKEN=TEST_ACCESS_TOKEN,
        META_CAPI_API_VERSION="v18.0",
        META_PIXEL_ID=TEST_PIXEL_ID,
        RELAY_BASE_URL="http://relay.test",
        LOMI_WEBHOOK_SECRET=TEST_WEBHOOK_SECRET,
    )


class FakeMetaAPI:
    """Records requests sent to Meta and answers with a canned response."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.response_body = {"events_received": 1, "fbtrace_id": "AbCdEf123"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response_body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def payloads(self):
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def fake_meta():
    return FakeMetaAPI()


@pytest.fixture
def capi_service(test_settings, fake_meta):
    """Relay wired to the fake Meta API."""
    from courtsignal.services.meta_capi_service import MetaCAPIService

    return MetaCAPIService(
        test_settings,
        http_client=httpx.AsyncClient(transport=fake_meta.transport()),
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, test_settings, capi_service):
    """Create FastAPI test application."""
    from courtsignal.main import create_app
    from courtsignal.database import get_db
    from courtsignal.deps import get_capi_service, get_settings

    test_app = create_app()

    def override_get_db():
        try:
            yield test_db_session
        finally:
            test_db_session.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: test_settings
    test_app.dependency_overrides[get_capi_service] = lambda: capi_service

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Webhook Fixtures
# ============================================================================

@pytest.fixture
def sign_lomi():
    """Serialize a payload and sign it like Lomi does."""

    def _sign(payload: dict, secret: str = TEST_WEBHOOK_SECRET):
        body = json.dumps(payload).encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return body, {"X-Lomi-Signature": signature, "Content-Type": "application/json"}

    return _sign
