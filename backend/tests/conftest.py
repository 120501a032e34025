from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Set test environment BEFORE importing app modules.
# app.db creates the engine at module level using get_settings().db_url,
# so we must override the env vars before any app imports.
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault(
    "FIELD_PROTECTION_SECRET", "test-field-protection-secret-for-unit-tests-only"
)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-integration-tests-only")
os.environ.setdefault("AUDIT_SINK", "log")
os.environ.setdefault("BASE_URL", "https://classmate.test")
# Cheap Argon2 parameters keep the suite fast.
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import app.models  # noqa: F401
from app.config import Settings, get_settings
from app.db import get_session
from app.main import app as fastapi_app
from app.services import passwords
from app.services.keyring import KeyRing
from app.services.mailer import Mailer
from app.services.protection import ProtectionService
from app.services.verification import TokenizedLinkService

TEST_SECRET = "test-field-protection-secret-for-unit-tests-only"


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing.

    Uses StaticPool so every connection shares the same in-memory database.
    Recreates tables per test for full isolation.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Provide a fresh session per test."""
    with Session(engine) as session:
        yield session


# ── Password policy ───────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _cheap_password_policy():
    """Every test starts from the same low-cost Argon2 policy."""
    passwords.configure_policy(min_length=8, time_cost=1, memory_cost=1024, parallelism=1)
    yield
    passwords.configure_policy(min_length=8, time_cost=1, memory_cost=1024, parallelism=1)


# ── Protection fixtures ───────────────────────────────────────────────


class FakeClock:
    """Mutable UTC clock injected into services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return get_settings()


@pytest.fixture(name="key_ring")
def key_ring_fixture() -> KeyRing:
    return KeyRing(TEST_SECRET, current_version=1)


@pytest.fixture(name="protection")
def protection_fixture(key_ring: KeyRing) -> ProtectionService:
    return ProtectionService(key_ring)


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="audit")
def audit_fixture() -> MagicMock:
    return MagicMock()


@pytest.fixture(name="link_service")
def link_service_fixture(key_ring, protection, settings, audit, clock) -> TokenizedLinkService:
    return TokenizedLinkService(key_ring, protection, settings, audit=audit, clock=clock)


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="mailer")
def mailer_fixture() -> MagicMock:
    mailer = MagicMock(spec=Mailer)
    mailer.send_verification_link.return_value = True
    mailer.send_password_reset_link.return_value = True
    return mailer


@pytest.fixture(name="client")
def client_fixture(session, mailer):
    """FastAPI TestClient with overridden DB session and a captured mailer."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        fastapi_app.state.mailer = mailer
        yield client
    fastapi_app.dependency_overrides.clear()
