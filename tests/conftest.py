"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of medallion.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime, timedelta  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from medallion.database.models import Achievement, Base  # noqa: E402
from medallion.engine.history import EventHistory, EventRecord  # noqa: E402
from medallion.engine.triggers import dump_trigger, parse_trigger  # noqa: E402

_jsonb_sqlite_registered = False

# Fixed reference time for hand-built histories: a Wednesday, 12:00 UTC.
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Medallion tables.

    JSONB columns are transparently mapped to TEXT for SQLite compatibility.
    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used by the scheduler).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_event(
    event_type: str,
    data: dict | None = None,
    *,
    at: datetime | None = None,
    hours_ago: float = 0,
    event_id: int | None = None,
    status: str = "completed",
    user_id: str = "u1",
) -> EventRecord:
    """Build an in-memory event record relative to :data:`NOW`."""
    return EventRecord(
        id=event_id,
        event_type=event_type,
        data=data or {},
        triggered_at=at or NOW - timedelta(hours=hours_ago),
        status=status,
        user_id=user_id,
    )


def make_history(*events: EventRecord, as_of: datetime = NOW, current_id=None) -> EventHistory:
    return EventHistory(events, as_of=as_of, current_id=current_id)


def add_achievement(
    engine: Engine,
    key: str,
    trigger_type: str,
    trigger_config: dict | None = None,
    **fields,
) -> int:
    """Insert a validated achievement row and return its id."""
    trigger = parse_trigger(trigger_type, trigger_config)
    with Session(engine) as session:
        row = Achievement(
            key=key,
            name=fields.pop("name", key.replace("_", " ").title()),
            trigger_type=trigger_type,
            trigger_config=dump_trigger(trigger),
            **fields,
        )
        session.add(row)
        session.commit()
        return row.id


@pytest.fixture
def gateway():
    """A reward gateway double recording every credit call."""
    return MagicMock(name="RewardGateway")


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "99999", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from medallion.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


@pytest.fixture
def client(db_engine, gateway):
    """FastAPI TestClient wired to the in-memory engine and a mock gateway."""
    from fastapi.testclient import TestClient

    from medallion.api.deps import get_config, get_coordinator, get_engine
    from medallion.api.main import app
    from medallion.config import MedallionConfig
    from medallion.services.completion_service import CompletionCoordinator

    app.dependency_overrides[get_engine] = lambda: db_engine
    app.dependency_overrides[get_config] = lambda: MedallionConfig()
    app.dependency_overrides[get_coordinator] = lambda: CompletionCoordinator(db_engine, gateway)
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
