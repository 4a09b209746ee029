"""
Shared pytest fixtures for SPM payments tests.

Provides:
- Test settings with the fake gateway selected
- An in-memory SQLite database (aiosqlite) with SAVEPOINT support
- A ``FakeGateway`` and the ledger / directory / tip service wired to it
- Helpers to build and sign Stripe webhook payloads
"""

from __future__ import annotations

import json
import uuid
from typing import Any, AsyncGenerator, Callable, Optional

import jwt
import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from spm_payments.core.config import Settings
from spm_payments.integrations.stripe import FakeGateway
from spm_payments.models import Base
from spm_payments.services.connectedAccountDirectory import ConnectedAccountDirectory
from spm_payments.services.tipService import TipService
from spm_payments.services.transactionLedger import TransactionLedger


@compiles(JSONB, "sqlite")
def compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


TEST_DB_URL = "sqlite+aiosqlite:///:memory:"
TEST_WEBHOOK_SECRET = "whsec_test_secret"
TEST_JWT_SECRET = "test-jwt-secret"

PERFORMER_ID = "performer_1"
PERFORMANCE_ID = "perf_1"
TIPPER_ID = "user_1"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        payment_gateway="fake",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        jwt_secret=TEST_JWT_SECRET,
        database_url=TEST_DB_URL,
    )


# ---------------------------------------------------------------------------
# Async engine + session (in-memory SQLite)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        TEST_DB_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy
    # emit BEGIN itself.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """A session whose work is rolled back at the end of the test."""
    session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_gateway(test_settings: Settings) -> FakeGateway:
    return FakeGateway(test_settings)


@pytest.fixture
def ledger(db_session: AsyncSession) -> TransactionLedger:
    return TransactionLedger(db_session)


@pytest.fixture
def directory(db_session: AsyncSession, fake_gateway: FakeGateway) -> ConnectedAccountDirectory:
    return ConnectedAccountDirectory(db_session, fake_gateway)


@pytest.fixture
def tip_service(
    ledger: TransactionLedger,
    directory: ConnectedAccountDirectory,
    fake_gateway: FakeGateway,
    test_settings: Settings,
) -> TipService:
    return TipService(ledger, directory, fake_gateway, test_settings)


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def build_event(event_type: str, data_object: dict[str, Any], event_id: Optional[str] = None) -> bytes:
    """Serialize a Stripe-shaped event envelope."""
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "livemode": False,
            "created": 1700000000,
            "data": {"object": data_object},
        }
    ).encode("utf-8")


@pytest.fixture
def signed_event(fake_gateway: FakeGateway) -> Callable[..., tuple[bytes, str]]:
    """Build an event body and a valid ``Stripe-Signature`` header for it."""

    def _signed(event_type: str, data_object: dict[str, Any], event_id: Optional[str] = None):
        payload = build_event(event_type, data_object, event_id)
        return payload, fake_gateway.sign_payload(payload)

    return _signed


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_token() -> Callable[..., str]:
    def _make(user_id: str, role: str = "audience", secret: str = TEST_JWT_SECRET) -> str:
        return jwt.encode({"sub": user_id, "role": role}, secret, algorithm="HS256")

    return _make
