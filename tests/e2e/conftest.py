"""
E2E test fixtures for the SPM payments API.

Provides:
- The FastAPI app from ``create_app`` with the test settings
- ``get_db`` overridden to the per-test SQLite session
- ``get_gateway`` overridden to the shared ``FakeGateway``
- httpx AsyncClient wired via ASGI transport (no network needed)
- Bearer header helpers for an audience member and a performer

Stripe is replaced by the fake gateway, so the full
route -> service -> DB flow is exercised without network calls.
"""

from __future__ import annotations

from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from spm_payments.core.config import Settings
from spm_payments.integrations.stripe import FakeGateway
from tests.conftest import PERFORMER_ID, TIPPER_ID


def _create_test_app(
    db_session_override: AsyncSession,
    gateway: FakeGateway,
    app_settings: Settings,
) -> FastAPI:
    """Build the real app with the DB and gateway dependencies overridden."""
    from spm_payments.api.deps import get_db, get_gateway
    from spm_payments.main import create_app

    app = create_app(app_settings)

    async def _override_get_db():
        yield db_session_override

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    return app


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    fake_gateway: FakeGateway,
    test_settings: Settings,
) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(db_session, fake_gateway, test_settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_header(make_token) -> Callable[..., dict[str, str]]:
    def _header(user_id: str, role: str = "audience") -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _header


@pytest.fixture
def tipper_headers(auth_header) -> dict[str, str]:
    return auth_header(TIPPER_ID)


@pytest.fixture
def performer_headers(auth_header) -> dict[str, str]:
    return auth_header(PERFORMER_ID, "performer")
