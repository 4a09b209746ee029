"""SPM Payments API -- Main Application Entry Point

Creates the FastAPI application, configures CORS middleware and registers
the payments routes under the /api/v1 prefix.

Run with::

    uvicorn spm_payments.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spm_payments.api.deps import engine
from spm_payments.api.routes import payments
from spm_payments.core.config import Settings, settings
from spm_payments.core.logging import configure_logging
from spm_payments.integrations.stripe import get_payment_gateway
from spm_payments.models import Base

logger = logging.getLogger(__name__)


async def init_models() -> None:
    """Create all tables. For local development; production uses its own schema tooling."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging.
      - Build the payment gateway once and keep it on ``app.state``.
      - Create tables when ``db_create_all`` is set (local development).

    Shutdown:
      - Dispose the database engine's connection pool.
    """
    app_settings: Settings = app.state.settings
    configure_logging(app_settings.log_level)
    app.state.payment_gateway = get_payment_gateway(app_settings)
    if app_settings.db_create_all:
        await init_models()
    logger.info(
        "Starting %s %s with %s gateway",
        app_settings.app_name,
        app_settings.app_version,
        app_settings.payment_gateway,
    )

    yield

    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(app_settings: Settings = settings) -> FastAPI:
    app = FastAPI(
        title=app_settings.app_name,
        version=app_settings.app_version,
        debug=app_settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[app_settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    async def health():
        """Lightweight health check for load balancers and readiness probes."""
        return {"status": "ok", "version": app_settings.app_version}

    app.include_router(payments.router, prefix=app_settings.api_v1_prefix)
    return app


app = create_app()
