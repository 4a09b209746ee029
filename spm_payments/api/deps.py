"""
Shared FastAPI dependencies for the SPM payments API.

Provides the request-scoped database session, the caller identity
extracted from an optional Bearer token, Cloudflare geolocation hints and
the wired-up ``TipService``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spm_payments.core.config import Settings, settings
from spm_payments.integrations.stripe import PaymentGateway
from spm_payments.services.auth_service import CallerIdentity, verify_caller
from spm_payments.services.connectedAccountDirectory import ConnectedAccountDirectory
from spm_payments.services.tipService import TipService
from spm_payments.services.transactionLedger import TransactionLedger

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at import time. Sessions are scoped to a
# single request via ``get_db``, which owns commit and rollback; services
# only flush.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


def get_settings(request: Request) -> Settings:
    """Settings the application was created with."""
    return getattr(request.app.state, "settings", settings)


AppSettings = Annotated[Settings, Depends(get_settings)]


# ---------------------------------------------------------------------------
# Geolocation headers (best effort, never an error)
# ---------------------------------------------------------------------------

# Cloudflare's placeholders for "unknown" and "Tor".
_UNKNOWN_COUNTRIES = {"XX", "T1"}


@dataclass(frozen=True)
class GeoHintData:
    country: Optional[str] = None
    city: Optional[str] = None


def get_geo_hint(request: Request) -> GeoHintData:
    """Read ``CF-IPCountry`` / ``CF-IPCity`` if a proxy set them."""
    country = (request.headers.get("CF-IPCountry") or "").strip().upper() or None
    if country in _UNKNOWN_COUNTRIES:
        country = None
    city = (request.headers.get("CF-IPCity") or "").strip() or None
    return GeoHintData(country=country, city=city)


GeoHint = Annotated[GeoHintData, Depends(get_geo_hint)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=True)
_bearer_scheme_optional = HTTPBearer(auto_error=False)


async def get_current_caller(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(_bearer_scheme)],
    app_settings: AppSettings,
) -> CallerIdentity:
    """Verified caller from the Bearer token; 401 if it does not verify."""
    caller = verify_caller(credentials.credentials, app_settings)
    if caller is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


async def get_optional_caller(
    credentials: Annotated[
        Optional[HTTPAuthorizationCredentials], Depends(_bearer_scheme_optional)
    ],
    app_settings: AppSettings,
) -> Optional[CallerIdentity]:
    """Like ``get_current_caller`` but ``None`` for missing or bad tokens.

    Tips never fail because of authentication; they go anonymous instead.
    """
    if credentials is None:
        return None
    return verify_caller(credentials.credentials, app_settings)


async def get_current_performer(
    caller: Annotated[CallerIdentity, Depends(get_current_caller)],
) -> CallerIdentity:
    if not caller.is_performer:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Performer role required",
        )
    return caller


CurrentCaller = Annotated[CallerIdentity, Depends(get_current_caller)]
OptionalCaller = Annotated[Optional[CallerIdentity], Depends(get_optional_caller)]
CurrentPerformer = Annotated[CallerIdentity, Depends(get_current_performer)]


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------

def get_gateway(request: Request) -> PaymentGateway:
    """The process-wide gateway built in the application lifespan."""
    return request.app.state.payment_gateway


Gateway = Annotated[PaymentGateway, Depends(get_gateway)]


def get_account_directory(db: DBSession, gateway: Gateway) -> ConnectedAccountDirectory:
    return ConnectedAccountDirectory(db, gateway)


AccountDirectory = Annotated[ConnectedAccountDirectory, Depends(get_account_directory)]


def get_tip_service(
    db: DBSession,
    gateway: Gateway,
    directory: AccountDirectory,
    app_settings: AppSettings,
) -> TipService:
    return TipService(TransactionLedger(db), directory, gateway, app_settings)


TipServiceDep = Annotated[TipService, Depends(get_tip_service)]
