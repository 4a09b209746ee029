"""
Caller verification for the payments API.

Tokens are issued elsewhere; this module only decodes a bearer token into
a ``CallerIdentity``. A missing or invalid token yields ``None`` so tips
can always fall back to the anonymous path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from spm_payments.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

ROLE_AUDIENCE = "audience"
ROLE_PERFORMER = "performer"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    role: str = ROLE_AUDIENCE

    @property
    def is_performer(self) -> bool:
        return self.role == ROLE_PERFORMER


def decode_token(token: str, settings: Settings = default_settings) -> dict:
    """Decode and verify a JWT token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is otherwise invalid.
    """
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
    )


def verify_caller(
    token: Optional[str], settings: Settings = default_settings
) -> Optional[CallerIdentity]:
    """Return the caller behind ``token``, or ``None`` if it does not verify."""
    if not token:
        return None
    try:
        payload = decode_token(token, settings)
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired bearer token")
        return None
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected invalid bearer token: %s", exc)
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.info("Rejected bearer token without subject")
        return None
    return CallerIdentity(user_id=str(user_id), role=str(payload.get("role") or ROLE_AUDIENCE))
