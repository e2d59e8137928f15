"""
Session JWT verification.

Sessions are issued by the hosted auth provider; this service only
verifies them. The ``sub`` claim is the auth user id that staff members
are linked to.
"""
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from relay.core.config import settings
from relay.core.logging import get_logger

logger = get_logger(__name__)


class SessionPayload(BaseModel):
    """Claims we rely on from a session token"""
    sub: str
    email: Optional[str] = None
    exp: int


def verify_session_token(token: str) -> Optional[SessionPayload]:
    """Verify a session JWT: returns None when invalid or expired"""
    if not settings.SESSION_JWT_SECRET:
        logger.error("SESSION_JWT_SECRET is empty: session tokens cannot be verified")
        return None
    options = {"require": ["exp", "sub"]}
    try:
        payload = pyjwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            audience=settings.SESSION_JWT_AUDIENCE,
            options=options if settings.SESSION_JWT_AUDIENCE else {**options, "verify_aud": False},
        )
        return SessionPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("Session token invalid or expired")
        return None
    except (KeyError, ValueError) as e:
        logger.warning("Session payload malformed", extra_data={"error": str(e)})
        return None
