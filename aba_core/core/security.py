"""Security utilities for JWT session tokens."""

from datetime import datetime, timedelta, timezone

import jwt

from aba_core.core.config import settings


# =============================================================================
# Session Token (JWT in cookie)
# =============================================================================

SESSION_COOKIE_NAME = "aba_session"


def create_session_token(
    user_id: int,
    org_id: int | None,
    token_version: int,
) -> str:
    """
    Create signed session JWT.

    Always signs with current secret (JWT_SECRET). The role is not carried
    in the token; it is read from the membership on every request so role
    changes apply immediately.
    """
    payload = {
        "sub": str(user_id),
        "org_id": org_id,
        "token_version": token_version,
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_session_token(token: str) -> dict:
    """
    Decode and verify session JWT.

    Tries current secret first, then previous (for rotation support).

    Raises:
        jwt.InvalidTokenError: If token invalid with all secrets
    """
    last_error = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
    raise last_error  # type: ignore
