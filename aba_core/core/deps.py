"""FastAPI dependencies for caller resolution and database access.

This is the identity collaborator adapter: it turns a session cookie into a
Caller and maps the domain error taxonomy to HTTP errors. Domain code never
raises HTTPException itself.
"""

import logging
from typing import Generator

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from aba_core.core.exceptions import (
    AccessError,
    IntegrityViolation,
    MissingOrganizationContext,
    NotFound,
    Unauthenticated,
    Unauthorized,
)
from aba_core.core.security import SESSION_COOKIE_NAME, decode_session_token
from aba_core.db.enums import MembershipStatus
from aba_core.db.models import Membership, User
from aba_core.db.session import SessionLocal
from aba_core.schemas.auth import Caller, TokenPayload


logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def resolve_caller(request: Request, db: Session) -> Caller | None:
    """
    Resolve the session cookie to a Caller, or None when unauthenticated.

    Validates:
    - Session cookie exists and the JWT verifies
    - User exists, is active and not deleted
    - Token version matches (revocation support)

    The role comes from the user's active membership in the token's
    organization. Without one the caller has no organization and therefore
    no access to organization-scoped data.
    """
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None

    try:
        payload = TokenPayload.model_validate(decode_session_token(token))
    except (jwt.InvalidTokenError, ValueError):
        return None

    user = db.query(User).filter(User.id == payload.sub).first()
    if not user or not user.is_active or user.deleted_at is not None:
        return None
    if user.token_version != payload.token_version:
        return None

    if payload.org_id is None:
        return Caller(user_id=user.id)

    membership = (
        db.query(Membership)
        .filter(
            Membership.user_id == user.id,
            Membership.organization_id == payload.org_id,
            Membership.status == MembershipStatus.ACTIVE.value,
        )
        .first()
    )
    if not membership:
        return Caller(user_id=user.id)

    return Caller(
        user_id=user.id,
        role=membership.role,
        organization_id=membership.organization_id,
    )


def get_current_caller(request: Request, db: Session = Depends(get_db)) -> Caller:
    """
    Primary auth dependency.

    Raises:
        HTTPException 401: Not authenticated
    """
    caller = resolve_caller(request, db)
    if caller is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return caller


def require_caller(caller: Caller = Depends(get_current_caller)) -> Caller:
    """
    Caller with an organization selected and a recognized role.

    Raises:
        HTTPException 400: No organization selected
        HTTPException 403: Unknown role
    """
    if caller.organization_id is None:
        raise http_error_for(MissingOrganizationContext())
    if caller.role is None:
        raise HTTPException(status_code=403, detail="Unknown role. Contact administrator.")
    return caller


def http_error_for(exc: Exception) -> HTTPException:
    """Map a domain exception to the HTTPException a route should raise."""
    if isinstance(exc, Unauthenticated):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, MissingOrganizationContext):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc) or "Not found")
    if isinstance(exc, Unauthorized):
        # InvalidTransition included
        return HTTPException(status_code=403, detail=str(exc) or "Forbidden")
    if isinstance(exc, IntegrityViolation):
        logger.error("Integrity violation surfaced to request")
        return HTTPException(status_code=500, detail="Data integrity check failed")
    if isinstance(exc, AccessError):
        return HTTPException(status_code=403, detail=str(exc) or "Forbidden")
    return HTTPException(status_code=500, detail="Internal server error")
