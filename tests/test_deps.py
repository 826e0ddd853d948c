"""
Caller resolution and error mapping tests.
"""

import pytest
from fastapi import HTTPException, Request

from aba_core.core.deps import http_error_for, require_caller, resolve_caller
from aba_core.core.exceptions import (
    IntegrityViolation,
    InvalidTransition,
    MissingOrganizationContext,
    NotFound,
    Unauthenticated,
    Unauthorized,
)
from aba_core.core.security import SESSION_COOKIE_NAME, create_session_token
from aba_core.db.enums import MembershipStatus, Role
from aba_core.db.models import Membership
from aba_core.schemas.auth import Caller


def _request(token: str | None = None) -> Request:
    headers = []
    if token:
        headers.append((b"cookie", f"{SESSION_COOKIE_NAME}={token}".encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


# =============================================================================
# Error mapping
# =============================================================================

@pytest.mark.parametrize(
    "exc, status",
    [
        (Unauthenticated(), 401),
        (MissingOrganizationContext(), 400),
        (NotFound("Patient not found"), 404),
        (Unauthorized("nope"), 403),
        (InvalidTransition("DRAFT", "approve"), 403),
        (IntegrityViolation("bad mac"), 500),
        (RuntimeError("boom"), 500),
    ],
)
def test_http_error_for(exc, status):
    assert http_error_for(exc).status_code == status


def test_integrity_detail_is_generic():
    assert http_error_for(IntegrityViolation("mac mismatch on ssn")).detail == "Data integrity check failed"


# =============================================================================
# Caller resolution
# =============================================================================

def test_resolves_role_from_membership(db, staff):
    token = create_session_token(staff.bcba.id, staff.org.id, token_version=1)

    caller = resolve_caller(_request(token), db)

    assert caller == Caller(user_id=staff.bcba.id, role=Role.BCBA, organization_id=staff.org.id)


def test_legacy_membership_label_resolves_to_clinical_manager(db, staff, add_staff):
    director = add_staff(staff.org, "CLINICAL_DIRECTOR", "director")
    token = create_session_token(director.id, staff.org.id, token_version=1)

    assert resolve_caller(_request(token), db).role == Role.CLINICAL_MANAGER


def test_missing_or_invalid_token(db, staff):
    assert resolve_caller(_request(), db) is None
    assert resolve_caller(_request("not-a-jwt"), db) is None


def test_revoked_token_version(db, staff):
    token = create_session_token(staff.bcba.id, staff.org.id, token_version=1)
    staff.bcba.token_version = 2
    db.flush()

    assert resolve_caller(_request(token), db) is None


def test_inactive_membership_has_no_organization(db, staff):
    membership = db.query(Membership).filter(Membership.user_id == staff.rbt.id).one()
    membership.status = MembershipStatus.INACTIVE.value
    db.flush()
    token = create_session_token(staff.rbt.id, staff.org.id, token_version=1)

    caller = resolve_caller(_request(token), db)
    assert caller == Caller(user_id=staff.rbt.id)

    with pytest.raises(HTTPException) as exc_info:
        require_caller(caller)
    assert exc_info.value.status_code == 400


def test_other_org_token_has_no_organization(db, staff, other_staff):
    token = create_session_token(staff.admin.id, other_staff.org.id, token_version=1)

    caller = resolve_caller(_request(token), db)
    assert caller.organization_id is None
    assert caller.role is None


def test_unknown_role_is_forbidden():
    caller = Caller(user_id=1, role="SUPERUSER", organization_id=1)
    with pytest.raises(HTTPException) as exc_info:
        require_caller(caller)
    assert exc_info.value.status_code == 403
