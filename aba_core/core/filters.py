"""Query filters for role-based data access.

Each function maps `(user_id, role, organization_id)` to a SQLAlchemy boolean
clause for one resource type, to be passed to `.filter()` / `.where()`.
They perform no I/O and never raise for "no access": a denied caller gets an
unsatisfiable clause instead.

Every clause conjoins the caller's organization and, where the table supports
soft delete, `deleted_at IS NULL`. A caller without an organization gets an
unsatisfiable clause for every resource.
"""

from sqlalchemy import and_, false, or_
from sqlalchemy.sql.elements import ColumnElement

from aba_core.core.exceptions import MissingOrganizationContext
from aba_core.core.roles import is_admin_tier, normalize_role
from aba_core.db.enums import Role
from aba_core.db.models import (
    AIReview,
    AuditLog,
    Comment,
    Membership,
    Notification,
    Patient,
    SessionNote,
    Template,
    TrainingModule,
    TreatmentPlan,
    User,
)


def _denied(base: ColumnElement[bool]) -> ColumnElement[bool]:
    return and_(base, false())


def ensure_org_isolation(organization_id: int | None) -> int:
    """Return the organization id or raise when none is selected."""
    if organization_id is None:
        raise MissingOrganizationContext()
    return organization_id


# =============================================================================
# Patients
# =============================================================================

def patient_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """
    - Admin tier: all patients in the organization
    - BCBA: patients assigned to them as BCBA
    - RBT / BT: patients assigned to them as RBT
    - HR_MANAGER and unknown roles: none
    """
    if organization_id is None:
        return false()

    base = and_(
        Patient.organization_id == organization_id,
        Patient.deleted_at.is_(None),
    )

    normalized = normalize_role(role)
    if is_admin_tier(normalized):
        return base
    if normalized == Role.BCBA:
        return and_(base, Patient.assigned_bcba_id == user_id)
    if normalized in (Role.RBT, Role.BT):
        return and_(base, Patient.assigned_rbt_id == user_id)
    return _denied(base)


def _assigned_patient_clause(user_id: int, role: Role | None):
    """Relationship criterion for rows whose patient is assigned to the user."""
    if role == Role.BCBA:
        return Patient.assigned_bcba_id == user_id
    return Patient.assigned_rbt_id == user_id


# =============================================================================
# Treatment plans & dependents
# =============================================================================

def treatment_plan_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """
    - Admin tier: all plans in the organization
    - BCBA / RBT / BT: plans they created or plans for their assigned patients
    - Others: none
    """
    if organization_id is None:
        return false()

    base = and_(
        TreatmentPlan.organization_id == organization_id,
        TreatmentPlan.deleted_at.is_(None),
    )

    normalized = normalize_role(role)
    if is_admin_tier(normalized):
        return base
    if normalized in (Role.BCBA, Role.RBT, Role.BT):
        return and_(
            base,
            or_(
                TreatmentPlan.created_by_id == user_id,
                TreatmentPlan.patient.has(_assigned_patient_clause(user_id, normalized)),
            ),
        )
    return _denied(base)


def session_note_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Same shape as treatment_plan_filter."""
    if organization_id is None:
        return false()

    base = and_(
        SessionNote.organization_id == organization_id,
        SessionNote.deleted_at.is_(None),
    )

    normalized = normalize_role(role)
    if is_admin_tier(normalized):
        return base
    if normalized in (Role.BCBA, Role.RBT, Role.BT):
        return and_(
            base,
            or_(
                SessionNote.created_by_id == user_id,
                SessionNote.patient.has(_assigned_patient_clause(user_id, normalized)),
            ),
        )
    return _denied(base)


def comment_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Comments are visible iff their treatment plan is visible."""
    if organization_id is None:
        return false()

    return and_(
        Comment.organization_id == organization_id,
        Comment.deleted_at.is_(None),
        Comment.treatment_plan.has(
            treatment_plan_filter(user_id, role, organization_id)
        ),
    )


def ai_review_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Same scoping as the parent treatment plan, plus organization match."""
    if organization_id is None:
        return false()

    return and_(
        AIReview.organization_id == organization_id,
        AIReview.treatment_plan.has(
            treatment_plan_filter(user_id, role, organization_id)
        ),
    )


# =============================================================================
# Shared content
# =============================================================================

def template_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """
    Active, non-deleted templates that are public, belong to the organization,
    or were created by the user. Not role-gated.
    """
    if organization_id is None:
        return false()

    return and_(
        Template.deleted_at.is_(None),
        Template.is_active.is_(True),
        or_(
            Template.is_public.is_(True),
            Template.organization_id == organization_id,
            Template.created_by_id == user_id,
        ),
    )


def training_module_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Active modules of the organization or published platform-wide."""
    if organization_id is None:
        return false()

    return and_(
        TrainingModule.is_active.is_(True),
        or_(
            TrainingModule.organization_id == organization_id,
            TrainingModule.organization_id.is_(None),
        ),
    )


def notification_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """The user's own notifications for this organization or system-wide."""
    if organization_id is None:
        return false()

    return and_(
        Notification.user_id == user_id,
        or_(
            Notification.organization_id == organization_id,
            Notification.organization_id.is_(None),
        ),
    )


# =============================================================================
# Administration
# =============================================================================

def audit_log_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Admin tier only, always scoped to the organization."""
    if organization_id is None:
        return false()

    base = AuditLog.organization_id == organization_id
    if not is_admin_tier(role):
        return _denied(base)
    return base


def user_filter(
    user_id: int,
    role: Role | str | None,
    organization_id: int | None,
) -> ColumnElement[bool]:
    """Team listing: admin tier only, members of the organization."""
    if organization_id is None:
        return false()

    base = and_(
        User.deleted_at.is_(None),
        User.memberships.any(Membership.organization_id == organization_id),
    )
    if not is_admin_tier(role):
        return _denied(base)
    return base
