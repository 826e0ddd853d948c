"""Treatment plan access control - centralized permission checks.

Covers treatment plans, their comments and AI reviews, and plan templates.

Access rules:
- Admin tier (ORG_ADMIN, CLINICAL_MANAGER): every plan in the organization
- BCBA / RBT / BT: plans they created or plans for their assigned patients
- RBT / BT never edit plans, whatever they can see
- Review actions are gated by plan status via plan_workflow

`can_*` return bool and never raise. `check_*` raise Unauthorized.
"""

from aba_core.core import plan_workflow
from aba_core.core.exceptions import Unauthorized
from aba_core.core.patient_access import can_view_patient, is_patient_assigned_to
from aba_core.core.permissions import (
    PermissionKey,
    can_create_treatment_plan,
    has_permission,
    has_valid_session,
)
from aba_core.core.roles import (
    ADMIN_TIER_ROLES,
    ASSIGNED_CLINICAL_ROLES,
    is_admin_tier,
    is_org_owner,
    is_technician,
)
from aba_core.db.enums import PlanAction, PlanStatus, Role
from aba_core.db.models import Comment, Patient, Template, TreatmentPlan
from aba_core.schemas.auth import Caller


def _same_org(caller: Caller | None, organization_id: int | None) -> bool:
    return (
        has_valid_session(caller)
        and organization_id is not None
        and organization_id == caller.organization_id
    )


# =============================================================================
# Treatment plans
# =============================================================================

def can_view_treatment_plan(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> bool:
    """
    Admin tier always; clinical staff when they created the plan or are
    assigned to its patient (pass the loaded `patient` for the latter).
    """
    if not _same_org(caller, plan.organization_id):
        return False
    if plan.deleted_at is not None:
        return False
    if caller.role in ADMIN_TIER_ROLES:
        return True
    if caller.role not in ASSIGNED_CLINICAL_ROLES:
        return False
    if plan.created_by_id == caller.user_id:
        return True
    return patient is not None and is_patient_assigned_to(caller, patient)


def can_edit_treatment_plan(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> bool:
    # View-only roles, regardless of ownership or status
    if caller is None or is_technician(caller.role):
        return False
    if not can_view_treatment_plan(caller, plan, patient):
        return False
    if is_admin_tier(caller.role):
        return True
    return (
        caller.role == Role.BCBA
        and plan.created_by_id == caller.user_id
        and plan_workflow.status_of(plan) == PlanStatus.DRAFT
    )


def can_create_treatment_plan_for(caller: Caller | None, patient: Patient) -> bool:
    return can_create_treatment_plan(caller) and can_view_patient(caller, patient)


def can_delete_treatment_plan(caller: Caller | None, plan: TreatmentPlan) -> bool:
    """ORG_ADMIN always; the creator only while the plan is a draft."""
    if not _same_org(caller, plan.organization_id):
        return False
    if is_org_owner(caller.role):
        return True
    return (
        plan.created_by_id == caller.user_id
        and plan_workflow.status_of(plan) == PlanStatus.DRAFT
    )


def can_submit_for_review(caller: Caller | None, plan: TreatmentPlan) -> bool:
    return plan_workflow.can_transition(plan, caller, PlanAction.SUBMIT)


def can_approve_treatment_plan(caller: Caller | None, plan: TreatmentPlan) -> bool:
    return plan_workflow.can_transition(plan, caller, PlanAction.APPROVE)


def can_reject_treatment_plan(caller: Caller | None, plan: TreatmentPlan) -> bool:
    return plan_workflow.can_transition(plan, caller, PlanAction.REJECT)


def can_review_treatment_plan(caller: Caller | None, plan: TreatmentPlan) -> bool:
    """Caller is the reviewer for the plan's current review stage."""
    return can_approve_treatment_plan(caller, plan) or can_reject_treatment_plan(caller, plan)


def can_request_ai_review(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> bool:
    if not can_view_treatment_plan(caller, plan, patient):
        return False
    return has_permission(caller, PermissionKey.REQUEST_AI_REVIEW)


def check_plan_access(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> None:
    """
    Raises:
        Unauthorized: Caller may not view this plan
    """
    if not can_view_treatment_plan(caller, plan, patient):
        raise Unauthorized("You don't have access to this treatment plan")


def check_plan_edit(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> None:
    """
    Raises:
        Unauthorized: Caller may not edit this plan
    """
    if not can_edit_treatment_plan(caller, plan, patient):
        raise Unauthorized("You don't have permission to edit this treatment plan")


# =============================================================================
# Comments
# =============================================================================

def can_comment_on_treatment_plan(
    caller: Caller | None,
    plan: TreatmentPlan,
    patient: Patient | None = None,
) -> bool:
    """Anyone who can view the plan can comment."""
    return can_view_treatment_plan(caller, plan, patient)


def can_delete_comment(caller: Caller | None, comment: Comment) -> bool:
    """Comment owner, or ORG_ADMIN."""
    if not _same_org(caller, comment.organization_id):
        return False
    if comment.deleted_at is not None:
        return False
    return comment.user_id == caller.user_id or is_org_owner(caller.role)


# =============================================================================
# Templates
# =============================================================================

def can_view_template(caller: Caller | None, template: Template) -> bool:
    if not has_valid_session(caller):
        return False
    if template.deleted_at is not None or not template.is_active:
        return False
    return (
        template.is_public
        or template.organization_id == caller.organization_id
        or template.created_by_id == caller.user_id
    )


def can_edit_template(caller: Caller | None, template: Template) -> bool:
    """Admin tier within the template's organization, or the template's creator."""
    if not has_valid_session(caller):
        return False
    if template.deleted_at is not None:
        return False
    if template.created_by_id == caller.user_id:
        return True
    return template.organization_id == caller.organization_id and is_admin_tier(caller.role)


def can_delete_template(caller: Caller | None, template: Template) -> bool:
    return can_edit_template(caller, template)
