"""Treatment plan service - CRUD and the approval workflow.

Status changes go through `transition_treatment_plan`, which asks
plan_workflow for the next status and persists it with a compare-and-set on
the status the decision was based on. Two concurrent reviewers can never
both move the same plan.
"""

import logging
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import func, update
from sqlalchemy.orm import Session

from aba_core.core import plan_workflow
from aba_core.core.exceptions import InvalidTransition, NotFound, Unauthorized
from aba_core.core.filters import ai_review_filter, treatment_plan_filter
from aba_core.core.plan_access import (
    can_create_treatment_plan_for,
    can_delete_treatment_plan,
    can_request_ai_review,
    check_plan_access,
    check_plan_edit,
)
from aba_core.core.permissions import require_session
from aba_core.core.structured_logging import caller_log_context
from aba_core.db.enums import AIReviewStatus, AIReviewType, AuditAction, PlanAction, PlanStatus
from aba_core.db.models import AIReview, Patient, TreatmentPlan
from aba_core.schemas.auth import Caller
from aba_core.schemas.treatment_plan import (
    TreatmentPlanCreate,
    TreatmentPlanUpdate,
    WorkflowHistoryEntry,
)
from aba_core.services import audit_service, notification_service


logger = logging.getLogger(__name__)

_CONTENT_FIELDS = ("goals", "behaviors", "interventions", "data_collection_methods")

TRANSITION_AUDIT_ACTIONS: dict[PlanAction, AuditAction] = {
    PlanAction.SUBMIT: AuditAction.SUBMIT_TREATMENT_PLAN_REVIEW,
    PlanAction.APPROVE: AuditAction.APPROVE_TREATMENT_PLAN,
    PlanAction.REJECT: AuditAction.REJECT_TREATMENT_PLAN,
    PlanAction.ACTIVATE: AuditAction.ACTIVATE_TREATMENT_PLAN,
    PlanAction.ARCHIVE: AuditAction.ARCHIVE_TREATMENT_PLAN,
}


def history_entry(
    status: PlanStatus,
    action: str,
    user_id: int,
    reason: str | None = None,
) -> dict:
    entry = WorkflowHistoryEntry(
        status=status.value,
        action=action,
        user_id=user_id,
        timestamp=datetime.now(timezone.utc),
        reason=reason,
    )
    return entry.model_dump(mode="json", exclude_none=True)


def _load_plan(db: Session, caller: Caller, plan_id: int) -> TreatmentPlan:
    plan = db.query(TreatmentPlan).filter(
        TreatmentPlan.id == plan_id,
        TreatmentPlan.organization_id == caller.organization_id,
        TreatmentPlan.deleted_at.is_(None),
    ).first()
    if not plan:
        raise NotFound("Treatment plan not found")
    return plan


def _load_patient(db: Session, caller: Caller, patient_id: int) -> Patient:
    patient = db.query(Patient).filter(
        Patient.id == patient_id,
        Patient.organization_id == caller.organization_id,
        Patient.deleted_at.is_(None),
    ).first()
    if not patient:
        raise NotFound("Patient not found")
    return patient


def next_version(db: Session, patient_id: int) -> int:
    """Highest existing version for the patient plus one (deleted plans count)."""
    current = db.query(func.max(TreatmentPlan.version)).filter(
        TreatmentPlan.patient_id == patient_id
    ).scalar()
    return (current or 0) + 1


# =============================================================================
# CRUD
# =============================================================================

def create_treatment_plan(
    db: Session,
    caller: Caller | None,
    data: TreatmentPlanCreate,
    request: Request | None = None,
) -> TreatmentPlan:
    """
    Create a DRAFT plan for a patient the caller can see.

    Raises:
        NotFound: Patient not in the caller's organization
        Unauthorized: Caller may not create plans for this patient
    """
    caller = require_session(caller)
    patient = _load_patient(db, caller, data.patient_id)
    if not can_create_treatment_plan_for(caller, patient):
        raise Unauthorized("Insufficient permissions to create treatment plans")

    plan = TreatmentPlan(
        organization_id=caller.organization_id,
        patient_id=patient.id,
        version=next_version(db, patient.id),
        title=data.title,
        status=plan_workflow.INITIAL_STATUS.value,
        session_frequency=data.session_frequency,
        review_cycle=data.review_cycle,
        additional_notes=data.additional_notes,
        effective_date=data.effective_date,
        expiry_date=data.expiry_date,
        created_by_id=caller.user_id,
        workflow_history=[
            history_entry(plan_workflow.INITIAL_STATUS, "create", caller.user_id)
        ],
        **data.to_columns(),
    )
    db.add(plan)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.CREATE_TREATMENT_PLAN, "treatment_plan", plan.id,
        patient_id=patient.id,
        changes={"version": plan.version},
        request=request,
    )
    db.commit()
    db.refresh(plan)

    logger.info("Treatment plan created", extra=caller_log_context(caller))
    return plan


def get_treatment_plan(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    request: Request | None = None,
) -> TreatmentPlan:
    """
    Raises:
        NotFound: Plan not in the caller's organization
        Unauthorized: Caller may not view the plan
    """
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    check_plan_access(caller, plan, plan.patient)

    audit_service.log_phi_access(
        db, caller, AuditAction.VIEW_TREATMENT_PLAN, "treatment_plan", plan.id,
        patient_id=plan.patient_id,
        request=request,
    )
    db.commit()
    return plan


def list_treatment_plans(
    db: Session,
    caller: Caller | None,
    patient_id: int | None = None,
    status: PlanStatus | None = None,
    limit: int = 100,
    offset: int = 0,
    request: Request | None = None,
) -> list[TreatmentPlan]:
    """Plans visible to the caller, newest first. `status` matches legacy labels too."""
    caller = require_session(caller)
    query = db.query(TreatmentPlan).filter(
        treatment_plan_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if patient_id is not None:
        query = query.filter(TreatmentPlan.patient_id == patient_id)
    if status is not None:
        query = query.filter(TreatmentPlan.status.in_(PlanStatus(status).stored_labels))

    plans = (
        query.order_by(TreatmentPlan.created_at.desc(), TreatmentPlan.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    audit_service.log_phi_access(
        db, caller, AuditAction.LIST_TREATMENT_PLANS, "treatment_plan", None,
        patient_id=patient_id,
        changes={"count": len(plans)},
        request=request,
    )
    db.commit()
    return plans


def update_treatment_plan(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    data: TreatmentPlanUpdate,
    request: Request | None = None,
) -> TreatmentPlan:
    """
    Partial update of title, content and schedule fields. Status is not
    editable here.

    Raises:
        Unauthorized: Caller may not edit the plan (RBT/BT never can)
    """
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    check_plan_edit(caller, plan, plan.patient)

    update_data = data.model_dump(exclude_unset=True)
    for field in update_data:
        if field in _CONTENT_FIELDS:
            items = getattr(data, field) or []
            setattr(plan, field, [item.model_dump(mode="json") for item in items])
        else:
            setattr(plan, field, update_data[field])

    audit_service.log_phi_access(
        db, caller, AuditAction.UPDATE_TREATMENT_PLAN, "treatment_plan", plan.id,
        patient_id=plan.patient_id,
        changes={"updated_fields": sorted(update_data)},
        request=request,
    )
    db.commit()
    db.refresh(plan)
    return plan


def delete_treatment_plan(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    request: Request | None = None,
) -> None:
    """Soft delete. ORG_ADMIN always; the creator only while DRAFT."""
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    if not can_delete_treatment_plan(caller, plan):
        raise Unauthorized("Insufficient permissions to delete this treatment plan")

    plan.deleted_at = datetime.now(timezone.utc)
    audit_service.log_phi_access(
        db, caller, AuditAction.DELETE_TREATMENT_PLAN, "treatment_plan", plan.id,
        patient_id=plan.patient_id,
        request=request,
    )
    db.commit()


# =============================================================================
# Workflow
# =============================================================================

def _transition_values(
    plan: TreatmentPlan,
    caller: Caller,
    current: PlanStatus,
    action: PlanAction,
    target: PlanStatus,
    reason: str | None,
) -> dict:
    history = list(plan.workflow_history or [])
    history.append(history_entry(target, action.value, caller.user_id, reason))
    values: dict = {"status": target.value, "workflow_history": history}

    if action == PlanAction.APPROVE:
        if current == PlanStatus.PENDING_BCBA_REVIEW:
            values["reviewed_by_id"] = caller.user_id
        else:
            values["approved_by_id"] = caller.user_id
            values["approved_at"] = datetime.now(timezone.utc)
    elif action == PlanAction.REJECT:
        values["rejection_reason"] = reason
    return values


def _notify_transition(
    db: Session,
    plan: TreatmentPlan,
    action: PlanAction,
    target: PlanStatus,
    actor_id: int,
    reason: str | None,
) -> None:
    if target in plan_workflow.REVIEW_STATUSES:
        notification_service.notify_reviewers(db, plan, target, actor_id)
    if action in (PlanAction.APPROVE, PlanAction.REJECT):
        notification_service.notify_plan_creator(db, plan, target, actor_id, reason)


def transition_treatment_plan(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    action: PlanAction | str,
    reason: str | None = None,
    request: Request | None = None,
) -> TreatmentPlan:
    """
    Apply a workflow action to a plan.

    The write only succeeds if the stored status is still the one the
    decision was made on (current or legacy label).

    Raises:
        NotFound: Plan not in the caller's organization
        InvalidTransition: Action not allowed from the current status, guard
            rejects the caller, or the plan changed concurrently
        ValueError: Reject without a reason
    """
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)

    action = PlanAction(action)
    target = plan_workflow.next_status(plan, caller, action)
    current = plan_workflow.parse_status(plan.status)
    if action == PlanAction.REJECT and not (reason and reason.strip()):
        raise ValueError("A reason is required to reject a treatment plan")

    result = db.execute(
        update(TreatmentPlan)
        .where(
            TreatmentPlan.id == plan.id,
            TreatmentPlan.status.in_(current.stored_labels),
        )
        .values(**_transition_values(plan, caller, current, action, target, reason))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidTransition(
            current.value, action.value, attempted=target.value, detail="modified concurrently"
        )
    db.refresh(plan)

    _notify_transition(db, plan, action, target, caller.user_id, reason)
    audit_service.log_phi_access(
        db, caller, TRANSITION_AUDIT_ACTIONS[action], "treatment_plan", plan.id,
        patient_id=plan.patient_id,
        changes={"from": current.value, "to": target.value},
        request=request,
    )
    db.commit()
    db.refresh(plan)

    logger.info(
        "Treatment plan %s: %s -> %s", action.value, current.value, target.value,
        extra=caller_log_context(caller),
    )
    return plan


def submit_for_review(db: Session, caller: Caller | None, plan_id: int, request: Request | None = None) -> TreatmentPlan:
    return transition_treatment_plan(db, caller, plan_id, PlanAction.SUBMIT, request=request)


def approve_treatment_plan(db: Session, caller: Caller | None, plan_id: int, request: Request | None = None) -> TreatmentPlan:
    return transition_treatment_plan(db, caller, plan_id, PlanAction.APPROVE, request=request)


def reject_treatment_plan(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    reason: str,
    request: Request | None = None,
) -> TreatmentPlan:
    return transition_treatment_plan(db, caller, plan_id, PlanAction.REJECT, reason=reason, request=request)


# =============================================================================
# AI review
# =============================================================================

def request_ai_review(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    review_type: AIReviewType = AIReviewType.DRAFT_REVIEW,
    request: Request | None = None,
) -> AIReview:
    """Queue an AI review of a plan. Content is produced elsewhere."""
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    if not can_request_ai_review(caller, plan, plan.patient):
        raise Unauthorized("You don't have permission to request an AI review")

    review = AIReview(
        organization_id=plan.organization_id,
        treatment_plan_id=plan.id,
        review_type=review_type.value,
        requested_by_id=caller.user_id,
    )
    db.add(review)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.REQUEST_AI_REVIEW, "ai_review", review.id,
        patient_id=plan.patient_id,
        changes={"treatment_plan_id": plan.id, "review_type": review_type.value},
        request=request,
    )
    db.commit()
    db.refresh(review)
    return review


def list_ai_reviews(db: Session, caller: Caller | None, plan_id: int | None = None) -> list[AIReview]:
    caller = require_session(caller)
    query = db.query(AIReview).filter(
        ai_review_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if plan_id is not None:
        query = query.filter(AIReview.treatment_plan_id == plan_id)
    return query.order_by(AIReview.created_at.desc(), AIReview.id.desc()).all()


def record_ai_review_result(
    db: Session,
    org_id: int,
    review_id: int,
    score: int | None,
    findings: dict,
) -> AIReview:
    """Store the external reviewer's output and flag the plan as reviewed."""
    review = db.query(AIReview).filter(
        AIReview.id == review_id,
        AIReview.organization_id == org_id,
    ).first()
    if not review:
        raise NotFound("AI review not found")

    review.status = AIReviewStatus.COMPLETED.value
    review.score = score
    review.findings = findings
    review.treatment_plan.ai_reviewed = True
    db.commit()
    db.refresh(review)
    return review
