"""Comment service - threaded comments on treatment plans."""

from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.orm import Session

from aba_core.core.exceptions import NotFound, Unauthorized
from aba_core.core.filters import comment_filter
from aba_core.core.plan_access import can_comment_on_treatment_plan, can_delete_comment, check_plan_access
from aba_core.core.permissions import require_session
from aba_core.db.enums import AuditAction
from aba_core.db.models import Comment, TreatmentPlan
from aba_core.schemas.auth import Caller
from aba_core.schemas.treatment_plan import CommentCreate
from aba_core.services import audit_service


def _load_plan(db: Session, caller: Caller, plan_id: int) -> TreatmentPlan:
    plan = db.query(TreatmentPlan).filter(
        TreatmentPlan.id == plan_id,
        TreatmentPlan.organization_id == caller.organization_id,
        TreatmentPlan.deleted_at.is_(None),
    ).first()
    if not plan:
        raise NotFound("Treatment plan not found")
    return plan


def add_comment(
    db: Session,
    caller: Caller | None,
    plan_id: int,
    data: CommentCreate,
    request: Request | None = None,
) -> Comment:
    """
    Comment on a plan the caller can view. A reply's parent must be a live
    comment on the same plan.
    """
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    if not can_comment_on_treatment_plan(caller, plan, plan.patient):
        raise Unauthorized("You don't have permission to comment on this treatment plan")

    if data.parent_comment_id is not None:
        parent = db.query(Comment).filter(
            Comment.id == data.parent_comment_id,
            Comment.treatment_plan_id == plan.id,
            Comment.deleted_at.is_(None),
        ).first()
        if not parent:
            raise NotFound("Parent comment not found on this treatment plan")

    comment = Comment(
        organization_id=plan.organization_id,
        treatment_plan_id=plan.id,
        user_id=caller.user_id,
        parent_comment_id=data.parent_comment_id,
        comment_text=data.comment_text,
    )
    db.add(comment)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.CREATE_COMMENT, "comment", comment.id,
        patient_id=plan.patient_id,
        changes={"treatment_plan_id": plan.id},
        request=request,
    )
    db.commit()
    db.refresh(comment)
    return comment


def list_comments(db: Session, caller: Caller | None, plan_id: int) -> list[Comment]:
    """Live comments on a plan, oldest first."""
    caller = require_session(caller)
    plan = _load_plan(db, caller, plan_id)
    check_plan_access(caller, plan, plan.patient)

    return (
        db.query(Comment)
        .filter(
            comment_filter(caller.user_id, caller.role, caller.organization_id),
            Comment.treatment_plan_id == plan.id,
        )
        .order_by(Comment.created_at.asc(), Comment.id.asc())
        .all()
    )


def delete_comment(
    db: Session,
    caller: Caller | None,
    comment_id: int,
    request: Request | None = None,
) -> None:
    """Soft delete. Comment owner or ORG_ADMIN."""
    caller = require_session(caller)
    comment = db.query(Comment).filter(
        Comment.id == comment_id,
        Comment.organization_id == caller.organization_id,
        Comment.deleted_at.is_(None),
    ).first()
    if not comment:
        raise NotFound("Comment not found")
    if not can_delete_comment(caller, comment):
        raise Unauthorized("You can only delete your own comments")

    comment.deleted_at = datetime.now(timezone.utc)
    audit_service.log_phi_access(
        db, caller, AuditAction.DELETE_COMMENT, "comment", comment.id,
        patient_id=comment.treatment_plan.patient_id,
        request=request,
    )
    db.commit()
