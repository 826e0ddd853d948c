"""
Notification Service - handles in-app notifications.

Provides CRUD for notifications and trigger functions for treatment plan,
patient and security events. Triggers only add rows; the calling service
owns the commit.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from aba_core.core.filters import notification_filter
from aba_core.core.permissions import require_session
from aba_core.core.roles import ADMIN_TIER_ROLES, CLINICAL_MANAGER_TIER_ROLES, stored_role_labels
from aba_core.db.enums import MembershipStatus, NotificationType, PlanStatus, Role
from aba_core.db.models import Membership, Notification, Patient, TreatmentPlan
from aba_core.schemas.auth import Caller


SECURITY_ACTION_URL = "/organization/settings?tab=security"


def create_notification(
    db: Session,
    org_id: Optional[int],
    user_id: int,
    type: NotificationType,
    title: str,
    message: Optional[str] = None,
    action_url: Optional[str] = None,
) -> Notification:
    """Create a notification. org_id None makes it system-wide."""
    notification = Notification(
        organization_id=org_id,
        user_id=user_id,
        notification_type=type.value,
        title=title,
        message=message,
        action_url=action_url,
    )
    db.add(notification)
    db.flush()
    return notification


def get_notifications(
    db: Session,
    caller: Caller | None,
    unread_only: bool = False,
    limit: int = 20,
    offset: int = 0,
) -> list[Notification]:
    """Get the caller's notifications (current org and system-wide)."""
    caller = require_session(caller)
    query = db.query(Notification).filter(
        notification_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return (
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_unread_count(db: Session, caller: Caller | None) -> int:
    """Get count of unread notifications."""
    caller = require_session(caller)
    return db.query(Notification).filter(
        notification_filter(caller.user_id, caller.role, caller.organization_id),
        Notification.is_read.is_(False),
    ).count()


def mark_read(
    db: Session,
    caller: Caller | None,
    notification_id: int,
) -> Optional[Notification]:
    """Mark a notification as read (scoped by the notification filter)."""
    caller = require_session(caller)
    notification = db.query(Notification).filter(
        Notification.id == notification_id,
        notification_filter(caller.user_id, caller.role, caller.organization_id),
    ).first()

    if notification and not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(notification)

    return notification


def mark_all_read(db: Session, caller: Caller | None) -> int:
    """Mark all notifications as read. Returns count updated."""
    caller = require_session(caller)
    count = db.query(Notification).filter(
        notification_filter(caller.user_id, caller.role, caller.organization_id),
        Notification.is_read.is_(False),
    ).update(
        {"is_read": True, "read_at": datetime.now(timezone.utc)},
        synchronize_session=False,
    )
    db.commit()
    return count


# =============================================================================
# Recipients
# =============================================================================


def get_active_member_ids(
    db: Session,
    org_id: int,
    roles: Iterable[Role],
) -> list[int]:
    """Active members of the organization holding any of `roles` (legacy labels included)."""
    rows = db.query(Membership.user_id).filter(
        Membership.organization_id == org_id,
        Membership.role.in_(stored_role_labels(roles)),
        Membership.status == MembershipStatus.ACTIVE.value,
    ).all()
    return sorted({row.user_id for row in rows})


# =============================================================================
# Notification Triggers (called from plan/patient/breach services)
# =============================================================================


def _plan_url(plan: TreatmentPlan) -> str:
    return f"/treatment-plans/{plan.id}"


def notify_reviewers(
    db: Session,
    plan: TreatmentPlan,
    new_status: PlanStatus,
    actor_id: int,
) -> list[Notification]:
    """Tell the next stage's reviewers a plan is waiting for them."""
    if new_status == PlanStatus.PENDING_BCBA_REVIEW:
        roles = {Role.BCBA}
        stage = "BCBA review"
    elif new_status == PlanStatus.PENDING_MANAGER_REVIEW:
        roles = CLINICAL_MANAGER_TIER_ROLES
        stage = "clinical manager review"
    else:
        return []

    created = []
    for user_id in get_active_member_ids(db, plan.organization_id, roles):
        if user_id == actor_id:
            continue
        created.append(create_notification(
            db=db,
            org_id=plan.organization_id,
            user_id=user_id,
            type=NotificationType.REVIEW_REQUESTED,
            title="Treatment plan ready for review",
            message=f'"{plan.title}" is awaiting {stage}',
            action_url=_plan_url(plan),
        ))
    return created


def notify_plan_creator(
    db: Session,
    plan: TreatmentPlan,
    new_status: PlanStatus,
    actor_id: int,
    reason: Optional[str] = None,
) -> Optional[Notification]:
    """Tell the plan's creator about an approval step or rejection."""
    if plan.created_by_id == actor_id:
        return None

    if new_status == PlanStatus.REJECTED:
        type_ = NotificationType.PLAN_REJECTED
        title = "Treatment plan rejected"
        message = f'"{plan.title}" was rejected'
        if reason:
            message = f"{message}: {reason}"
    else:
        type_ = NotificationType.PLAN_APPROVED
        if new_status == PlanStatus.APPROVED:
            title = "Treatment plan approved"
            message = f'"{plan.title}" was approved'
        else:
            title = "Treatment plan passed BCBA review"
            message = f'"{plan.title}" moved to clinical manager review'

    return create_notification(
        db=db,
        org_id=plan.organization_id,
        user_id=plan.created_by_id,
        type=type_,
        title=title,
        message=message,
        action_url=_plan_url(plan),
    )


def notify_patient_assignment(
    db: Session,
    patient: Patient,
    assignee_ids: Iterable[int | None],
    actor_id: int,
) -> list[Notification]:
    """Notify staff newly assigned to a patient. No PHI in the message."""
    created = []
    for user_id in {uid for uid in assignee_ids if uid}:
        if user_id == actor_id:
            continue
        created.append(create_notification(
            db=db,
            org_id=patient.organization_id,
            user_id=user_id,
            type=NotificationType.PATIENT_ASSIGNED,
            title="New patient assignment",
            message="You have been assigned to a patient",
            action_url=f"/patients/{patient.id}",
        ))
    return created


def notify_security_admins(
    db: Session,
    org_id: int,
    title: str,
    message: str,
) -> list[Notification]:
    """Fan out a security alert to every active admin-tier member."""
    return [
        create_notification(
            db=db,
            org_id=org_id,
            user_id=user_id,
            type=NotificationType.SYSTEM_ALERT,
            title=title,
            message=message,
            action_url=SECURITY_ACTION_URL,
        )
        for user_id in get_active_member_ids(db, org_id, ADMIN_TIER_ROLES)
    ]
