"""Treatment plan approval state machine.

    DRAFT --submit--> PENDING_BCBA_REVIEW --approve--> PENDING_MANAGER_REVIEW
          --approve--> APPROVED --activate--> ACTIVE --archive--> ARCHIVED

Either review stage may reject to REJECTED. APPROVED may also be archived
directly. The functions here are pure: they decide the next status and never
touch the database. Persisting a transition is the service layer's job and
must be a compare-and-set on the current status.
"""

from dataclasses import dataclass
from typing import Callable

from aba_core.core.exceptions import InvalidTransition, Unauthorized
from aba_core.core.roles import is_admin_tier, is_clinical_manager_tier
from aba_core.db.enums import PlanAction, PlanStatus, Role
from aba_core.db.models import TreatmentPlan
from aba_core.schemas.auth import Caller


Guard = Callable[[TreatmentPlan, Caller], bool]


def _is_creator(plan: TreatmentPlan, caller: Caller) -> bool:
    return plan.created_by_id == caller.user_id


def _is_bcba(plan: TreatmentPlan, caller: Caller) -> bool:
    return caller.role == Role.BCBA


def _is_manager_tier(plan: TreatmentPlan, caller: Caller) -> bool:
    return is_clinical_manager_tier(caller.role)


def _has_admin_edit_rights(plan: TreatmentPlan, caller: Caller) -> bool:
    return is_admin_tier(caller.role)


@dataclass(frozen=True)
class Transition:
    source: PlanStatus
    action: PlanAction
    target: PlanStatus
    guard: Guard
    guard_description: str


TRANSITIONS: tuple[Transition, ...] = (
    # Review chain
    Transition(
        PlanStatus.DRAFT, PlanAction.SUBMIT, PlanStatus.PENDING_BCBA_REVIEW,
        _is_creator, "only the plan creator can submit",
    ),
    Transition(
        PlanStatus.PENDING_BCBA_REVIEW, PlanAction.APPROVE, PlanStatus.PENDING_MANAGER_REVIEW,
        _is_bcba, "requires a BCBA reviewer",
    ),
    Transition(
        PlanStatus.PENDING_BCBA_REVIEW, PlanAction.REJECT, PlanStatus.REJECTED,
        _is_bcba, "requires a BCBA reviewer",
    ),
    Transition(
        PlanStatus.PENDING_MANAGER_REVIEW, PlanAction.APPROVE, PlanStatus.APPROVED,
        _is_manager_tier, "requires a clinical manager reviewer",
    ),
    Transition(
        PlanStatus.PENDING_MANAGER_REVIEW, PlanAction.REJECT, PlanStatus.REJECTED,
        _is_manager_tier, "requires a clinical manager reviewer",
    ),
    # Lifecycle
    Transition(
        PlanStatus.APPROVED, PlanAction.ACTIVATE, PlanStatus.ACTIVE,
        _has_admin_edit_rights, "requires admin-level edit rights",
    ),
    Transition(
        PlanStatus.APPROVED, PlanAction.ARCHIVE, PlanStatus.ARCHIVED,
        _has_admin_edit_rights, "requires admin-level edit rights",
    ),
    Transition(
        PlanStatus.ACTIVE, PlanAction.ARCHIVE, PlanStatus.ARCHIVED,
        _has_admin_edit_rights, "requires admin-level edit rights",
    ),
)

_TRANSITION_INDEX: dict[tuple[PlanStatus, PlanAction], Transition] = {
    (t.source, t.action): t for t in TRANSITIONS
}

INITIAL_STATUS = PlanStatus.DRAFT
TERMINAL_STATUSES = frozenset({PlanStatus.REJECTED, PlanStatus.ARCHIVED})
REVIEW_STATUSES = frozenset({PlanStatus.PENDING_BCBA_REVIEW, PlanStatus.PENDING_MANAGER_REVIEW})


def parse_status(label: str | PlanStatus) -> PlanStatus:
    """Stored label (current or legacy) to canonical status."""
    return PlanStatus(label)


def status_of(plan: TreatmentPlan) -> PlanStatus | None:
    """Canonical status of a plan, or None if its stored label is unknown."""
    try:
        return parse_status(plan.status)
    except ValueError:
        return None


def find_transition(current: PlanStatus | str, action: PlanAction | str) -> Transition | None:
    try:
        return _TRANSITION_INDEX.get((PlanStatus(current), PlanAction(action)))
    except ValueError:
        return None


def next_status(plan: TreatmentPlan, caller: Caller | None, action: PlanAction | str) -> PlanStatus:
    """
    Decide the status `action` moves `plan` to.

    Raises:
        Unauthorized: No caller, or plan outside the caller's organization
        InvalidTransition: No such transition from the current status, or
            the guard rejects the caller
    """
    if caller is None or caller.organization_id is None:
        raise Unauthorized("No valid session")
    if plan.organization_id != caller.organization_id:
        raise Unauthorized("Treatment plan belongs to another organization")

    action_label = action.value if isinstance(action, PlanAction) else str(action)
    current = status_of(plan)
    if current is None:
        raise InvalidTransition(str(plan.status), action_label, detail="unknown status")

    transition = find_transition(current, action_label)
    if transition is None:
        raise InvalidTransition(current.value, action_label)
    if not transition.guard(plan, caller):
        raise InvalidTransition(
            current.value,
            action_label,
            attempted=transition.target.value,
            detail=transition.guard_description,
        )
    return transition.target


def can_transition(plan: TreatmentPlan, caller: Caller | None, action: PlanAction | str) -> bool:
    try:
        next_status(plan, caller, action)
    except Unauthorized:
        return False
    return True


def available_actions(plan: TreatmentPlan, caller: Caller | None) -> list[PlanAction]:
    """Actions the caller could take on the plan right now."""
    return [action for action in PlanAction if can_transition(plan, caller, action)]
