"""Patient and session note access control.

Entity-level predicates: the caller plus a loaded row. Every predicate first
re-checks the organization, so a row from another tenant is denied whatever
the role. Assignment is role-specific, matching the list filters: a BCBA is
assigned through `assigned_bcba_id`, an RBT/BT through `assigned_rbt_id`.
"""

from aba_core.core.exceptions import Unauthorized
from aba_core.core.permissions import (
    can_assign_staff,
    can_create_session_note,
    has_valid_session,
)
from aba_core.core.roles import ADMIN_TIER_ROLES, ASSIGNED_CLINICAL_ROLES, is_admin_tier
from aba_core.db.enums import Role
from aba_core.db.models import Patient, SessionNote
from aba_core.schemas.auth import Caller


def _same_org(caller: Caller | None, organization_id: int | None) -> bool:
    return (
        has_valid_session(caller)
        and organization_id is not None
        and organization_id == caller.organization_id
    )


def is_patient_assigned_to(caller: Caller, patient: Patient) -> bool:
    if caller.role == Role.BCBA:
        return patient.assigned_bcba_id == caller.user_id
    if caller.role in (Role.RBT, Role.BT):
        return patient.assigned_rbt_id == caller.user_id
    return False


# =============================================================================
# Patients
# =============================================================================

def can_view_patient(caller: Caller | None, patient: Patient) -> bool:
    if not _same_org(caller, patient.organization_id):
        return False
    if patient.deleted_at is not None:
        return False
    if caller.role in ADMIN_TIER_ROLES:
        return True
    if caller.role in ASSIGNED_CLINICAL_ROLES:
        return is_patient_assigned_to(caller, patient)
    return False


def can_edit_patient(caller: Caller | None, patient: Patient) -> bool:
    """Admin tier, or the BCBA assigned to the patient. RBT/BT are view-only."""
    if not can_view_patient(caller, patient):
        return False
    if is_admin_tier(caller.role):
        return True
    return caller.role == Role.BCBA


def can_delete_patient(caller: Caller | None, patient: Patient) -> bool:
    if not _same_org(caller, patient.organization_id):
        return False
    return is_admin_tier(caller.role)


def can_assign_patient_staff(caller: Caller | None, patient: Patient) -> bool:
    if not _same_org(caller, patient.organization_id):
        return False
    return can_assign_staff(caller)


def check_patient_access(caller: Caller | None, patient: Patient) -> None:
    """
    Raises:
        Unauthorized: Caller may not view this patient
    """
    if not can_view_patient(caller, patient):
        raise Unauthorized("You don't have access to this patient")


# =============================================================================
# Session notes
# =============================================================================

def can_view_session_note(
    caller: Caller | None,
    note: SessionNote,
    patient: Patient | None = None,
) -> bool:
    """Admin tier; clinical staff who wrote the note or are assigned the patient."""
    if not _same_org(caller, note.organization_id):
        return False
    if note.deleted_at is not None:
        return False
    if caller.role in ADMIN_TIER_ROLES:
        return True
    if caller.role not in ASSIGNED_CLINICAL_ROLES:
        return False
    if note.created_by_id == caller.user_id:
        return True
    return patient is not None and is_patient_assigned_to(caller, patient)


def can_create_session_note_for(caller: Caller | None, patient: Patient) -> bool:
    """Clinical staff who can see the patient."""
    return can_create_session_note(caller) and can_view_patient(caller, patient)


def can_edit_session_note(caller: Caller | None, note: SessionNote) -> bool:
    """Owner or admin tier."""
    if not _same_org(caller, note.organization_id):
        return False
    if note.deleted_at is not None:
        return False
    return note.created_by_id == caller.user_id or is_admin_tier(caller.role)


def can_delete_session_note(caller: Caller | None, note: SessionNote) -> bool:
    return can_edit_session_note(caller, note)
