"""Patient service - CRUD over encrypted patient records.

PHI is encrypted on write and decrypted on read through the FieldCipher the
caller passes in. Every PHI-touching operation records an audit entry. An
integrity failure on decrypt is reported as a CRITICAL breach and then
re-raised; it is never swallowed.
"""

import logging
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.orm import Session

from aba_core.core.encryption import FieldCipher
from aba_core.core.exceptions import IntegrityViolation, NotFound, Unauthorized
from aba_core.core.filters import patient_filter
from aba_core.core.patient_access import (
    can_assign_patient_staff,
    can_delete_patient,
    can_edit_patient,
    can_view_patient,
)
from aba_core.core.permissions import can_create_patient, require_session
from aba_core.core.phi import PHI_FIELDS, decrypt_fields, encrypt_fields, upgraded_envelopes
from aba_core.core.roles import CLINICAL_ROLES, TECHNICIAN_ROLES, is_admin_tier
from aba_core.core.structured_logging import caller_log_context
from aba_core.db.enums import AuditAction, Role
from aba_core.db.models import Patient
from aba_core.schemas.auth import Caller
from aba_core.schemas.patient import PatientAssign, PatientCreate, PatientRead, PatientUpdate
from aba_core.services import audit_service, breach_service, notification_service


logger = logging.getLogger(__name__)

_CLINICAL_COLUMNS = ("diagnosis", "allergies", "medications", "enrollment_date")


def _load_patient(db: Session, caller: Caller, patient_id: int) -> Patient:
    """Live patient inside the caller's organization, or NotFound."""
    patient = db.query(Patient).filter(
        Patient.id == patient_id,
        Patient.organization_id == caller.organization_id,
        Patient.deleted_at.is_(None),
    ).first()
    if not patient:
        raise NotFound("Patient not found")
    return patient


def _commit_breach_report(db: Session) -> None:
    """
    Persist a breach recorded on a path that is about to raise.

    Only called before any write of the failing operation, so nothing but the
    breach and its audit entry is pending.
    """
    try:
        db.commit()
    except Exception:
        logger.exception("Failed to commit breach report")
        db.rollback()


def _decrypt(db: Session, cipher: FieldCipher, patient: Patient):
    # Callers decrypt before they write anything
    try:
        return decrypt_fields(cipher, patient)
    except IntegrityViolation:
        logger.error(
            "PHI integrity check failed",
            extra={"org_id": patient.organization_id, "patient_id": patient.id},
        )
        breach_service.log_encryption_failure(
            db, patient.organization_id, "decrypt", "patient", patient.id
        )
        _commit_breach_report(db)
        raise


def to_patient_read(db: Session, cipher: FieldCipher, patient: Patient) -> PatientRead:
    """Decrypt a patient row into its read model."""
    phi = _decrypt(db, cipher, patient)
    return PatientRead(
        **phi.model_dump(),
        id=patient.id,
        organization_id=patient.organization_id,
        patient_code=patient.patient_code,
        diagnosis=patient.diagnosis,
        allergies=patient.allergies,
        medications=patient.medications,
        assigned_bcba_id=patient.assigned_bcba_id,
        assigned_rbt_id=patient.assigned_rbt_id,
        enrollment_date=patient.enrollment_date,
        created_at=patient.created_at,
    )


def _validate_assignees(
    db: Session,
    org_id: int,
    assigned_bcba_id: int | None,
    assigned_rbt_id: int | None,
) -> None:
    """Assignees must be active members of the organization in a matching role."""
    if assigned_bcba_id is not None:
        if assigned_bcba_id not in notification_service.get_active_member_ids(db, org_id, {Role.BCBA}):
            raise NotFound("Assigned BCBA not found in organization")
    if assigned_rbt_id is not None:
        if assigned_rbt_id not in notification_service.get_active_member_ids(db, org_id, TECHNICIAN_ROLES):
            raise NotFound("Assigned RBT not found in organization")


# =============================================================================
# CRUD
# =============================================================================

def create_patient(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    data: PatientCreate,
    request: Request | None = None,
) -> Patient:
    """
    Create an encrypted patient record.

    Raises:
        Unauthorized: Caller's role may not create patients
        NotFound: An assignee is not an active member in a matching role
    """
    caller = require_session(caller)
    if not can_create_patient(caller):
        raise Unauthorized("Insufficient permissions to create patients")

    _validate_assignees(db, caller.organization_id, data.assigned_bcba_id, data.assigned_rbt_id)

    patient = Patient(
        organization_id=caller.organization_id,
        patient_code=data.patient_code,
        diagnosis=data.diagnosis,
        allergies=data.allergies,
        medications=data.medications,
        enrollment_date=data.enrollment_date,
        assigned_bcba_id=data.assigned_bcba_id,
        assigned_rbt_id=data.assigned_rbt_id,
        created_by_id=caller.user_id,
        **encrypt_fields(cipher, data),
    )
    db.add(patient)
    db.flush()

    notification_service.notify_patient_assignment(
        db, patient, [data.assigned_bcba_id, data.assigned_rbt_id], caller.user_id
    )
    audit_service.log_phi_access(
        db, caller, AuditAction.CREATE_PATIENT, "patient", patient.id,
        patient_id=patient.id,
        fields_accessed=list(PHI_FIELDS),
        request=request,
    )
    db.commit()
    db.refresh(patient)

    logger.info("Patient created", extra=caller_log_context(caller))
    return patient


def get_patient(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    patient_id: int,
    request: Request | None = None,
) -> PatientRead:
    """
    Decrypted patient record.

    A denied view of an existing patient is reported as a PHI access
    violation before Unauthorized is raised.

    Raises:
        NotFound: No live patient with this id in the caller's organization
        Unauthorized: Caller may not view the patient
        IntegrityViolation: Stored PHI failed verification
    """
    caller = require_session(caller)
    patient = _load_patient(db, caller, patient_id)

    if not can_view_patient(caller, patient):
        breach_service.check_phi_access_violation(
            db, caller.organization_id, caller.user_id, patient.id,
            reason=f"role {caller.role.value if caller.role else 'unknown'} not permitted",
        )
        _commit_breach_report(db)
        raise Unauthorized("You do not have permission to view this patient")

    result = to_patient_read(db, cipher, patient)
    audit_service.log_phi_access(
        db, caller, AuditAction.VIEW_PATIENT, "patient", patient.id,
        patient_id=patient.id,
        fields_accessed=list(PHI_FIELDS),
        request=request,
    )
    db.commit()
    return result


def list_patients(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    limit: int = 100,
    offset: int = 0,
    request: Request | None = None,
) -> list[PatientRead]:
    """Patients visible to the caller, newest first, decrypted."""
    caller = require_session(caller)
    patients = (
        db.query(Patient)
        .filter(patient_filter(caller.user_id, caller.role, caller.organization_id))
        .order_by(Patient.created_at.desc(), Patient.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    results = [to_patient_read(db, cipher, p) for p in patients]

    audit_service.log_phi_access(
        db, caller, AuditAction.LIST_PATIENTS, "patient", None,
        fields_accessed=["first_name", "last_name", "date_of_birth"],
        changes={"count": len(results)},
        request=request,
    )
    db.commit()
    return results


def update_patient(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    patient_id: int,
    data: PatientUpdate,
    request: Request | None = None,
) -> Patient:
    """
    Partial update. Only supplied fields are re-encrypted.

    Raises:
        NotFound: Patient not in the caller's organization
        Unauthorized: Caller may not edit the patient
    """
    caller = require_session(caller)
    patient = _load_patient(db, caller, patient_id)
    if not can_edit_patient(caller, patient):
        raise Unauthorized("Insufficient permissions to edit this patient")

    update = data.model_dump(exclude_unset=True)
    # Models, not dumped dicts, so structured fields serialize canonically
    phi_changes = {field: getattr(data, field) for field in PHI_FIELDS if field in update}
    for column, envelope in encrypt_fields(cipher, phi_changes).items():
        setattr(patient, column, envelope)
    for field in _CLINICAL_COLUMNS:
        if field in update:
            setattr(patient, field, update[field])

    audit_service.log_phi_access(
        db, caller, AuditAction.UPDATE_PATIENT, "patient", patient.id,
        patient_id=patient.id,
        fields_accessed=sorted(phi_changes),
        # Field names only
        changes={"updated_fields": sorted(update)},
        request=request,
    )
    db.commit()
    db.refresh(patient)
    return patient


def delete_patient(
    db: Session,
    caller: Caller | None,
    patient_id: int,
    request: Request | None = None,
) -> None:
    """Soft delete (sets deleted_at)."""
    caller = require_session(caller)
    patient = _load_patient(db, caller, patient_id)
    if not can_delete_patient(caller, patient):
        raise Unauthorized("Insufficient permissions to delete this patient")

    patient.deleted_at = datetime.now(timezone.utc)
    audit_service.log_phi_access(
        db, caller, AuditAction.DELETE_PATIENT, "patient", patient.id,
        patient_id=patient.id,
        request=request,
    )
    db.commit()


def assign_staff(
    db: Session,
    caller: Caller | None,
    patient_id: int,
    data: PatientAssign,
    request: Request | None = None,
) -> Patient:
    """
    Set the patient's assigned BCBA and RBT. Omitted fields are unchanged;
    explicit None clears the assignment.
    """
    caller = require_session(caller)
    patient = _load_patient(db, caller, patient_id)
    if not can_assign_patient_staff(caller, patient):
        raise Unauthorized("Insufficient permissions to assign staff")

    update = data.model_dump(exclude_unset=True)
    _validate_assignees(
        db, caller.organization_id,
        update.get("assigned_bcba_id"), update.get("assigned_rbt_id"),
    )

    newly_assigned = []
    for field, user_id in update.items():
        if getattr(patient, field) != user_id:
            setattr(patient, field, user_id)
            newly_assigned.append(user_id)

    notification_service.notify_patient_assignment(db, patient, newly_assigned, caller.user_id)
    audit_service.log_phi_access(
        db, caller, AuditAction.ASSIGN_PATIENT_STAFF, "patient", patient.id,
        patient_id=patient.id,
        phi_accessed=False,
        changes={field: update[field] for field in sorted(update)},
        request=request,
    )
    db.commit()
    db.refresh(patient)
    return patient


def emergency_view_patient(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    patient_id: int,
    reason: str,
    request: Request | None = None,
) -> PatientRead:
    """
    Break-glass view for clinical staff not assigned to the patient.

    Any admin-tier or clinical member of the organization may use it; the
    audit entry is classified EMERGENCY (consent not verified) and every
    admin is alerted.
    """
    caller = require_session(caller)
    if not reason.strip():
        raise ValueError("Emergency access requires a reason")
    if caller.role not in CLINICAL_ROLES:
        raise Unauthorized("Emergency access is limited to clinical staff")

    patient = _load_patient(db, caller, patient_id)
    result = to_patient_read(db, cipher, patient)

    audit_service.log_phi_access(
        db, caller, AuditAction.EMERGENCY_VIEW_PATIENT, "patient", patient.id,
        patient_id=patient.id,
        fields_accessed=list(PHI_FIELDS),
        changes={"reason": reason},
        request=request,
    )
    notification_service.notify_security_admins(
        db, caller.organization_id,
        title="Emergency patient access",
        message=f"User {caller.user_id} used emergency access on patient {patient.id}",
    )
    db.commit()

    logger.warning("Emergency patient access", extra=caller_log_context(caller))
    return result


# =============================================================================
# Envelope maintenance
# =============================================================================

def upgrade_patient_envelopes(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
) -> int:
    """
    Re-encrypt legacy (MAC-less) envelopes for every patient in the caller's
    organization. Admin tier only.

    Returns:
        Number of patients whose envelopes were upgraded
    """
    caller = require_session(caller)
    if not is_admin_tier(caller.role):
        raise Unauthorized("Only administrators can upgrade patient encryption")

    patients = db.query(Patient).filter(Patient.organization_id == caller.organization_id).all()

    # Every envelope is re-encrypted before any row changes, so one bad
    # record leaves the whole organization untouched.
    pending: list[tuple[Patient, dict[str, str]]] = []
    for patient in patients:
        try:
            envelopes = upgraded_envelopes(cipher, patient)
        except IntegrityViolation:
            breach_service.log_encryption_failure(
                db, patient.organization_id, "upgrade", "patient", patient.id
            )
            _commit_breach_report(db)
            raise
        if envelopes:
            pending.append((patient, envelopes))

    for patient, envelopes in pending:
        for column, envelope in envelopes.items():
            setattr(patient, column, envelope)
    upgraded = len(pending)

    audit_service.log_phi_access(
        db, caller, AuditAction.UPGRADE_PATIENT_ENCRYPTION, "patient", None,
        phi_accessed=False,
        changes={"upgraded": upgraded, "scanned": len(patients)},
    )
    db.commit()

    logger.info("Upgraded %d patient envelope sets", upgraded, extra=caller_log_context(caller))
    return upgraded
