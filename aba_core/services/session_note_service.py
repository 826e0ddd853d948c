"""Session note service."""

import logging
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.orm import Session

from aba_core.core.exceptions import NotFound, Unauthorized
from aba_core.core.filters import session_note_filter
from aba_core.core.patient_access import (
    can_create_session_note_for,
    can_delete_session_note,
    can_edit_session_note,
    can_view_session_note,
)
from aba_core.core.permissions import require_session
from aba_core.db.enums import AuditAction
from aba_core.db.models import Patient, SessionNote, TreatmentPlan
from aba_core.schemas.auth import Caller
from aba_core.schemas.session_note import SessionNoteCreate, SessionNoteUpdate
from aba_core.services import audit_service


logger = logging.getLogger(__name__)


def _load_note(db: Session, caller: Caller, note_id: int) -> SessionNote:
    note = db.query(SessionNote).filter(
        SessionNote.id == note_id,
        SessionNote.organization_id == caller.organization_id,
        SessionNote.deleted_at.is_(None),
    ).first()
    if not note:
        raise NotFound("Session note not found")
    return note


def create_session_note(
    db: Session,
    caller: Caller | None,
    data: SessionNoteCreate,
    request: Request | None = None,
) -> SessionNote:
    """
    Record a session for a patient the caller can see.

    A supplied staff signature stamps `signed_at`.

    Raises:
        NotFound: Patient (or linked plan) not in the caller's organization
        Unauthorized: Caller may not write notes for this patient
    """
    caller = require_session(caller)
    patient = db.query(Patient).filter(
        Patient.id == data.patient_id,
        Patient.organization_id == caller.organization_id,
        Patient.deleted_at.is_(None),
    ).first()
    if not patient:
        raise NotFound("Patient not found")
    if not can_create_session_note_for(caller, patient):
        raise Unauthorized("Insufficient permissions to create session notes for this patient")

    if data.treatment_plan_id is not None:
        plan = db.query(TreatmentPlan).filter(
            TreatmentPlan.id == data.treatment_plan_id,
            TreatmentPlan.patient_id == patient.id,
            TreatmentPlan.deleted_at.is_(None),
        ).first()
        if not plan:
            raise NotFound("Treatment plan not found for this patient")

    values = data.model_dump()
    values["session_type"] = data.session_type.value
    values["session_status"] = data.session_status.value

    note = SessionNote(
        organization_id=caller.organization_id,
        created_by_id=caller.user_id,
        signed_at=datetime.now(timezone.utc) if data.staff_signature else None,
        **values,
    )
    db.add(note)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.CREATE_SESSION_NOTE, "session_note", note.id,
        patient_id=patient.id,
        request=request,
    )
    db.commit()
    db.refresh(note)
    return note


def get_session_note(
    db: Session,
    caller: Caller | None,
    note_id: int,
    request: Request | None = None,
) -> SessionNote:
    caller = require_session(caller)
    note = _load_note(db, caller, note_id)
    if not can_view_session_note(caller, note, note.patient):
        raise Unauthorized("You don't have access to this session note")

    audit_service.log_phi_access(
        db, caller, AuditAction.VIEW_SESSION_NOTE, "session_note", note.id,
        patient_id=note.patient_id,
        request=request,
    )
    db.commit()
    return note


def list_session_notes(
    db: Session,
    caller: Caller | None,
    patient_id: int | None = None,
    limit: int = 100,
    offset: int = 0,
    request: Request | None = None,
) -> list[SessionNote]:
    """Notes visible to the caller, most recent session first."""
    caller = require_session(caller)
    query = db.query(SessionNote).filter(
        session_note_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if patient_id is not None:
        query = query.filter(SessionNote.patient_id == patient_id)

    notes = (
        query.order_by(SessionNote.session_date.desc(), SessionNote.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    audit_service.log_phi_access(
        db, caller, AuditAction.LIST_SESSION_NOTES, "session_note", None,
        patient_id=patient_id,
        changes={"count": len(notes)},
        request=request,
    )
    db.commit()
    return notes


def update_session_note(
    db: Session,
    caller: Caller | None,
    note_id: int,
    data: SessionNoteUpdate,
    request: Request | None = None,
) -> SessionNote:
    """Owner or admin tier. Changing the signature re-stamps `signed_at`."""
    caller = require_session(caller)
    note = _load_note(db, caller, note_id)
    if not can_edit_session_note(caller, note):
        raise Unauthorized("Insufficient permissions to edit this session note")

    update = data.model_dump(exclude_unset=True)
    for field, value in update.items():
        if field in ("session_type", "session_status") and value is not None:
            value = value.value
        setattr(note, field, value)
    if "staff_signature" in update:
        note.signed_at = datetime.now(timezone.utc) if update["staff_signature"] else None

    audit_service.log_phi_access(
        db, caller, AuditAction.UPDATE_SESSION_NOTE, "session_note", note.id,
        patient_id=note.patient_id,
        changes={"updated_fields": sorted(update)},
        request=request,
    )
    db.commit()
    db.refresh(note)
    return note


def delete_session_note(
    db: Session,
    caller: Caller | None,
    note_id: int,
    request: Request | None = None,
) -> None:
    """Soft delete."""
    caller = require_session(caller)
    note = _load_note(db, caller, note_id)
    if not can_delete_session_note(caller, note):
        raise Unauthorized("Insufficient permissions to delete this session note")

    note.deleted_at = datetime.now(timezone.utc)
    audit_service.log_phi_access(
        db, caller, AuditAction.DELETE_SESSION_NOTE, "session_note", note.id,
        patient_id=note.patient_id,
        request=request,
    )
    db.commit()
