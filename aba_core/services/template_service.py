"""Template service - reusable treatment plan content.

Templates are visible when public, owned by the caller's organization, or
created by the caller. Applying one creates a DRAFT plan for a patient.
"""

from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy.orm import Session

from aba_core.core import plan_workflow
from aba_core.core.encryption import FieldCipher
from aba_core.core.exceptions import NotFound, Unauthorized
from aba_core.core.filters import template_filter
from aba_core.core.plan_access import (
    can_create_treatment_plan_for,
    can_delete_template,
    can_edit_template,
    can_view_template,
)
from aba_core.core.permissions import can_create_template, require_session
from aba_core.db.enums import AuditAction
from aba_core.db.models import Patient, Template, TreatmentPlan
from aba_core.schemas.auth import Caller
from aba_core.schemas.template import ApplyTemplateRequest, TemplateCreate, TemplateUpdate
from aba_core.schemas.treatment_plan import PlanContent
from aba_core.services import audit_service
from aba_core.services.patient_service import to_patient_read
from aba_core.services.treatment_plan_service import history_entry, next_version


DEFAULT_SESSION_FREQUENCY = "WEEKLY"
DEFAULT_REVIEW_CYCLE = "QUARTERLY"


def _get_template(db: Session, template_id: int) -> Template:
    template = db.query(Template).filter(
        Template.id == template_id,
        Template.deleted_at.is_(None),
    ).first()
    if not template:
        raise NotFound("Template not found")
    return template


def create_template(
    db: Session,
    caller: Caller | None,
    data: TemplateCreate,
    request: Request | None = None,
) -> Template:
    caller = require_session(caller)
    if not can_create_template(caller):
        raise Unauthorized("Insufficient permissions to create templates")

    template = Template(
        organization_id=caller.organization_id,
        created_by_id=caller.user_id,
        name=data.name,
        description=data.description,
        category=data.category,
        template_content=data.content.to_columns(),
        is_public=data.is_public,
    )
    db.add(template)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.CREATE_TEMPLATE, "template", template.id,
        phi_accessed=False,
        request=request,
    )
    db.commit()
    db.refresh(template)
    return template


def list_templates(
    db: Session,
    caller: Caller | None,
    category: str | None = None,
) -> list[Template]:
    caller = require_session(caller)
    query = db.query(Template).filter(
        template_filter(caller.user_id, caller.role, caller.organization_id)
    )
    if category:
        query = query.filter(Template.category == category)
    return query.order_by(Template.name.asc(), Template.id.asc()).all()


def get_template(db: Session, caller: Caller | None, template_id: int) -> Template:
    caller = require_session(caller)
    template = _get_template(db, template_id)
    if not can_view_template(caller, template):
        raise Unauthorized("You do not have permission to view this template")
    return template


def template_content(template: Template) -> PlanContent:
    """Validated content of a stored template."""
    return PlanContent.model_validate(template.template_content or {})


def update_template(
    db: Session,
    caller: Caller | None,
    template_id: int,
    data: TemplateUpdate,
    request: Request | None = None,
) -> Template:
    caller = require_session(caller)
    template = _get_template(db, template_id)
    if not can_edit_template(caller, template):
        raise Unauthorized("You do not have permission to edit this template")

    update = data.model_dump(exclude_unset=True, exclude={"content"})
    for field, value in update.items():
        setattr(template, field, value)
    if data.content is not None:
        template.template_content = data.content.to_columns()

    audit_service.log_phi_access(
        db, caller, AuditAction.UPDATE_TEMPLATE, "template", template.id,
        phi_accessed=False,
        changes={"updated_fields": sorted(data.model_fields_set)},
        request=request,
    )
    db.commit()
    db.refresh(template)
    return template


def delete_template(
    db: Session,
    caller: Caller | None,
    template_id: int,
    request: Request | None = None,
) -> None:
    """Soft delete. Creator, or admin tier of the template's organization."""
    caller = require_session(caller)
    template = _get_template(db, template_id)
    if not can_delete_template(caller, template):
        raise Unauthorized("You do not have permission to delete this template")

    template.deleted_at = datetime.now(timezone.utc)
    audit_service.log_phi_access(
        db, caller, AuditAction.DELETE_TEMPLATE, "template", template.id,
        phi_accessed=False,
        request=request,
    )
    db.commit()


def _fresh_item_ids(content: PlanContent) -> PlanContent:
    # Each plan gets its own sub-record ids
    return PlanContent.from_items([
        type(item).model_validate(item.model_dump(exclude={"id"}))
        for item in content.items()
    ])


def apply_template_to_patient(
    db: Session,
    cipher: FieldCipher,
    caller: Caller | None,
    data: ApplyTemplateRequest,
    request: Request | None = None,
) -> TreatmentPlan:
    """
    Create a DRAFT plan for a patient from a template's content.

    The default title is "<template name> - <first> <last>", which needs the
    patient's decrypted name.

    Raises:
        NotFound: Template or patient not found
        Unauthorized: Template not usable, or caller may not create plans
            for the patient
    """
    caller = require_session(caller)
    template = _get_template(db, data.template_id)
    if not can_view_template(caller, template):
        raise Unauthorized("You do not have permission to use this template")

    patient = db.query(Patient).filter(
        Patient.id == data.patient_id,
        Patient.organization_id == caller.organization_id,
        Patient.deleted_at.is_(None),
    ).first()
    if not patient:
        raise NotFound("Patient not found")
    if not can_create_treatment_plan_for(caller, patient):
        raise Unauthorized("Insufficient permissions to create treatment plans")

    title = data.title
    if not title:
        phi = to_patient_read(db, cipher, patient)
        title = f"{template.name} - {phi.first_name} {phi.last_name}"

    content = _fresh_item_ids(template_content(template))
    plan = TreatmentPlan(
        organization_id=caller.organization_id,
        patient_id=patient.id,
        version=next_version(db, patient.id),
        title=title[:255],
        status=plan_workflow.INITIAL_STATUS.value,
        session_frequency=DEFAULT_SESSION_FREQUENCY,
        review_cycle=DEFAULT_REVIEW_CYCLE,
        created_by_id=caller.user_id,
        workflow_history=[
            history_entry(plan_workflow.INITIAL_STATUS, "create", caller.user_id)
        ],
        **content.to_columns(),
    )
    db.add(plan)
    db.flush()

    audit_service.log_phi_access(
        db, caller, AuditAction.APPLY_TEMPLATE, "treatment_plan", plan.id,
        patient_id=patient.id,
        fields_accessed=[] if data.title else ["first_name", "last_name"],
        changes={"template_id": template.id},
        request=request,
    )
    db.commit()
    db.refresh(plan)
    return plan
