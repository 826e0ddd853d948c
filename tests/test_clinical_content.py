"""
Session note, comment and template service tests.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from aba_core.core.exceptions import NotFound, Unauthorized
from aba_core.db.enums import AuditAction, PlanStatus, SessionType
from aba_core.db.models import AuditLog
from aba_core.schemas.session_note import SessionNoteCreate, SessionNoteUpdate
from aba_core.schemas.template import ApplyTemplateRequest, TemplateCreate, TemplateUpdate
from aba_core.schemas.treatment_plan import CommentCreate, Goal, Intervention, PlanContent
from aba_core.services import comment_service, session_note_service, template_service


SESSION_DATE = datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc)


def _note_data(patient, **overrides) -> SessionNoteCreate:
    values = {
        "patient_id": patient.id,
        "session_date": SESSION_DATE,
        "session_duration": 90,
        "session_notes": "Worked on manding with visual prompts",
    }
    values.update(overrides)
    return SessionNoteCreate(**values)


def _content() -> PlanContent:
    return PlanContent(
        goals=[Goal(description="Follow 2-step instructions", target_behavior="Compliance", criteria="4/5 trials")],
        interventions=[Intervention(name="DTT", description="Discrete trial training")],
    )


# =============================================================================
# Session notes
# =============================================================================

def test_assigned_rbt_records_signed_note(db, staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)

    note = session_note_service.create_session_note(
        db, staff.caller(staff.rbt),
        _note_data(patient, session_type=SessionType.PARENT_TRAINING, staff_signature="R. Tester"),
    )

    assert note.session_type == "PARENT_TRAINING"
    assert note.session_status == "COMPLETED"
    assert note.signed_at is not None
    assert note.created_by_id == staff.rbt.id


def test_note_creation_requires_assignment(db, staff, make_patient):
    patient = make_patient(staff.org, rbt=staff.rbt)

    for user in (staff.bt, staff.hr):
        with pytest.raises(Unauthorized):
            session_note_service.create_session_note(db, staff.caller(user), _note_data(patient))


def test_note_plan_must_belong_to_patient(db, staff, make_patient, make_plan):
    patient = make_patient(staff.org, rbt=staff.rbt)
    foreign_plan = make_plan(make_patient(staff.org), staff.bcba)

    with pytest.raises(NotFound):
        session_note_service.create_session_note(
            db, staff.caller(staff.rbt), _note_data(patient, treatment_plan_id=foreign_plan.id)
        )


def test_note_read_and_list_scoping(db, staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    note = session_note_service.create_session_note(db, staff.caller(staff.rbt), _note_data(patient))

    assert session_note_service.get_session_note(db, staff.caller(staff.bcba), note.id).id == note.id
    with pytest.raises(Unauthorized):
        session_note_service.get_session_note(db, staff.caller(staff.other_bcba), note.id)

    assert [n.id for n in session_note_service.list_session_notes(db, staff.caller(staff.manager))] == [note.id]
    assert session_note_service.list_session_notes(db, staff.caller(staff.bt)) == []


def test_note_update_restamps_signature(db, staff, make_patient):
    patient = make_patient(staff.org, rbt=staff.rbt)
    note = session_note_service.create_session_note(
        db, staff.caller(staff.rbt), _note_data(patient, staff_signature="R. Tester")
    )

    with pytest.raises(Unauthorized):
        session_note_service.update_session_note(
            db, staff.caller(staff.bcba), note.id, SessionNoteUpdate(session_notes="edited")
        )

    note = session_note_service.update_session_note(
        db, staff.caller(staff.rbt), note.id, SessionNoteUpdate(staff_signature=None, session_duration=60)
    )
    assert note.signed_at is None
    assert note.session_duration == 60


def test_note_soft_delete(db, staff, make_patient):
    patient = make_patient(staff.org, rbt=staff.rbt)
    note = session_note_service.create_session_note(db, staff.caller(staff.rbt), _note_data(patient))

    session_note_service.delete_session_note(db, staff.caller(staff.manager), note.id)

    with pytest.raises(NotFound):
        session_note_service.get_session_note(db, staff.caller(staff.manager), note.id)
    actions = [e.action for e in db.query(AuditLog).filter(AuditLog.resource_type == "session_note").order_by(AuditLog.id)]
    assert actions == [AuditAction.CREATE_SESSION_NOTE.value, AuditAction.DELETE_SESSION_NOTE.value]


# =============================================================================
# Comments
# =============================================================================

def test_comment_thread(db, staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    plan = make_plan(patient, staff.bcba)

    root = comment_service.add_comment(
        db, staff.caller(staff.rbt), plan.id, CommentCreate(comment_text="Is goal 2 realistic?")
    )
    reply = comment_service.add_comment(
        db, staff.caller(staff.bcba), plan.id,
        CommentCreate(comment_text="Yes, with prompting", parent_comment_id=root.id),
    )

    comments = comment_service.list_comments(db, staff.caller(staff.manager), plan.id)
    assert [c.id for c in comments] == [root.id, reply.id]
    assert comments[1].parent_comment_id == root.id


def test_comment_requires_plan_visibility(db, staff, make_patient, make_plan):
    plan = make_plan(make_patient(staff.org, bcba=staff.bcba), staff.bcba)

    with pytest.raises(Unauthorized):
        comment_service.add_comment(db, staff.caller(staff.other_bcba), plan.id, CommentCreate(comment_text="Hi"))
    with pytest.raises(Unauthorized):
        comment_service.list_comments(db, staff.caller(staff.rbt), plan.id)


def test_reply_parent_must_be_on_same_plan(db, staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba)
    plan = make_plan(patient, staff.bcba)
    other_plan = make_plan(patient, staff.bcba, title="Second plan")
    elsewhere = comment_service.add_comment(
        db, staff.caller(staff.bcba), other_plan.id, CommentCreate(comment_text="Elsewhere")
    )

    with pytest.raises(NotFound):
        comment_service.add_comment(
            db, staff.caller(staff.bcba), plan.id,
            CommentCreate(comment_text="Reply", parent_comment_id=elsewhere.id),
        )


def test_comment_delete_owner_or_org_admin(db, staff, make_patient, make_plan):
    plan = make_plan(make_patient(staff.org, bcba=staff.bcba), staff.bcba)
    mine = comment_service.add_comment(db, staff.caller(staff.bcba), plan.id, CommentCreate(comment_text="Mine"))
    other = comment_service.add_comment(db, staff.caller(staff.manager), plan.id, CommentCreate(comment_text="Other"))

    with pytest.raises(Unauthorized, match="only delete your own comments"):
        comment_service.delete_comment(db, staff.caller(staff.manager), mine.id)

    comment_service.delete_comment(db, staff.caller(staff.bcba), mine.id)
    comment_service.delete_comment(db, staff.caller(staff.admin), other.id)

    assert comment_service.list_comments(db, staff.caller(staff.admin), plan.id) == []


# =============================================================================
# Templates
# =============================================================================

def test_template_crud(db, staff):
    manager = staff.caller(staff.manager)
    template = template_service.create_template(
        db, manager, TemplateCreate(name="Early learner", category="EIBI", content=_content())
    )

    assert template_service.template_content(template).goals[0].target_behavior == "Compliance"
    assert [t.id for t in template_service.list_templates(db, staff.caller(staff.rbt), category="EIBI")] == [template.id]

    with pytest.raises(Unauthorized):
        template_service.create_template(db, staff.caller(staff.bcba), TemplateCreate(name="Nope"))
    with pytest.raises(Unauthorized):
        template_service.update_template(db, staff.caller(staff.bcba), template.id, TemplateUpdate(name="Mine now"))

    updated = template_service.update_template(db, manager, template.id, TemplateUpdate(is_public=True))
    assert updated.is_public is True

    template_service.delete_template(db, staff.caller(staff.admin), template.id)
    with pytest.raises(NotFound):
        template_service.get_template(db, manager, template.id)


@pytest.mark.parametrize("field", ["name", "is_public", "is_active"])
def test_template_update_cannot_null_required_fields(db, staff, field):
    template = template_service.create_template(db, staff.caller(staff.manager), TemplateCreate(name="Basic"))

    with pytest.raises(ValidationError):
        TemplateUpdate.model_validate({field: None})

    updated = template_service.update_template(
        db, staff.caller(staff.manager), template.id, TemplateUpdate.model_validate({"description": None})
    )
    assert updated.name == "Basic"
    assert updated.is_active is True


@pytest.mark.parametrize("field", ["session_type", "session_status", "session_date"])
def test_note_update_cannot_null_required_fields(field):
    with pytest.raises(ValidationError):
        SessionNoteUpdate.model_validate({field: None})


def test_template_visibility_across_orgs(db, staff, other_staff):
    other_admin = other_staff.caller(other_staff.admin)
    private = template_service.create_template(db, other_admin, TemplateCreate(name="Private"))
    public = template_service.create_template(db, other_admin, TemplateCreate(name="Shared", is_public=True))

    caller = staff.caller(staff.bcba)
    assert [t.id for t in template_service.list_templates(db, caller)] == [public.id]
    assert template_service.get_template(db, caller, public.id).id == public.id
    with pytest.raises(Unauthorized):
        template_service.get_template(db, caller, private.id)


def test_apply_template_creates_draft_plan(db, cipher, staff, make_patient):
    template = template_service.create_template(
        db, staff.caller(staff.manager), TemplateCreate(name="Early learner", content=_content())
    )
    patient = make_patient(staff.org, bcba=staff.bcba)

    plan = template_service.apply_template_to_patient(
        db, cipher, staff.caller(staff.bcba),
        ApplyTemplateRequest(template_id=template.id, patient_id=patient.id),
    )

    assert plan.title == "Early learner - Ada Lovelace"
    assert plan.status == PlanStatus.DRAFT.value
    assert plan.version == 1
    assert plan.created_by_id == staff.bcba.id
    assert plan.session_frequency == template_service.DEFAULT_SESSION_FREQUENCY
    assert plan.review_cycle == template_service.DEFAULT_REVIEW_CYCLE
    assert [h["action"] for h in plan.workflow_history] == ["create"]

    # Same content, fresh sub-record ids
    assert plan.goals[0]["description"] == template.template_content["goals"][0]["description"]
    assert plan.goals[0]["id"] != template.template_content["goals"][0]["id"]
    assert plan.interventions[0]["name"] == "DTT"

    entry = db.query(AuditLog).filter(AuditLog.action == AuditAction.APPLY_TEMPLATE.value).one()
    assert entry.changes["template_id"] == template.id


def test_apply_template_with_explicit_title(db, cipher, staff, make_patient, make_plan):
    template = template_service.create_template(db, staff.caller(staff.manager), TemplateCreate(name="Basic"))
    patient = make_patient(staff.org, bcba=staff.bcba)
    make_plan(patient, staff.bcba)

    plan = template_service.apply_template_to_patient(
        db, cipher, staff.caller(staff.bcba),
        ApplyTemplateRequest(template_id=template.id, patient_id=patient.id, title="Custom"),
    )
    assert plan.title == "Custom"
    assert plan.version == 2


def test_apply_template_requires_patient_access(db, cipher, staff, make_patient):
    template = template_service.create_template(db, staff.caller(staff.manager), TemplateCreate(name="Basic"))
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)

    for user in (staff.other_bcba, staff.rbt):
        with pytest.raises(Unauthorized):
            template_service.apply_template_to_patient(
                db, cipher, staff.caller(user),
                ApplyTemplateRequest(template_id=template.id, patient_id=patient.id),
            )
