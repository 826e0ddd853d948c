"""
Entity-level access predicate tests (patients, plans, notes, comments, templates).
"""

from datetime import datetime, timezone

import pytest

from aba_core.core.exceptions import Unauthorized
from aba_core.core.patient_access import (
    can_assign_patient_staff,
    can_create_session_note_for,
    can_delete_patient,
    can_edit_patient,
    can_edit_session_note,
    can_view_patient,
    can_view_session_note,
    check_patient_access,
)
from aba_core.core.plan_access import (
    can_approve_treatment_plan,
    can_comment_on_treatment_plan,
    can_create_treatment_plan_for,
    can_delete_comment,
    can_delete_template,
    can_delete_treatment_plan,
    can_edit_template,
    can_edit_treatment_plan,
    can_request_ai_review,
    can_review_treatment_plan,
    can_submit_for_review,
    can_view_template,
    can_view_treatment_plan,
    check_plan_edit,
)
from aba_core.db.enums import PlanStatus
from aba_core.db.models import Comment, SessionNote, Template


# =============================================================================
# Patients
# =============================================================================

def test_patient_view_follows_assignment(staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)

    assert can_view_patient(staff.caller(staff.admin), patient)
    assert can_view_patient(staff.caller(staff.manager), patient)
    assert can_view_patient(staff.caller(staff.bcba), patient)
    assert can_view_patient(staff.caller(staff.rbt), patient)
    assert not can_view_patient(staff.caller(staff.other_bcba), patient)
    assert not can_view_patient(staff.caller(staff.bt), patient)
    assert not can_view_patient(staff.caller(staff.hr), patient)


def test_patient_from_another_org_is_denied_for_every_role(staff, other_staff, make_patient):
    patient = make_patient(other_staff.org)
    for user in (staff.admin, staff.manager):
        caller = staff.caller(user)
        assert not can_view_patient(caller, patient)
        assert not can_delete_patient(caller, patient)
        assert not can_assign_patient_staff(caller, patient)
        with pytest.raises(Unauthorized):
            check_patient_access(caller, patient)


def test_technicians_never_edit_patients(staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)

    assert can_edit_patient(staff.caller(staff.bcba), patient)
    assert can_edit_patient(staff.caller(staff.manager), patient)
    assert not can_edit_patient(staff.caller(staff.rbt), patient)


def test_patient_delete_and_assign_are_admin_tier(staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba)

    assert can_delete_patient(staff.caller(staff.manager), patient)
    assert not can_delete_patient(staff.caller(staff.bcba), patient)
    assert can_assign_patient_staff(staff.caller(staff.admin), patient)
    assert not can_assign_patient_staff(staff.caller(staff.hr), patient)


def test_deleted_patient_is_not_viewable(db, staff, make_patient):
    patient = make_patient(staff.org)
    patient.deleted_at = datetime.now(timezone.utc)

    assert not can_view_patient(staff.caller(staff.admin), patient)


# =============================================================================
# Treatment plans
# =============================================================================

def test_plan_visible_to_creator_and_assigned_staff(staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    plan = make_plan(patient, staff.other_bcba)

    assert can_view_treatment_plan(staff.caller(staff.other_bcba), plan)
    assert can_view_treatment_plan(staff.caller(staff.bcba), plan, patient)
    assert can_view_treatment_plan(staff.caller(staff.rbt), plan, patient)
    # Assignment needs the loaded patient
    assert not can_view_treatment_plan(staff.caller(staff.bcba), plan)
    assert not can_view_treatment_plan(staff.caller(staff.bt), plan, patient)
    assert not can_view_treatment_plan(staff.caller(staff.hr), plan, patient)


def test_bcba_edits_own_draft_only(staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba)
    plan = make_plan(patient, staff.bcba)
    bcba = staff.caller(staff.bcba)

    assert can_edit_treatment_plan(bcba, plan, patient)

    plan.status = PlanStatus.APPROVED.value
    assert not can_edit_treatment_plan(bcba, plan, patient)
    assert can_edit_treatment_plan(staff.caller(staff.admin), plan, patient)
    with pytest.raises(Unauthorized):
        check_plan_edit(bcba, plan, patient)


def test_assigned_bcba_cannot_edit_someone_elses_draft(staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba)
    plan = make_plan(patient, staff.manager)

    assert can_view_treatment_plan(staff.caller(staff.bcba), plan, patient)
    assert not can_edit_treatment_plan(staff.caller(staff.bcba), plan, patient)


def test_rbt_never_edits_plans(staff, make_patient, make_plan):
    patient = make_patient(staff.org, rbt=staff.rbt)
    plan = make_plan(patient, staff.rbt)

    assert can_view_treatment_plan(staff.caller(staff.rbt), plan, patient)
    assert not can_edit_treatment_plan(staff.caller(staff.rbt), plan, patient)


def test_plan_creation_requires_patient_visibility(staff, make_patient):
    assigned = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    unassigned = make_patient(staff.org)

    assert can_create_treatment_plan_for(staff.caller(staff.bcba), assigned)
    assert not can_create_treatment_plan_for(staff.caller(staff.bcba), unassigned)
    assert not can_create_treatment_plan_for(staff.caller(staff.rbt), assigned)
    assert can_create_treatment_plan_for(staff.caller(staff.manager), unassigned)


def test_plan_delete_rules(staff, make_patient, make_plan):
    plan = make_plan(make_patient(staff.org), staff.bcba)

    assert can_delete_treatment_plan(staff.caller(staff.bcba), plan)
    assert can_delete_treatment_plan(staff.caller(staff.admin), plan)
    assert not can_delete_treatment_plan(staff.caller(staff.manager), plan)

    plan.status = PlanStatus.PENDING_BCBA_REVIEW.value
    assert not can_delete_treatment_plan(staff.caller(staff.bcba), plan)
    assert can_delete_treatment_plan(staff.caller(staff.admin), plan)


def test_review_predicates_follow_workflow(staff, make_patient, make_plan):
    plan = make_plan(make_patient(staff.org), staff.bcba)

    assert can_submit_for_review(staff.caller(staff.bcba), plan)
    assert not can_submit_for_review(staff.caller(staff.other_bcba), plan)

    plan.status = PlanStatus.PENDING_BCBA_REVIEW.value
    assert can_review_treatment_plan(staff.caller(staff.other_bcba), plan)
    assert not can_review_treatment_plan(staff.caller(staff.manager), plan)

    plan.status = "PENDING_CLINICAL_DIRECTOR"
    assert can_approve_treatment_plan(staff.caller(staff.manager), plan)
    assert not can_approve_treatment_plan(staff.caller(staff.admin), plan)


def test_unknown_status_label_denies_instead_of_raising(staff, make_patient, make_plan):
    plan = make_plan(make_patient(staff.org, bcba=staff.bcba), staff.bcba, status="ON_HOLD")
    creator = staff.caller(staff.bcba)

    assert not can_edit_treatment_plan(creator, plan)
    assert not can_delete_treatment_plan(creator, plan)
    assert not can_submit_for_review(creator, plan)
    assert not can_review_treatment_plan(staff.caller(staff.manager), plan)
    # Status does not gate these
    assert can_view_treatment_plan(creator, plan)
    assert can_delete_treatment_plan(staff.caller(staff.admin), plan)


def test_ai_review_needs_visibility_and_permission(staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    plan = make_plan(patient, staff.bcba)

    assert can_request_ai_review(staff.caller(staff.bcba), plan, patient)
    assert not can_request_ai_review(staff.caller(staff.rbt), plan, patient)
    assert not can_request_ai_review(staff.caller(staff.other_bcba), plan, patient)


# =============================================================================
# Session notes
# =============================================================================

def _note(db, staff, patient, author) -> SessionNote:
    note = SessionNote(
        organization_id=staff.org.id,
        patient_id=patient.id,
        session_type="THERAPY",
        session_status="COMPLETED",
        session_date=datetime(2026, 2, 1, 9, tzinfo=timezone.utc),
        created_by_id=author.id,
    )
    db.add(note)
    db.flush()
    return note


def test_session_note_access(db, staff, make_patient):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    note = _note(db, staff, patient, staff.rbt)

    assert can_view_session_note(staff.caller(staff.bcba), note, patient)
    assert can_view_session_note(staff.caller(staff.rbt), note)
    assert not can_view_session_note(staff.caller(staff.bt), note, patient)

    assert can_edit_session_note(staff.caller(staff.rbt), note)
    assert can_edit_session_note(staff.caller(staff.manager), note)
    assert not can_edit_session_note(staff.caller(staff.bcba), note)


def test_session_note_creation_requires_assignment(staff, make_patient):
    patient = make_patient(staff.org, rbt=staff.rbt)

    assert can_create_session_note_for(staff.caller(staff.rbt), patient)
    assert not can_create_session_note_for(staff.caller(staff.bt), patient)
    assert not can_create_session_note_for(staff.caller(staff.hr), patient)


# =============================================================================
# Comments
# =============================================================================

def test_comment_rules(db, staff, make_patient, make_plan):
    patient = make_patient(staff.org, bcba=staff.bcba, rbt=staff.rbt)
    plan = make_plan(patient, staff.bcba)
    comment = Comment(
        organization_id=staff.org.id,
        treatment_plan_id=plan.id,
        user_id=staff.rbt.id,
        comment_text="Client responded well",
    )
    db.add(comment)
    db.flush()

    assert can_comment_on_treatment_plan(staff.caller(staff.rbt), plan, patient)
    assert not can_comment_on_treatment_plan(staff.caller(staff.other_bcba), plan, patient)

    assert can_delete_comment(staff.caller(staff.rbt), comment)
    assert can_delete_comment(staff.caller(staff.admin), comment)
    assert not can_delete_comment(staff.caller(staff.manager), comment)
    assert not can_delete_comment(staff.caller(staff.bcba), comment)


# =============================================================================
# Templates
# =============================================================================

def test_template_edit_rules(db, staff, other_staff):
    template = Template(
        organization_id=staff.org.id,
        created_by_id=staff.bcba.id,
        name="Early intervention",
        template_content={},
    )
    public_elsewhere = Template(
        organization_id=other_staff.org.id,
        created_by_id=other_staff.manager.id,
        name="Shared",
        template_content={},
        is_public=True,
    )
    db.add_all([template, public_elsewhere])
    db.flush()

    assert can_edit_template(staff.caller(staff.bcba), template)
    assert can_edit_template(staff.caller(staff.manager), template)
    assert not can_edit_template(staff.caller(staff.other_bcba), template)
    assert can_delete_template(staff.caller(staff.admin), template)

    assert can_view_template(staff.caller(staff.rbt), public_elsewhere)
    assert not can_edit_template(staff.caller(staff.admin), public_elsewhere)
