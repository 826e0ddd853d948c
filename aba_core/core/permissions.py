"""Permission registry and role-level predicates.

Role-level capabilities are declared once in PERMISSION_REGISTRY and granted
per canonical role in ROLE_DEFAULTS. Entity-level checks (ownership,
assignment, plan status) live in patient_access and plan_access and build
on these.

Every predicate takes a Caller and returns bool. A missing caller or a
caller without an organization fails every predicate.
"""

from dataclasses import dataclass
from enum import Enum

from aba_core.core.exceptions import MissingOrganizationContext, Unauthenticated
from aba_core.core.roles import allowed_roles_to_create, normalize_role
from aba_core.db.enums import Role
from aba_core.schemas.auth import Caller


@dataclass(frozen=True)
class PermissionDef:
    """Permission definition with metadata."""
    key: str
    label: str
    description: str
    category: str


class PermissionCategory(str, Enum):
    """Permission categories for grouping."""
    PATIENTS = "Patients"
    TREATMENT_PLANS = "Treatment Plans"
    SESSION_NOTES = "Session Notes"
    TEMPLATES = "Templates"
    TEAM = "Team"
    SETTINGS = "Settings"
    COMPLIANCE = "Compliance"


class PermissionKey(str, Enum):
    VIEW_PATIENTS = "view_patients"
    CREATE_PATIENTS = "create_patients"
    EDIT_PATIENTS = "edit_patients"
    DELETE_PATIENTS = "delete_patients"
    ASSIGN_PATIENT_STAFF = "assign_patient_staff"

    VIEW_TREATMENT_PLANS = "view_treatment_plans"
    CREATE_TREATMENT_PLANS = "create_treatment_plans"
    EDIT_TREATMENT_PLANS = "edit_treatment_plans"
    REQUEST_AI_REVIEW = "request_ai_review"

    VIEW_SESSION_NOTES = "view_session_notes"
    CREATE_SESSION_NOTES = "create_session_notes"

    CREATE_TEMPLATES = "create_templates"

    INVITE_USERS = "invite_users"
    MANAGE_USERS = "manage_users"
    CREATE_CLINICAL_MANAGER = "create_clinical_manager"

    UPDATE_ORGANIZATION = "update_organization"
    VIEW_AUDIT_LOG = "view_audit_log"
    VIEW_REPORTS = "view_reports"
    VIEW_SECURITY_BREACHES = "view_security_breaches"


# =============================================================================
# Permission Registry
# =============================================================================

PERMISSION_REGISTRY: dict[str, PermissionDef] = {
    # Patients
    PermissionKey.VIEW_PATIENTS.value: PermissionDef(
        "view_patients", "View Patients",
        "See patient records (scoped by assignment)", PermissionCategory.PATIENTS
    ),
    PermissionKey.CREATE_PATIENTS.value: PermissionDef(
        "create_patients", "Create Patients",
        "Register new patients", PermissionCategory.PATIENTS
    ),
    PermissionKey.EDIT_PATIENTS.value: PermissionDef(
        "edit_patients", "Edit Patients",
        "Modify patient demographics and clinical details", PermissionCategory.PATIENTS
    ),
    PermissionKey.DELETE_PATIENTS.value: PermissionDef(
        "delete_patients", "Delete Patients",
        "Soft-delete patient records", PermissionCategory.PATIENTS
    ),
    PermissionKey.ASSIGN_PATIENT_STAFF.value: PermissionDef(
        "assign_patient_staff", "Assign Staff",
        "Assign BCBA and RBT staff to patients", PermissionCategory.PATIENTS
    ),

    # Treatment plans
    PermissionKey.VIEW_TREATMENT_PLANS.value: PermissionDef(
        "view_treatment_plans", "View Treatment Plans",
        "Read treatment plans (scoped by ownership or assignment)",
        PermissionCategory.TREATMENT_PLANS
    ),
    PermissionKey.CREATE_TREATMENT_PLANS.value: PermissionDef(
        "create_treatment_plans", "Create Treatment Plans",
        "Draft new treatment plans", PermissionCategory.TREATMENT_PLANS
    ),
    PermissionKey.EDIT_TREATMENT_PLANS.value: PermissionDef(
        "edit_treatment_plans", "Edit Treatment Plans",
        "Modify treatment plans (BCBA: own drafts only)", PermissionCategory.TREATMENT_PLANS
    ),
    PermissionKey.REQUEST_AI_REVIEW.value: PermissionDef(
        "request_ai_review", "Request AI Review",
        "Request an AI review of a treatment plan", PermissionCategory.TREATMENT_PLANS
    ),

    # Session notes
    PermissionKey.VIEW_SESSION_NOTES.value: PermissionDef(
        "view_session_notes", "View Session Notes",
        "Read session notes for accessible patients", PermissionCategory.SESSION_NOTES
    ),
    PermissionKey.CREATE_SESSION_NOTES.value: PermissionDef(
        "create_session_notes", "Create Session Notes",
        "Record therapy sessions", PermissionCategory.SESSION_NOTES
    ),

    # Templates
    PermissionKey.CREATE_TEMPLATES.value: PermissionDef(
        "create_templates", "Create Templates",
        "Create treatment plan templates", PermissionCategory.TEMPLATES
    ),

    # Team
    PermissionKey.INVITE_USERS.value: PermissionDef(
        "invite_users", "Invite Users",
        "Invite staff to the organization", PermissionCategory.TEAM
    ),
    PermissionKey.MANAGE_USERS.value: PermissionDef(
        "manage_users", "Manage Users",
        "Change roles and deactivate staff", PermissionCategory.TEAM
    ),
    PermissionKey.CREATE_CLINICAL_MANAGER.value: PermissionDef(
        "create_clinical_manager", "Create Clinical Managers",
        "Create accounts with the Clinical Manager role", PermissionCategory.TEAM
    ),

    # Settings & compliance
    PermissionKey.UPDATE_ORGANIZATION.value: PermissionDef(
        "update_organization", "Update Organization",
        "Edit organization settings and branding", PermissionCategory.SETTINGS
    ),
    PermissionKey.VIEW_REPORTS.value: PermissionDef(
        "view_reports", "View Reports",
        "Access analytics and reports", PermissionCategory.SETTINGS
    ),
    PermissionKey.VIEW_AUDIT_LOG.value: PermissionDef(
        "view_audit_log", "View Audit Log",
        "Access audit trail", PermissionCategory.COMPLIANCE
    ),
    PermissionKey.VIEW_SECURITY_BREACHES.value: PermissionDef(
        "view_security_breaches", "View Security Breaches",
        "Review detected breaches and statistics", PermissionCategory.COMPLIANCE
    ),
}


# =============================================================================
# Default Role Permissions
# =============================================================================

_CLINICAL_MANAGER_DEFAULTS: set[str] = {
    PermissionKey.VIEW_PATIENTS.value,
    PermissionKey.CREATE_PATIENTS.value,
    PermissionKey.EDIT_PATIENTS.value,
    PermissionKey.DELETE_PATIENTS.value,
    PermissionKey.ASSIGN_PATIENT_STAFF.value,
    PermissionKey.VIEW_TREATMENT_PLANS.value,
    PermissionKey.CREATE_TREATMENT_PLANS.value,
    PermissionKey.EDIT_TREATMENT_PLANS.value,
    PermissionKey.REQUEST_AI_REVIEW.value,
    PermissionKey.VIEW_SESSION_NOTES.value,
    PermissionKey.CREATE_SESSION_NOTES.value,
    PermissionKey.CREATE_TEMPLATES.value,
    PermissionKey.INVITE_USERS.value,
    PermissionKey.MANAGE_USERS.value,
    PermissionKey.VIEW_REPORTS.value,
    PermissionKey.VIEW_AUDIT_LOG.value,
    PermissionKey.VIEW_SECURITY_BREACHES.value,
}

# Which permissions each canonical role has. Legacy labels resolve through
# normalize_role before lookup, so they never need their own entry.
ROLE_DEFAULTS: dict[Role, set[str]] = {
    Role.ORG_ADMIN: set(PERMISSION_REGISTRY.keys()),  # All permissions
    Role.CLINICAL_MANAGER: _CLINICAL_MANAGER_DEFAULTS,
    Role.BCBA: {
        PermissionKey.VIEW_PATIENTS.value,
        PermissionKey.CREATE_PATIENTS.value,
        PermissionKey.EDIT_PATIENTS.value,
        PermissionKey.VIEW_TREATMENT_PLANS.value,
        PermissionKey.CREATE_TREATMENT_PLANS.value,
        PermissionKey.EDIT_TREATMENT_PLANS.value,
        PermissionKey.REQUEST_AI_REVIEW.value,
        PermissionKey.VIEW_SESSION_NOTES.value,
        PermissionKey.CREATE_SESSION_NOTES.value,
    },
    Role.RBT: {
        PermissionKey.VIEW_PATIENTS.value,
        PermissionKey.VIEW_TREATMENT_PLANS.value,
        PermissionKey.VIEW_SESSION_NOTES.value,
        PermissionKey.CREATE_SESSION_NOTES.value,
    },
    Role.BT: {
        PermissionKey.VIEW_PATIENTS.value,
        PermissionKey.VIEW_TREATMENT_PLANS.value,
        PermissionKey.VIEW_SESSION_NOTES.value,
        PermissionKey.CREATE_SESSION_NOTES.value,
    },
    # Team administration only, no clinical data
    Role.HR_MANAGER: {
        PermissionKey.INVITE_USERS.value,
        PermissionKey.MANAGE_USERS.value,
    },
}


# =============================================================================
# Helper Functions
# =============================================================================

def get_all_permissions() -> list[PermissionDef]:
    """Get all permissions sorted by category."""
    return sorted(PERMISSION_REGISTRY.values(), key=lambda p: (p.category, p.key))


def get_permission(key: str) -> PermissionDef | None:
    """Get permission by key."""
    return PERMISSION_REGISTRY.get(key)


def get_role_default_permissions(role: Role | str | None) -> set[str]:
    """Get default permissions for a role (legacy labels accepted)."""
    normalized = normalize_role(role)
    if normalized is None:
        return set()
    return ROLE_DEFAULTS.get(normalized, set())


def has_valid_session(caller: Caller | None) -> bool:
    """A caller counts only with an organization selected."""
    return caller is not None and caller.organization_id is not None


def has_permission(caller: Caller | None, key: PermissionKey | str) -> bool:
    """Role-level capability check for the caller's current organization."""
    if not has_valid_session(caller):
        return False
    key_str = key.value if isinstance(key, PermissionKey) else key
    return key_str in get_role_default_permissions(caller.role)


# =============================================================================
# Role-level predicates
# =============================================================================

def can_create_patient(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.CREATE_PATIENTS)


def can_assign_staff(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.ASSIGN_PATIENT_STAFF)


def can_create_treatment_plan(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.CREATE_TREATMENT_PLANS)


def can_create_session_note(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.CREATE_SESSION_NOTES)


def can_create_template(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.CREATE_TEMPLATES)


def can_invite_users(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.INVITE_USERS)


def can_manage_users(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.MANAGE_USERS)


def can_update_organization(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.UPDATE_ORGANIZATION)


def can_view_audit_logs(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.VIEW_AUDIT_LOG)


def can_view_reports(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.VIEW_REPORTS)


def can_view_security_breaches(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.VIEW_SECURITY_BREACHES)


def can_create_clinical_manager(caller: Caller | None) -> bool:
    return has_permission(caller, PermissionKey.CREATE_CLINICAL_MANAGER)


def can_create_staff(caller: Caller | None, target_role: Role | str) -> bool:
    """Whether the caller may create an account with `target_role`."""
    if not has_valid_session(caller):
        return False
    normalized = normalize_role(target_role)
    return normalized is not None and normalized in allowed_roles_to_create(caller.role)


def can_update_user_role(caller: Caller | None, target_role: Role | str) -> bool:
    """
    Only ORG_ADMIN may assign the clinical-manager role (legacy label
    included). Other assignments follow allowed_roles_to_create.
    """
    if not can_manage_users(caller):
        return False
    normalized = normalize_role(target_role)
    if normalized is None:
        return False
    if normalized == Role.CLINICAL_MANAGER:
        return can_create_clinical_manager(caller)
    return normalized in allowed_roles_to_create(caller.role)


def can_change_user_password(caller: Caller | None, target_user_id: int) -> bool:
    """ORG_ADMIN: anyone including self. CLINICAL_MANAGER: anyone but self."""
    if not has_valid_session(caller):
        return False
    if caller.role == Role.ORG_ADMIN:
        return True
    if caller.role == Role.CLINICAL_MANAGER:
        return target_user_id != caller.user_id
    return False


def can_delete_user(caller: Caller | None, target_user_id: int) -> bool:
    if not has_valid_session(caller):
        return False
    # Never yourself
    if target_user_id == caller.user_id:
        return False
    return can_manage_users(caller)


def require_session(caller: Caller | None) -> Caller:
    """
    Ensure a usable caller for service operations.

    Raises:
        Unauthenticated: No caller
        MissingOrganizationContext: Caller has no organization selected
    """
    if caller is None:
        raise Unauthenticated()
    if caller.organization_id is None:
        raise MissingOrganizationContext()
    return caller
