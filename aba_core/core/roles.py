"""Role classification.

All alias handling lives here: callers pass raw role labels or Role members
and get back a canonical Role (or None for anything unrecognized). None is
never granted anything.
"""

from aba_core.db.enums import LEGACY_ROLE_LABELS, Role


# Organization-wide data access
ADMIN_TIER_ROLES = frozenset({Role.ORG_ADMIN, Role.CLINICAL_MANAGER})

# Final-stage plan reviewers
CLINICAL_MANAGER_TIER_ROLES = frozenset({Role.CLINICAL_MANAGER})

# Roles that work directly with assigned patients
ASSIGNED_CLINICAL_ROLES = frozenset({Role.BCBA, Role.RBT, Role.BT})

# View-only on treatment plans
TECHNICIAN_ROLES = frozenset({Role.RBT, Role.BT})

# Every role that can hold clinical data at all
CLINICAL_ROLES = ADMIN_TIER_ROLES | ASSIGNED_CLINICAL_ROLES

ROLE_LABELS: dict[Role, str] = {
    Role.ORG_ADMIN: "Organization Admin",
    Role.CLINICAL_MANAGER: "Clinical Manager",
    Role.BCBA: "BCBA",
    Role.RBT: "RBT",
    Role.BT: "BT",
    Role.HR_MANAGER: "HR Manager",
}


def normalize_role(role: Role | str | None) -> Role | None:
    """Resolve a role member or raw label to its canonical Role, or None."""
    if role is None:
        return None
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        return None


def is_admin_tier(role: Role | str | None) -> bool:
    """ORG_ADMIN and CLINICAL_MANAGER (including the CLINICAL_DIRECTOR label)."""
    return normalize_role(role) in ADMIN_TIER_ROLES


def is_clinical_manager_tier(role: Role | str | None) -> bool:
    return normalize_role(role) in CLINICAL_MANAGER_TIER_ROLES


def is_org_owner(role: Role | str | None) -> bool:
    return normalize_role(role) == Role.ORG_ADMIN


def is_technician(role: Role | str | None) -> bool:
    return normalize_role(role) in TECHNICIAN_ROLES


def role_label(role: Role | str | None) -> str:
    """Display label for a role; legacy labels display as their current name."""
    normalized = normalize_role(role)
    if normalized is None:
        return "Unknown"
    return ROLE_LABELS[normalized]


def allowed_roles_to_create(role: Role | str | None) -> list[Role]:
    """Roles a caller with `role` may create accounts for."""
    normalized = normalize_role(role)
    if normalized == Role.ORG_ADMIN:
        return [Role.CLINICAL_MANAGER, Role.BCBA, Role.RBT, Role.BT, Role.HR_MANAGER]
    if normalized == Role.CLINICAL_MANAGER:
        return [Role.BCBA, Role.RBT, Role.BT]
    return []


def stored_role_labels(roles) -> list[str]:
    """Every membership label (current or legacy) that resolves to one of `roles`."""
    wanted = {normalize_role(r) for r in roles}
    labels = [role.value for role in Role if role in wanted]
    labels.extend(
        legacy for legacy, current in LEGACY_ROLE_LABELS.items() if Role(current) in wanted
    )
    return sorted(set(labels))
