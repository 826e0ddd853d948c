"""Domain enums shared by models, schemas and the access engines."""

from enum import Enum


# Persisted labels that predate a rename. Mapped to the current label when
# read; never written.
LEGACY_ROLE_LABELS: dict[str, str] = {
    "CLINICAL_DIRECTOR": "CLINICAL_MANAGER",
}

LEGACY_PLAN_STATUS_LABELS: dict[str, str] = {
    "PENDING_CLINICAL_DIRECTOR": "PENDING_MANAGER_REVIEW",
}


# =============================================================================
# Auth
# =============================================================================


class Role(str, Enum):
    """
    Organization membership roles.

    - ORG_ADMIN: Organization owner, full control
    - CLINICAL_MANAGER: Org-wide clinical access, final plan approval
      (legacy label CLINICAL_DIRECTOR)
    - BCBA: Writes treatment plans, first-stage reviewer
    - RBT / BT: Session notes, view-only on treatment plans
    - HR_MANAGER: Team management only, no clinical data
    """

    ORG_ADMIN = "ORG_ADMIN"
    CLINICAL_MANAGER = "CLINICAL_MANAGER"
    CLINICAL_DIRECTOR = "CLINICAL_MANAGER"  # alias
    BCBA = "BCBA"
    RBT = "RBT"
    BT = "BT"
    HR_MANAGER = "HR_MANAGER"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value in LEGACY_ROLE_LABELS:
            return cls(LEGACY_ROLE_LABELS[value])
        return None

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role (current or legacy label)."""
        return value in cls._value2member_map_ or value in LEGACY_ROLE_LABELS


class MembershipStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


# =============================================================================
# Treatment plans
# =============================================================================


class PlanStatus(str, Enum):
    """
    Treatment plan lifecycle.

    DRAFT -> PENDING_BCBA_REVIEW -> PENDING_MANAGER_REVIEW -> APPROVED
    -> ACTIVE -> ARCHIVED, with REJECTED reachable from either review stage.

    PENDING_CLINICAL_DIRECTOR is the legacy label of PENDING_MANAGER_REVIEW;
    both names resolve to the same member.
    """

    DRAFT = "DRAFT"
    PENDING_BCBA_REVIEW = "PENDING_BCBA_REVIEW"
    PENDING_MANAGER_REVIEW = "PENDING_MANAGER_REVIEW"
    PENDING_CLINICAL_DIRECTOR = "PENDING_MANAGER_REVIEW"  # alias
    APPROVED = "APPROVED"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    REJECTED = "REJECTED"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value in LEGACY_PLAN_STATUS_LABELS:
            return cls(LEGACY_PLAN_STATUS_LABELS[value])
        return None

    @property
    def stored_labels(self) -> list[str]:
        """Every label a row in this state may carry in the database."""
        labels = [self.value]
        labels.extend(
            legacy
            for legacy, current in LEGACY_PLAN_STATUS_LABELS.items()
            if current == self.value
        )
        return labels


class PlanAction(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    ACTIVATE = "activate"
    ARCHIVE = "archive"


class AIReviewType(str, Enum):
    DRAFT_REVIEW = "DRAFT_REVIEW"
    CLINICAL_REVIEW = "CLINICAL_REVIEW"
    COMPLIANCE_REVIEW = "COMPLIANCE_REVIEW"


class AIReviewStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# =============================================================================
# Session notes
# =============================================================================


class SessionType(str, Enum):
    THERAPY = "THERAPY"
    ASSESSMENT = "ASSESSMENT"
    PARENT_TRAINING = "PARENT_TRAINING"
    CONSULTATION = "CONSULTATION"
    OTHER = "OTHER"


class SessionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# =============================================================================
# Audit & compliance
# =============================================================================


class ConsentStatus(str, Enum):
    """Consent classification attached to audit entries (annotation only)."""

    NOT_REQUIRED = "NOT_REQUIRED"
    EMERGENCY = "EMERGENCY"
    AUDIT = "AUDIT"
    TREATMENT = "TREATMENT"
    ADMINISTRATIVE = "ADMINISTRATIVE"


class AuditAction(str, Enum):
    """
    Audit action tags.

    Free-form strings are also accepted by the audit logger; these are the
    tags the services emit.
    """

    # Patients
    CREATE_PATIENT = "create_patient"
    VIEW_PATIENT = "view_patient"
    LIST_PATIENTS = "list_patients"
    UPDATE_PATIENT = "update_patient"
    DELETE_PATIENT = "delete_patient"
    ASSIGN_PATIENT_STAFF = "assign_patient_staff"
    EMERGENCY_VIEW_PATIENT = "emergency_view_patient"
    UPGRADE_PATIENT_ENCRYPTION = "upgrade_patient_encryption"

    # Treatment plans
    CREATE_TREATMENT_PLAN = "create_treatment_plan"
    VIEW_TREATMENT_PLAN = "view_treatment_plan"
    LIST_TREATMENT_PLANS = "list_treatment_plans"
    UPDATE_TREATMENT_PLAN = "update_treatment_plan"
    DELETE_TREATMENT_PLAN = "delete_treatment_plan"
    SUBMIT_TREATMENT_PLAN_REVIEW = "submit_treatment_plan_review"
    APPROVE_TREATMENT_PLAN = "approve_treatment_plan"
    REJECT_TREATMENT_PLAN = "reject_treatment_plan"
    ACTIVATE_TREATMENT_PLAN = "activate_treatment_plan"
    ARCHIVE_TREATMENT_PLAN = "archive_treatment_plan"
    APPLY_TEMPLATE = "apply_template"
    REQUEST_AI_REVIEW = "request_ai_review"

    # Session notes
    CREATE_SESSION_NOTE = "create_session_note"
    VIEW_SESSION_NOTE = "view_session_note"
    LIST_SESSION_NOTES = "list_session_notes"
    UPDATE_SESSION_NOTE = "update_session_note"
    DELETE_SESSION_NOTE = "delete_session_note"

    # Comments
    CREATE_COMMENT = "create_comment"
    DELETE_COMMENT = "delete_comment"

    # Templates
    CREATE_TEMPLATE = "create_template"
    UPDATE_TEMPLATE = "update_template"
    DELETE_TEMPLATE = "delete_template"

    # Compliance
    LIST_AUDIT_LOGS = "list_audit_logs"
    SECURITY_BREACH_DETECTED = "security_breach_detected"


class BreachType(str, Enum):
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    FAILED_LOGIN_THRESHOLD = "failed_login_threshold"
    UNUSUAL_DATA_ACCESS = "unusual_data_access"
    ENCRYPTION_FAILURE = "encryption_failure"
    DATA_EXPORT_ANOMALY = "data_export_anomaly"
    SESSION_HIJACK_ATTEMPT = "session_hijack_attempt"
    PHI_ACCESS_VIOLATION = "phi_access_violation"
    API_ABUSE = "api_abuse"


class BreachSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class BreachStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


# =============================================================================
# Notifications
# =============================================================================


class NotificationType(str, Enum):
    REVIEW_REQUESTED = "REVIEW_REQUESTED"
    PLAN_APPROVED = "PLAN_APPROVED"
    PLAN_REJECTED = "PLAN_REJECTED"
    PATIENT_ASSIGNED = "PATIENT_ASSIGNED"
    SYSTEM_ALERT = "SYSTEM_ALERT"
