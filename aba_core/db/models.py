"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from aba_core.db.base import Base, JsonType
from aba_core.db.enums import AIReviewStatus, BreachStatus, MembershipStatus, PlanStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Tenancy & identity
# =============================================================================


class Organization(Base):
    """Tenant. Every clinical row is scoped to exactly one organization."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    settings: Mapped[dict | None] = mapped_column(JsonType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    memberships: Mapped[list["Membership"]] = relationship(back_populates="organization")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    memberships: Mapped[list["Membership"]] = relationship(back_populates="user")

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email


class Membership(Base):
    """User's role within one organization."""

    __tablename__ = "memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_membership_user_org"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    # Stored label; may be a legacy label (CLINICAL_DIRECTOR)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=MembershipStatus.ACTIVE.value, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    user: Mapped["User"] = relationship(back_populates="memberships")
    organization: Mapped["Organization"] = relationship(back_populates="memberships")


# =============================================================================
# Patients
# =============================================================================


class Patient(Base):
    """
    Patient record. PHI columns hold encryption envelopes.

    Soft-deleted only (deleted_at) for audit continuity.
    """

    __tablename__ = "patients"
    __table_args__ = (
        Index("idx_patients_org_deleted", "organization_id", "deleted_at"),
        Index("idx_patients_org_bcba", "organization_id", "assigned_bcba_id"),
        Index("idx_patients_org_rbt", "organization_id", "assigned_rbt_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    patient_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Encrypted PHI (iv:ciphertext:mac)
    first_name_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    last_name_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    date_of_birth_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    ssn_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_guardian_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    emergency_contact_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    insurance_info_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Clinical (not field-encrypted)
    diagnosis: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    allergies: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    medications: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    enrollment_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Non-owning references used only for access scoping
    assigned_bcba_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_rbt_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    treatment_plans: Mapped[list["TreatmentPlan"]] = relationship(back_populates="patient")


# =============================================================================
# Treatment plans
# =============================================================================


class TreatmentPlan(Base):
    """
    Treatment plan with approval workflow.

    `status` stores a PlanStatus label. Rows written before the
    manager-review rename may still carry PENDING_CLINICAL_DIRECTOR; read it
    through `plan_status`.
    """

    __tablename__ = "treatment_plans"
    __table_args__ = (
        Index("idx_plans_org_status", "organization_id", "status"),
        Index("idx_plans_patient_version", "patient_id", "version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(40), default=PlanStatus.DRAFT.value, nullable=False
    )

    goals: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    behaviors: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    interventions: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    data_collection_methods: Mapped[list | None] = mapped_column(JsonType, nullable=True)

    session_frequency: Mapped[str | None] = mapped_column(String(50), nullable=True)
    review_cycle: Mapped[str | None] = mapped_column(String(50), nullable=True)
    additional_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    effective_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_by_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    reviewed_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    workflow_history: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    ai_reviewed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    patient: Mapped["Patient"] = relationship(back_populates="treatment_plans")
    comments: Mapped[list["Comment"]] = relationship(back_populates="treatment_plan")

    @property
    def plan_status(self) -> PlanStatus:
        return PlanStatus(self.status)


class Comment(Base):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    treatment_plan_id: Mapped[int] = mapped_column(
        ForeignKey("treatment_plans.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    parent_comment_id: Mapped[int | None] = mapped_column(
        ForeignKey("comments.id", ondelete="SET NULL"), nullable=True
    )
    comment_text: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    treatment_plan: Mapped["TreatmentPlan"] = relationship(back_populates="comments")


class AIReview(Base):
    """AI review result for a treatment plan (content produced externally)."""

    __tablename__ = "ai_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    treatment_plan_id: Mapped[int] = mapped_column(
        ForeignKey("treatment_plans.id", ondelete="CASCADE"), nullable=False
    )
    review_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AIReviewStatus.PENDING.value, nullable=False
    )
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    findings: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    requested_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)

    treatment_plan: Mapped["TreatmentPlan"] = relationship()


# =============================================================================
# Session notes
# =============================================================================


class SessionNote(Base):
    __tablename__ = "session_notes"
    __table_args__ = (
        Index("idx_session_notes_org_patient", "organization_id", "patient_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    treatment_plan_id: Mapped[int | None] = mapped_column(
        ForeignKey("treatment_plans.id", ondelete="SET NULL"), nullable=True
    )

    session_type: Mapped[str] = mapped_column(String(30), nullable=False)
    session_status: Mapped[str] = mapped_column(String(30), nullable=False)
    session_date: Mapped[datetime] = mapped_column(nullable=False)
    session_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # minutes
    session_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    goal_progress: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    behaviors_observed: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    interventions_used: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    data_collected: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    parent_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_session_plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    staff_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_by_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    patient: Mapped["Patient"] = relationship()


# =============================================================================
# Templates & training
# =============================================================================


class Template(Base):
    """Treatment plan template. organization_id NULL = platform template."""

    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    created_by_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    template_content: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[datetime | None] = mapped_column(nullable=True)


class TrainingModule(Base):
    """Staff training content. organization_id NULL = published platform-wide."""

    __tablename__ = "training_modules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    required_for_roles: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


# =============================================================================
# Notifications
# =============================================================================


class Notification(Base):
    """In-app notification. organization_id NULL = system-wide."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    notification_type: Mapped[str] = mapped_column(String(40), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    action_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now(), nullable=False)


# =============================================================================
# Audit & compliance
# =============================================================================


class AuditLog(Base):
    """
    Append-only PHI access and security audit log.

    Security:
    - Never stores secrets or decrypted PHI
    - `changes` carries the consent classification
    - Hash chain (per organization) makes tampering detectable
    - UPDATE and DELETE are rejected at the ORM level
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_org_created", "organization_id", "created_at"),
        Index("idx_audit_org_phi_created", "organization_id", "phi_accessed", "created_at"),
        Index("idx_audit_resource", "resource_type", "resource_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL"),
        nullable=True,  # System-level events
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,  # System events have no actor
    )

    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Request metadata
    ip_address: Mapped[str] = mapped_column(String(45), default="0.0.0.0", nullable=False)  # nosec B104
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_method: Mapped[str | None] = mapped_column(String(10), nullable=True)
    request_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    request_body: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    changes: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    phi_accessed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    consent_verified: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Tamper-evident hash chain
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex
    entry_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)  # SHA256 hex

    created_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)

    user: Mapped[User | None] = relationship()


class SecurityBreach(Base):
    """Detected security breach (HIPAA breach tracking)."""

    __tablename__ = "security_breaches"
    __table_args__ = (
        Index("idx_breaches_org_detected", "organization_id", "detected_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    breach_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=BreachStatus.OPEN.value, nullable=False
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    affected_record_ids: Mapped[list | None] = mapped_column(JsonType, nullable=True)
    affected_record_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    details: Mapped[dict | None] = mapped_column(JsonType, nullable=True)
    notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    detected_at: Mapped[datetime] = mapped_column(default=_utcnow, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise ValueError("Audit log entries are append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise ValueError("Audit log entries are append-only")
