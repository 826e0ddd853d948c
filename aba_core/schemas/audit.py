"""Audit event schemas."""

from pydantic import BaseModel, Field

from aba_core.db.enums import ConsentStatus


class RequestMetadata(BaseModel):
    """Request details captured with an audit entry (never PHI)."""

    ip_address: str = "0.0.0.0"  # nosec B104
    user_agent: str | None = None
    request_method: str | None = None
    request_path: str | None = None


class ConsentInfo(BaseModel):
    """Consent classification embedded in an entry's `changes` payload."""

    status: ConsentStatus
    reason: str | None = None
    patient_id: int | None = None
    fields_accessed: list[str] = Field(default_factory=list)


class AuditEvent(BaseModel):
    """
    One PHI-touching operation to record.

    `consent` is derived from `action` and `phi_accessed` when not supplied.
    """

    organization_id: int | None = None
    user_id: int | None = None
    action: str
    resource_type: str | None = None
    resource_id: int | None = None
    phi_accessed: bool = False
    changes: dict | None = None
    consent: ConsentInfo | None = None
    patient_id: int | None = None
    fields_accessed: list[str] = Field(default_factory=list)
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)
    response_status: int | None = None
    response_time_ms: int | None = None
