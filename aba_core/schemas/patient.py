"""Pydantic schemas for patients."""

from datetime import date, datetime

from pydantic import BaseModel, EmailStr, Field, field_validator


def _blank_to_none(v):
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None


class ParentGuardian(BaseModel):
    name: str | None = None
    relationship: str | None = None
    phone: str | None = None
    email: EmailStr | None = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email(cls, v):
        return _blank_to_none(v)


class EmergencyContact(BaseModel):
    name: str | None = None
    relationship: str | None = None
    phone: str | None = None


class InsuranceInfo(BaseModel):
    provider: str | None = None
    policy_number: str | None = None
    group_number: str | None = None


class PatientPHI(BaseModel):
    """
    The encrypted field set of a patient record, in plaintext form.

    Structured fields are serialized to canonical JSON before encryption
    (see core.phi).
    """

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date
    ssn: str | None = None
    address: Address | None = None
    parent_guardian: ParentGuardian | None = None
    phone: str | None = None
    email: EmailStr | None = None
    emergency_contact: EmergencyContact | None = None
    insurance_info: InsuranceInfo | None = None

    @field_validator("ssn", "phone", "email", mode="before")
    @classmethod
    def blank_optional(cls, v):
        return _blank_to_none(v)


class PatientCreate(PatientPHI):
    """Request schema for creating a patient."""

    patient_code: str | None = Field(None, max_length=50)
    diagnosis: dict = Field(default_factory=dict)
    allergies: list[str] = Field(default_factory=list)
    medications: list = Field(default_factory=list)
    assigned_bcba_id: int | None = None
    assigned_rbt_id: int | None = None
    enrollment_date: date | None = None


class PatientUpdate(BaseModel):
    """Request schema for updating a patient (partial)."""

    first_name: str | None = Field(None, min_length=1, max_length=100)
    last_name: str | None = Field(None, min_length=1, max_length=100)
    date_of_birth: date | None = None
    ssn: str | None = None
    address: Address | None = None
    parent_guardian: ParentGuardian | None = None
    phone: str | None = None
    email: EmailStr | None = None
    emergency_contact: EmergencyContact | None = None
    insurance_info: InsuranceInfo | None = None
    diagnosis: dict | None = None
    allergies: list[str] | None = None
    medications: list | None = None
    enrollment_date: date | None = None

    @field_validator("first_name", "last_name", "date_of_birth")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class PatientAssign(BaseModel):
    """Request schema for assigning staff to a patient."""

    assigned_bcba_id: int | None = None
    assigned_rbt_id: int | None = None


class PatientRead(PatientPHI):
    """Decrypted patient record returned to authorized callers."""

    id: int
    organization_id: int
    patient_code: str | None
    diagnosis: dict | None
    allergies: list | None
    medications: list | None
    assigned_bcba_id: int | None
    assigned_rbt_id: int | None
    enrollment_date: date | None
    created_at: datetime
