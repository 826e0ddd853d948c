"""Pydantic schemas for boundary validation."""

from aba_core.schemas.auth import Caller, TokenPayload
from aba_core.schemas.audit import AuditEvent, ConsentInfo, RequestMetadata
from aba_core.schemas.patient import (
    PatientAssign,
    PatientCreate,
    PatientPHI,
    PatientRead,
    PatientUpdate,
)
from aba_core.schemas.treatment_plan import (
    Behavior,
    CommentCreate,
    DataCollectionMethod,
    Goal,
    Intervention,
    PlanContent,
    PlanItem,
    TreatmentPlanCreate,
    TreatmentPlanUpdate,
)
