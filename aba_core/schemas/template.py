"""Pydantic schemas for treatment plan templates."""

from pydantic import BaseModel, Field, field_validator

from aba_core.schemas.treatment_plan import PlanContent


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(None, max_length=100)
    content: PlanContent = Field(default_factory=PlanContent)
    is_public: bool = False


class TemplateUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = Field(None, max_length=100)
    content: PlanContent | None = None
    is_public: bool | None = None
    is_active: bool | None = None

    @field_validator("name", "is_public", "is_active")
    @classmethod
    def not_null(cls, v):
        # May be omitted, never cleared
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class ApplyTemplateRequest(BaseModel):
    template_id: int
    patient_id: int
    title: str | None = Field(None, min_length=1, max_length=255)
