"""Pydantic schemas for session notes."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from aba_core.db.enums import SessionStatus, SessionType


class SessionNoteCreate(BaseModel):
    """Request schema for recording a session."""

    patient_id: int
    treatment_plan_id: int | None = None
    session_type: SessionType = SessionType.THERAPY
    session_status: SessionStatus = SessionStatus.COMPLETED
    session_date: datetime
    session_duration: int | None = Field(None, ge=0, le=24 * 60)  # minutes
    session_notes: str | None = None
    goal_progress: list[dict] = Field(default_factory=list)
    behaviors_observed: list[dict] = Field(default_factory=list)
    interventions_used: list[dict] = Field(default_factory=list)
    data_collected: list[dict] = Field(default_factory=list)
    parent_feedback: str | None = None
    next_session_plan: str | None = None
    staff_signature: str | None = Field(None, max_length=255)


class SessionNoteUpdate(BaseModel):
    """Request schema for updating a session note (partial)."""

    session_type: SessionType | None = None
    session_status: SessionStatus | None = None
    session_date: datetime | None = None
    session_duration: int | None = Field(None, ge=0, le=24 * 60)
    session_notes: str | None = None
    goal_progress: list[dict] | None = None
    behaviors_observed: list[dict] | None = None
    interventions_used: list[dict] | None = None
    data_collected: list[dict] | None = None
    parent_feedback: str | None = None
    next_session_plan: str | None = None
    staff_signature: str | None = Field(None, max_length=255)

    @field_validator("session_type", "session_status", "session_date")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Field cannot be null")
        return v
