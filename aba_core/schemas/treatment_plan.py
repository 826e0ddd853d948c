"""Pydantic schemas for treatment plans.

Plan content is a set of typed sub-records (goals, behaviors, interventions,
data collection methods). Each carries a generated string id and a `kind`
tag, so a mixed list validates as the PlanItem tagged union. Id uniqueness
is the caller's responsibility.
"""

from datetime import date, datetime
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from aba_core.db.enums import PlanAction


def _new_item_id() -> str:
    return uuid4().hex


class Goal(BaseModel):
    kind: Literal["goal"] = "goal"
    id: str = Field(default_factory=_new_item_id)
    description: str = Field(..., min_length=1)
    target_behavior: str = Field(..., min_length=1)
    baseline: str | None = None
    criteria: str = Field(..., min_length=1)
    timeline: str | None = None
    status: Literal["active", "completed", "discontinued"] = "active"


class Behavior(BaseModel):
    kind: Literal["behavior"] = "behavior"
    id: str = Field(default_factory=_new_item_id)
    name: str = Field(..., min_length=1)
    definition: str = Field(..., min_length=1)
    function: str | None = None
    antecedents: str | None = None
    consequences: str | None = None
    frequency: str | None = None


class Intervention(BaseModel):
    kind: Literal["intervention"] = "intervention"
    id: str = Field(default_factory=_new_item_id)
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    target_behavior: str | None = None
    procedures: str | None = None
    materials: str | None = None
    schedule: str | None = None


class DataCollectionMethod(BaseModel):
    kind: Literal["data_collection"] = "data_collection"
    id: str = Field(default_factory=_new_item_id)
    method: str = Field(..., min_length=1)
    description: str | None = None
    frequency: str | None = None
    target_behavior: str | None = None


PlanItem = Annotated[
    Goal | Behavior | Intervention | DataCollectionMethod,
    Field(discriminator="kind"),
]

plan_items_adapter = TypeAdapter(list[PlanItem])


class PlanContent(BaseModel):
    """The four sub-record collections of a plan (or template)."""

    goals: list[Goal] = Field(default_factory=list)
    behaviors: list[Behavior] = Field(default_factory=list)
    interventions: list[Intervention] = Field(default_factory=list)
    data_collection_methods: list[DataCollectionMethod] = Field(default_factory=list)

    def items(self) -> list[PlanItem]:
        return [*self.goals, *self.behaviors, *self.interventions, *self.data_collection_methods]

    @classmethod
    def from_items(cls, items: list[PlanItem]) -> "PlanContent":
        content = cls()
        for item in items:
            if isinstance(item, Goal):
                content.goals.append(item)
            elif isinstance(item, Behavior):
                content.behaviors.append(item)
            elif isinstance(item, Intervention):
                content.interventions.append(item)
            else:
                content.data_collection_methods.append(item)
        return content

    def to_columns(self) -> dict[str, list[dict]]:
        """JSON-ready values for the plan's content columns."""
        return {
            "goals": [g.model_dump(mode="json") for g in self.goals],
            "behaviors": [b.model_dump(mode="json") for b in self.behaviors],
            "interventions": [i.model_dump(mode="json") for i in self.interventions],
            "data_collection_methods": [
                d.model_dump(mode="json") for d in self.data_collection_methods
            ],
        }


class TreatmentPlanCreate(PlanContent):
    """Request schema for creating a treatment plan."""

    patient_id: int
    title: str = Field(..., min_length=1, max_length=255)
    goals: list[Goal] = Field(..., min_length=1)
    session_frequency: str | None = None
    review_cycle: str | None = None
    additional_notes: str | None = None
    effective_date: date | None = None
    expiry_date: date | None = None


class TreatmentPlanUpdate(BaseModel):
    """Request schema for updating a treatment plan (partial)."""

    title: str | None = Field(None, min_length=1, max_length=255)
    goals: list[Goal] | None = None
    behaviors: list[Behavior] | None = None
    interventions: list[Intervention] | None = None
    data_collection_methods: list[DataCollectionMethod] | None = None
    session_frequency: str | None = None
    review_cycle: str | None = None
    additional_notes: str | None = None
    effective_date: date | None = None
    expiry_date: date | None = None

    @field_validator("title")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("Title cannot be null")
        return v


class PlanTransitionRequest(BaseModel):
    action: PlanAction
    reason: str | None = Field(None, max_length=2000)


class WorkflowHistoryEntry(BaseModel):
    status: str
    action: str
    user_id: int
    timestamp: datetime
    reason: str | None = None


class CommentCreate(BaseModel):
    comment_text: str = Field(..., min_length=1, max_length=5000)
    parent_comment_id: int | None = None
