"""Authentication-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, field_validator

from aba_core.core.roles import normalize_role
from aba_core.db.enums import Role


class TokenPayload(BaseModel):
    """Decoded JWT payload structure."""

    sub: int  # user_id
    org_id: int | None = None
    token_version: int = 1


class Caller(BaseModel):
    """
    Resolved identity of the requesting user.

    Produced by the identity collaborator (see `deps.resolve_caller`) and
    consumed by every filter and predicate. `role` is normalized on the way
    in: legacy labels map to their canonical role and anything unrecognized
    becomes None, which is never granted access.
    """

    model_config = ConfigDict(frozen=True)

    user_id: int
    role: Role | None = None
    organization_id: int | None = None

    @field_validator("role", mode="before")
    @classmethod
    def normalize(cls, value):
        return normalize_role(value)

    @property
    def has_org(self) -> bool:
        return self.organization_id is not None
