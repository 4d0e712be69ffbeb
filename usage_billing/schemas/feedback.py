from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from usage_billing.models.billing import PlanId

# ── Project ──────────────────────────────────────────────


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    url: str | None = Field(default=None, max_length=512)


class ProjectRead(ProjectCreate):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    account_id: UUID
    is_active: bool
    created_at: datetime


# ── Feedback ─────────────────────────────────────────────


class FeedbackCreate(BaseModel):
    project_id: UUID
    content: str = Field(min_length=1, max_length=5000)
    email: EmailStr | None = None


class FeedbackRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    project_id: UUID
    content: str
    email: str | None = None
    is_visible: bool
    visibility_rank: int | None = None
    created_at: datetime


class FeedbackSubmitted(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    created_at: datetime


class VisibilityStatsRead(BaseModel):
    total: int
    visible: int
    hidden: int
    limit: int
    plan: PlanId
    is_over_limit: bool


class VisibilityRecomputeRead(BaseModel):
    visible: int
    hidden: int
    limit: int
