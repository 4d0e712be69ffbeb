from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from usage_billing.models.billing import PlanId, SubscriptionStatus


class UsageRead(BaseModel):
    account_id: UUID
    plan: PlanId
    status: SubscriptionStatus
    records_used: int
    records_limit: int
    projects_used: int
    projects_limit: int
    percentage: int
    is_over_limit: bool
    cycle_start: datetime | None = None
    cycle_end: datetime | None = None
    days_until_reset: int


class ProjectLimitRead(BaseModel):
    allowed: bool
    plan: PlanId
    projects_used: int
    projects_limit: int
    message: str | None = None
    upgrade_options: list[PlanId] = []


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    plan_id: PlanId
    name: str
    max_active_projects: int
    max_records_per_cycle: int
    monthly_price_cents: int
    annual_price_cents: int
    features: list[str]


class SubscriptionStateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    account_id: UUID
    plan_id: PlanId
    status: SubscriptionStatus
    provider_customer_ref: str | None = None
    provider_subscription_ref: str | None = None
    cycle_start: datetime | None = None
    cycle_end: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionRead(BaseModel):
    state: SubscriptionStateRead
    plan: PlanRead
    upgrade_options: list[PlanRead]
