from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from usage_billing.models.billing import (
    PaymentStatus,
    PlanId,
    ProcessedEventStatus,
)

# ── Sweep ────────────────────────────────────────────────


class SweepRequest(BaseModel):
    # Validated in the route so an unknown mode is a 400, not a 422
    mode: str = "due-only"
    days: int = Field(default=7, ge=0, le=90)


class SweepFailure(BaseModel):
    account_id: str
    error: str


class SweepResult(BaseModel):
    mode: Literal["due-only"] = "due-only"
    reset_count: int
    checked: int
    accounts: list[str]
    failures: list[SweepFailure]


class DueAccount(BaseModel):
    account_id: UUID
    email: str
    plan: PlanId
    cycle_end: datetime | None = None
    records_used: int
    is_due: bool


class PreviewResult(BaseModel):
    mode: Literal["preview"] = "preview"
    days: int
    total_users: int
    accounts: list[DueAccount]


class UsageResetRequest(BaseModel):
    action: str


# ── Reports ──────────────────────────────────────────────


class UsageSummaryRead(BaseModel):
    total_accounts: int
    total_records: int
    total_projects: int
    plan_distribution: dict[str, int]
    users_over_limit: int
    users_approaching_limit: int


class AccountUsageRow(BaseModel):
    account_id: UUID
    email: str
    plan: PlanId
    records_used: int
    records_limit: int
    percentage: int


# ── Provider events & payments ───────────────────────────


class WebhookAck(BaseModel):
    status: Literal["ok"] = "ok"
    result: Literal["processed", "duplicate", "ignored"]
    event_id: str


class ProcessedEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    provider: str
    provider_event_id: str
    event_type: str
    account_id: UUID | None = None
    status: ProcessedEventStatus
    processed: bool
    processed_at: datetime | None = None
    retry_count: int
    last_error: str | None = None
    event_created_at: datetime | None = None
    created_at: datetime


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    account_id: UUID
    provider_invoice_ref: str
    provider_subscription_ref: str | None = None
    amount_cents: int
    currency: str
    status: PaymentStatus
    plan_at_payment: PlanId
    paid_at: datetime | None = None
    failure_reason: str | None = None
    created_at: datetime
