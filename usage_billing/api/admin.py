"""Operator endpoints: accounts, cycle sweeps, legacy resets, reports and the event log.

Mounted behind ``require_admin``.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db
from usage_billing.config import settings
from usage_billing.schemas.account import AccountCreate, AccountRead
from usage_billing.schemas.billing import (
    AccountUsageRow,
    PaymentRead,
    PreviewResult,
    ProcessedEventRead,
    SweepRequest,
    SweepResult,
    UsageResetRequest,
    UsageSummaryRead,
)
from usage_billing.schemas.common import ListResponse, PruneResult
from usage_billing.services.accounts import accounts
from usage_billing.services.billing_cycle import billing_cycles
from usage_billing.services.payments import payments
from usage_billing.services.reports import reports
from usage_billing.services.visibility import visibility
from usage_billing.services.webhooks import processed_events

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

_SWEEP_MODES = ("due-only", "preview")
_RESET_ACTIONS = ("reset_monthly", "check_limits", "generate_report")


# ── Accounts ─────────────────────────────────────────────


@router.post(
    "/accounts", response_model=AccountRead, status_code=status.HTTP_201_CREATED
)
def create_account(payload: AccountCreate, db: Session = Depends(get_db)):
    return accounts.create(db, payload)


@router.get("/accounts/{account_id}", response_model=AccountRead)
def get_account(account_id: str, db: Session = Depends(get_db)):
    return accounts.get(db, account_id)


# ── Billing cycle sweep ──────────────────────────────────


@router.post("/billing-cycle-reset", response_model=SweepResult | PreviewResult)
def run_billing_cycle_reset(payload: SweepRequest, db: Session = Depends(get_db)):
    if payload.mode not in _SWEEP_MODES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid mode. Allowed: {', '.join(_SWEEP_MODES)}",
        )
    if payload.mode == "preview":
        result = billing_cycles.preview_due_accounts(db, horizon_days=payload.days)
        return {"mode": "preview", "days": payload.days, **result}
    result = billing_cycles.sweep_due_accounts(db)
    return {"mode": "due-only", **result}


@router.get("/billing-cycle-reset", response_model=PreviewResult)
def preview_billing_cycle_reset(
    days: int = Query(default=7, ge=0, le=90), db: Session = Depends(get_db)
):
    result = billing_cycles.preview_due_accounts(db, horizon_days=days)
    return {"mode": "preview", "days": days, **result}


# ── Legacy usage reset ───────────────────────────────────


@router.post("/usage-reset")
def run_usage_reset(payload: UsageResetRequest, db: Session = Depends(get_db)) -> dict:
    if payload.action not in _RESET_ACTIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid action. Allowed: {', '.join(_RESET_ACTIONS)}",
        )
    if payload.action == "reset_monthly":
        result = billing_cycles.reset_all_accounts(db)
    elif payload.action == "check_limits":
        result = reports.check_usage_limits(db)
    else:
        result = reports.generate_usage_report(db)
    return {"action": payload.action, "result": result}


@router.get("/usage-reset", response_model=UsageSummaryRead)
def get_usage_reset_summary(db: Session = Depends(get_db)):
    return reports.usage_summary(db)


# ── Reports ──────────────────────────────────────────────


@router.get("/usage/summary", response_model=UsageSummaryRead)
def get_usage_summary(
    threshold: float | None = Query(default=None, gt=0, le=1),
    db: Session = Depends(get_db),
):
    return reports.usage_summary(db, threshold)


@router.get("/usage/approaching", response_model=list[AccountUsageRow])
def get_users_approaching_limits(
    threshold: float | None = Query(default=None, gt=0, le=1),
    db: Session = Depends(get_db),
):
    return reports.users_approaching_limits(db, threshold)


@router.get("/usage/over-limit", response_model=list[AccountUsageRow])
def get_users_over_limits(db: Session = Depends(get_db)):
    return reports.users_over_limits(db)


# ── Processed webhook events ─────────────────────────────


@router.get("/webhook-events", response_model=ListResponse[ProcessedEventRead])
def list_webhook_events(
    provider: str | None = None,
    event_type: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return processed_events.list_response(
        db, provider, event_type, status, order_by, order_dir, limit, offset
    )


@router.post("/webhook-events/prune", response_model=PruneResult)
def prune_webhook_events(
    older_than_days: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
):
    days = settings.webhook_event_retention_days if older_than_days is None else older_than_days
    deleted = processed_events.prune_processed(db, days)
    return {"deleted": deleted, "older_than_days": days}


@router.get("/webhook-events/{item_id}", response_model=ProcessedEventRead)
def get_webhook_event(item_id: str, db: Session = Depends(get_db)):
    return processed_events.get(db, item_id)


@router.post("/webhook-events/{item_id}/replay")
def replay_webhook_event(item_id: str, db: Session = Depends(get_db)) -> dict:
    return processed_events.replay(db, item_id)


# ── Payments ─────────────────────────────────────────────


@router.get("/payments", response_model=ListResponse[PaymentRead])
def list_all_payments(
    account_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return payments.list_response(
        db, account_id, status, order_by, order_dir, limit, offset
    )


# ── Visibility ───────────────────────────────────────────


@router.post("/feedback/visibility/recompute")
def recompute_all_visibility(db: Session = Depends(get_db)) -> dict:
    return {"accounts": visibility.recalculate_all(db)}
