from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db, require_account
from usage_billing.schemas.usage import (
    PlanRead,
    ProjectLimitRead,
    SubscriptionRead,
    SubscriptionStateRead,
    UsageRead,
)
from usage_billing.services import plans
from usage_billing.services.accounts import accounts
from usage_billing.services.usage import usage

router = APIRouter(tags=["usage"])


@router.get("/plans", response_model=list[PlanRead])
def list_plans():
    return plans.list_plans()


@router.get("/usage", response_model=UsageRead)
def get_usage(
    account_id: str = Depends(require_account), db: Session = Depends(get_db)
):
    return usage.current_usage(db, account_id)


@router.get("/subscription", response_model=SubscriptionRead)
def get_subscription(
    account_id: str = Depends(require_account), db: Session = Depends(get_db)
):
    state = accounts.get_state(db, account_id)
    db.commit()
    return SubscriptionRead(
        state=SubscriptionStateRead.model_validate(state),
        plan=PlanRead.model_validate(plans.get_plan(state.plan_id)),
        upgrade_options=[
            PlanRead.model_validate(option)
            for option in plans.upgrade_options(state.plan_id)
        ],
    )


@router.get("/subscription/can-create-project", response_model=ProjectLimitRead)
def can_create_project(
    account_id: str = Depends(require_account), db: Session = Depends(get_db)
):
    return usage.project_limit_status(db, account_id)
