import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from usage_billing.models.account import Account
from usage_billing.models.billing import (
    PlanId,
    SubscriptionState,
    SubscriptionStatus,
    UsageCounter,
)
from usage_billing.schemas.account import AccountCreate
from usage_billing.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class Accounts:
    @staticmethod
    def create(db: Session, payload: AccountCreate) -> Account:
        email = payload.email.strip().lower()
        if db.query(Account).filter(Account.email == email).first():
            raise HTTPException(status_code=409, detail="Account already exists")
        account = Account(email=email, name=payload.name)
        db.add(account)
        db.flush()
        # Every account starts on the free plan with no provider reference
        db.add(
            SubscriptionState(
                account_id=account.id,
                plan_id=PlanId.free,
                status=SubscriptionStatus.active,
            )
        )
        db.add(UsageCounter(account_id=account.id, records_used=0, active_projects=0))
        db.commit()
        db.refresh(account)
        logger.info("Created Account: %s", account.id)
        return account

    @staticmethod
    def get(db: Session, account_id: str) -> Account:
        account = db.get(Account, coerce_uuid(account_id))
        if not account:
            raise HTTPException(status_code=404, detail="Account not found")
        return account

    @staticmethod
    def get_state(
        db: Session, account_id: str, *, for_update: bool = False
    ) -> SubscriptionState:
        """Return the account's subscription state, creating a free one if missing.

        ``for_update`` takes the per-account row lock used by cycle advances
        and event application.
        """
        account_uuid = coerce_uuid(account_id)
        query = db.query(SubscriptionState).filter(
            SubscriptionState.account_id == account_uuid
        )
        if for_update:
            query = query.with_for_update()
        state = query.one_or_none()
        if state is not None:
            return state
        Accounts.get(db, account_uuid)
        logger.warning("Subscription state missing for %s, creating free state", account_uuid)
        state = SubscriptionState(
            account_id=account_uuid,
            plan_id=PlanId.free,
            status=SubscriptionStatus.active,
        )
        db.add(state)
        db.flush()
        return state


accounts = Accounts()
