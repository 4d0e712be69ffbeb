"""Read-only usage reports for operators and the scheduled report jobs."""
from __future__ import annotations

import logging
import math

from sqlalchemy import func
from sqlalchemy.orm import Session

from usage_billing.config import settings
from usage_billing.models.account import Account, Feedback, Project
from usage_billing.models.billing import PlanId, SubscriptionState, UsageCounter
from usage_billing.services import plans
from usage_billing.services.usage import usage_percentage

logger = logging.getLogger(__name__)


def _usage_rows(db: Session):
    return (
        db.query(Account, SubscriptionState, UsageCounter)
        .join(SubscriptionState, SubscriptionState.account_id == Account.id)
        .outerjoin(UsageCounter, UsageCounter.account_id == Account.id)
        .order_by(Account.email.asc())
        .all()
    )


def _row_payload(account: Account, state: SubscriptionState, used: int, limit: int) -> dict:
    return {
        "account_id": account.id,
        "email": account.email,
        "plan": state.plan_id,
        "records_used": used,
        "records_limit": limit,
        "percentage": usage_percentage(used, limit),
    }


class UsageReports:
    @staticmethod
    def users_approaching_limits(db: Session, threshold: float | None = None) -> list[dict]:
        threshold = settings.usage_warning_threshold if threshold is None else threshold
        results = []
        for account, state, counter in _usage_rows(db):
            limit = plans.limits_for(state.plan_id).max_records_per_cycle
            used = counter.records_used if counter else 0
            if math.floor(limit * threshold) <= used < limit:
                results.append(_row_payload(account, state, used, limit))
        return results

    @staticmethod
    def users_over_limits(db: Session) -> list[dict]:
        results = []
        for account, state, counter in _usage_rows(db):
            limit = plans.limits_for(state.plan_id).max_records_per_cycle
            used = counter.records_used if counter else 0
            if used > limit:
                results.append(_row_payload(account, state, used, limit))
        return results

    @staticmethod
    def usage_summary(db: Session, threshold: float | None = None) -> dict:
        distribution = {plan_id.value: 0 for plan_id in PlanId}
        for plan_id, count in (
            db.query(SubscriptionState.plan_id, func.count(SubscriptionState.id))
            .group_by(SubscriptionState.plan_id)
            .all()
        ):
            distribution[plan_id.value] = count
        total_projects = (
            db.query(func.count(Project.id)).filter(Project.is_active.is_(True)).scalar()
            or 0
        )
        return {
            "total_accounts": db.query(func.count(Account.id)).scalar() or 0,
            "total_records": db.query(func.count(Feedback.id)).scalar() or 0,
            "total_projects": total_projects,
            "plan_distribution": distribution,
            "users_over_limit": len(UsageReports.users_over_limits(db)),
            "users_approaching_limit": len(
                UsageReports.users_approaching_limits(db, threshold)
            ),
        }

    @staticmethod
    def check_usage_limits(db: Session) -> dict:
        over = UsageReports.users_over_limits(db)
        approaching = UsageReports.users_approaching_limits(db)
        for row in over:
            logger.warning(
                "Account over record limit: %d/%d",
                row["records_used"],
                row["records_limit"],
                extra={"account_id": str(row["account_id"])},
            )
        for row in approaching:
            logger.info(
                "Account approaching record limit: %d%%",
                row["percentage"],
                extra={"account_id": str(row["account_id"])},
            )
        return {"over_limit": len(over), "approaching_limit": len(approaching)}

    @staticmethod
    def generate_usage_report(db: Session) -> dict:
        summary = UsageReports.usage_summary(db)
        logger.info(
            "Usage report: %d accounts, %d records, %d over limit, %d approaching",
            summary["total_accounts"],
            summary["total_records"],
            summary["users_over_limit"],
            summary["users_approaching_limit"],
        )
        return summary


reports = UsageReports()
