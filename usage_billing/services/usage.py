"""Per-account usage counters and quota checks."""
from __future__ import annotations

import logging
import math
from datetime import UTC, datetime

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from usage_billing.models.account import Project
from usage_billing.models.billing import UsageCounter
from usage_billing.services import plans
from usage_billing.services.accounts import accounts
from usage_billing.services.common import (
    add_months,
    coerce_uuid,
    ensure_aware,
    month_start,
)
from usage_billing.services.exceptions import LimitExceeded

logger = logging.getLogger(__name__)


def usage_percentage(used: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return max(0, min(100, round(used / limit * 100)))


def _days_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds() / 86400))


class UsageAccounting:
    @staticmethod
    def get_counter(db: Session, account_id) -> UsageCounter | None:
        return (
            db.query(UsageCounter)
            .filter(UsageCounter.account_id == coerce_uuid(account_id))
            .one_or_none()
        )

    @staticmethod
    def ensure_counter(db: Session, account_id) -> None:
        """Create the counter row on first use.

        Commits on its own so the unique-constraint race can be recovered
        with a rollback before the caller has pending work.
        """
        account_uuid = coerce_uuid(account_id)
        if UsageAccounting.get_counter(db, account_uuid) is not None:
            return
        db.add(UsageCounter(account_id=account_uuid, records_used=0, active_projects=0))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug("Usage counter for %s created concurrently", account_uuid)

    @staticmethod
    def count_active_projects(db: Session, account_id) -> int:
        return (
            db.query(func.count(Project.id))
            .filter(
                Project.account_id == coerce_uuid(account_id),
                Project.is_active.is_(True),
            )
            .scalar()
            or 0
        )

    @staticmethod
    def sync_project_count(db: Session, account_id) -> int:
        """Recompute ``active_projects`` from the live project rows."""
        count = UsageAccounting.count_active_projects(db, account_id)
        db.execute(
            update(UsageCounter)
            .where(UsageCounter.account_id == coerce_uuid(account_id))
            .values(active_projects=count)
        )
        return count

    @staticmethod
    def current_usage(db: Session, account_id, now: datetime | None = None) -> dict:
        now = now or datetime.now(UTC)
        state = accounts.get_state(db, account_id)
        plan = plans.get_plan(state.plan_id)
        counter = UsageAccounting.get_counter(db, account_id)
        records_used = counter.records_used if counter else 0
        projects_used = UsageAccounting.count_active_projects(db, account_id)
        cycle_end = ensure_aware(state.cycle_end)
        if cycle_end is not None:
            days_until_reset = _days_until(cycle_end, now)
        else:
            days_until_reset = _days_until(add_months(month_start(now), 1), now)
        return {
            "account_id": state.account_id,
            "plan": plan.plan_id,
            "status": state.status,
            "records_used": records_used,
            "records_limit": plan.max_records_per_cycle,
            "projects_used": projects_used,
            "projects_limit": plan.max_active_projects,
            "percentage": usage_percentage(records_used, plan.max_records_per_cycle),
            "is_over_limit": records_used > plan.max_records_per_cycle,
            "cycle_start": ensure_aware(state.cycle_start),
            "cycle_end": cycle_end,
            "days_until_reset": days_until_reset,
        }

    @staticmethod
    def can_create_project(db: Session, account_id) -> bool:
        state = accounts.get_state(db, account_id)
        limits = plans.limits_for(state.plan_id)
        return UsageAccounting.count_active_projects(db, account_id) < limits.max_active_projects

    @staticmethod
    def project_limit_status(db: Session, account_id) -> dict:
        state = accounts.get_state(db, account_id)
        plan = plans.get_plan(state.plan_id)
        projects_used = UsageAccounting.count_active_projects(db, account_id)
        allowed = projects_used < plan.max_active_projects
        message = None
        if not allowed:
            message = (
                f"You've reached your project limit of {plan.max_active_projects} "
                f"for the {plan.name} plan."
            )
        return {
            "allowed": allowed,
            "plan": plan.plan_id,
            "projects_used": projects_used,
            "projects_limit": plan.max_active_projects,
            "message": message,
            "upgrade_options": [
                option.plan_id for option in plans.upgrade_options(plan.plan_id)
            ],
        }

    @staticmethod
    def record_created(db: Session, account_id) -> int:
        """Atomically count one new record against the current cycle.

        The increment is left in the caller's transaction. When the new
        total is over the plan limit ``LimitExceeded`` is raised after the
        increment; the caller keeps the record hidden (soft overflow) or
        rolls back (hard overflow).
        """
        account_uuid = coerce_uuid(account_id)
        state = accounts.get_state(db, account_uuid)
        limits = plans.limits_for(state.plan_id)
        stmt = (
            update(UsageCounter)
            .where(UsageCounter.account_id == account_uuid)
            .values(records_used=UsageCounter.records_used + 1)
            .returning(UsageCounter.records_used)
        )
        used = db.execute(stmt).scalar_one_or_none()
        if used is None:
            UsageAccounting.ensure_counter(db, account_uuid)
            used = db.execute(stmt).scalar_one()
        if used > limits.max_records_per_cycle:
            raise LimitExceeded(used, limits.max_records_per_cycle)
        return used

    @staticmethod
    def reset_cycle(
        db: Session, account_id, now: datetime | None = None, *, commit: bool = True
    ) -> None:
        """Zero the cycle counter. Callers hold the cycle guard."""
        now = now or datetime.now(UTC)
        account_uuid = coerce_uuid(account_id)
        result = db.execute(
            update(UsageCounter)
            .where(UsageCounter.account_id == account_uuid)
            .values(records_used=0, last_reset_at=now)
        )
        if result.rowcount == 0:
            db.add(
                UsageCounter(
                    account_id=account_uuid,
                    records_used=0,
                    active_projects=0,
                    last_reset_at=now,
                )
            )
        if commit:
            db.commit()
        logger.info("Reset usage counter", extra={"account_id": str(account_uuid)})


usage = UsageAccounting()
