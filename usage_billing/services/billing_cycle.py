"""Per-account billing cycle state machine and the due-account sweep."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.orm import Session, sessionmaker

from usage_billing.config import settings
from usage_billing.db import SessionLocal
from usage_billing.metrics import CYCLE_RESETS, SWEEP_FAILURES
from usage_billing.models.account import Account
from usage_billing.models.billing import (
    PlanId,
    SubscriptionState,
    SubscriptionStatus,
    UsageCounter,
)
from usage_billing.services import plans
from usage_billing.services.accounts import accounts
from usage_billing.services.common import (
    add_months,
    coerce_uuid,
    ensure_aware,
    month_start,
)
from usage_billing.services.exceptions import ConcurrentAdvanceSkipped
from usage_billing.services.usage import usage
from usage_billing.services.visibility import visibility

logger = logging.getLogger(__name__)


def is_due(state: SubscriptionState, now: datetime) -> bool:
    cycle_end = ensure_aware(state.cycle_end)
    if cycle_end is not None:
        return now >= cycle_end
    # Un-anchored free accounts reset on calendar-month boundaries
    created_at = ensure_aware(state.created_at) or now
    return month_start(now) > created_at


def _next_window(observed_end: datetime | None, now: datetime) -> tuple[datetime, datetime]:
    """Return the cycle window that contains ``now``.

    An account several periods behind skips the missed periods, so one
    advance brings ``cycle_end`` past ``now``. Boundaries stay on the
    anchor day of ``observed_end``.
    """
    if observed_end is None:
        return now, add_months(now, 1)
    periods = 1
    while add_months(observed_end, periods) <= now:
        periods += 1
    return add_months(observed_end, periods - 1), add_months(observed_end, periods)


class BillingCycles:
    @staticmethod
    def advance_cycle(db: Session, account_id, now: datetime | None = None) -> bool:
        """Move a due account into its next cycle and reset its usage.

        Returns False when the account is not due or another worker
        advanced it first.
        """
        now = now or datetime.now(UTC)
        account_uuid = coerce_uuid(account_id)
        try:
            advanced = BillingCycles._advance_locked(db, account_uuid, now)
        except ConcurrentAdvanceSkipped:
            db.rollback()
            logger.debug(
                "Cycle advance skipped, already advanced",
                extra={"account_id": str(account_uuid)},
            )
            return False
        if advanced:
            visibility.recompute_after_commit(db, account_uuid, "cycle_advance")
        return advanced

    @staticmethod
    def _advance_locked(db: Session, account_uuid, now: datetime) -> bool:
        state = accounts.get_state(db, account_uuid, for_update=True)
        if not is_due(state, now):
            db.rollback()
            return False

        observed_end = ensure_aware(state.cycle_end)
        new_start, new_end = _next_window(observed_end, now)
        values: dict = {"cycle_start": new_start, "cycle_end": new_end}
        if state.status == SubscriptionStatus.canceled and plans.is_downgrade(
            state.plan_id, PlanId.free
        ):
            # Canceled paid plans keep their limits until the period runs out
            values.update(
                plan_id=PlanId.free,
                status=SubscriptionStatus.active,
                provider_subscription_ref=None,
                cancel_at_period_end=False,
            )

        stmt = update(SubscriptionState).where(
            SubscriptionState.account_id == account_uuid
        )
        if observed_end is None:
            stmt = stmt.where(SubscriptionState.cycle_end.is_(None))
        else:
            stmt = stmt.where(SubscriptionState.cycle_end == observed_end)
        result = db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentAdvanceSkipped(f"Cycle for {account_uuid} already advanced")

        usage.reset_cycle(db, account_uuid, now, commit=False)
        db.commit()
        CYCLE_RESETS.labels("sweep").inc()
        logger.info(
            "Advanced billing cycle to %s",
            new_end.isoformat(),
            extra={"account_id": str(account_uuid)},
        )
        return True

    @staticmethod
    def reanchor(
        db: Session,
        state: SubscriptionState,
        period_start: datetime,
        period_end: datetime,
        *,
        force_reset: bool = False,
        now: datetime | None = None,
    ) -> bool:
        """Adopt the provider's billing period for a locked state row.

        Resets usage when the period is a new one. Does not commit.
        Returns True when the counter was reset.
        """
        if period_end <= period_start:
            raise ValueError(
                f"Invalid billing period {period_start.isoformat()} - {period_end.isoformat()}"
            )
        current_start = ensure_aware(state.cycle_start)
        current_end = ensure_aware(state.cycle_end)
        new_period = current_end is None or period_start >= current_end
        if current_start == period_start and current_end == period_end and not force_reset:
            return False
        state.cycle_start = period_start
        state.cycle_end = period_end
        if new_period or force_reset:
            usage.reset_cycle(db, state.account_id, now, commit=False)
            CYCLE_RESETS.labels("provider").inc()
            return True
        return False

    @staticmethod
    def sweep_due_accounts(
        db: Session,
        now: datetime | None = None,
        *,
        session_factory: sessionmaker | None = None,
        max_workers: int | None = None,
        account_timeout: float | None = None,
    ) -> dict:
        """Advance every due account using a bounded worker pool.

        Per-account failures and timeouts are collected rather than raised.
        """
        now = now or datetime.now(UTC)
        factory = session_factory or SessionLocal
        workers = max(1, max_workers or settings.billing_sweep_workers)
        timeout = account_timeout or settings.billing_sweep_account_timeout_seconds

        candidates = [
            account_id
            for (account_id,) in db.query(SubscriptionState.account_id)
            .filter(
                or_(
                    SubscriptionState.cycle_end <= now,
                    SubscriptionState.cycle_end.is_(None),
                )
            )
            .all()
        ]
        db.rollback()
        logger.info("Billing sweep found %d candidate accounts", len(candidates))

        reset_accounts: list[str] = []
        failures: list[dict] = []
        executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="billing-sweep"
        )
        try:
            futures = {
                account_id: executor.submit(_advance_in_session, factory, account_id, now)
                for account_id in candidates
            }
            for account_id, future in futures.items():
                try:
                    advanced = future.result(timeout=timeout)
                except FutureTimeoutError:
                    SWEEP_FAILURES.inc()
                    failures.append({"account_id": str(account_id), "error": "timed out"})
                    logger.warning(
                        "Cycle advance timed out after %ss",
                        timeout,
                        extra={"account_id": str(account_id)},
                    )
                except Exception as exc:
                    SWEEP_FAILURES.inc()
                    failures.append({"account_id": str(account_id), "error": str(exc)})
                    logger.error(
                        "Cycle advance failed: %s",
                        exc,
                        exc_info=True,
                        extra={"account_id": str(account_id)},
                    )
                else:
                    if advanced:
                        reset_accounts.append(str(account_id))
        finally:
            # Stuck workers are abandoned rather than awaited
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Billing sweep finished: %d reset, %d failed",
            len(reset_accounts),
            len(failures),
        )
        return {
            "reset_count": len(reset_accounts),
            "accounts": reset_accounts,
            "failures": failures,
            "checked": len(candidates),
        }

    @staticmethod
    def preview_due_accounts(
        db: Session, now: datetime | None = None, horizon_days: int = 7
    ) -> dict:
        """List accounts whose cycle ends within the horizon. Read-only."""
        now = now or datetime.now(UTC)
        horizon = now + timedelta(days=horizon_days)
        rows = (
            db.query(SubscriptionState, Account, UsageCounter)
            .join(Account, Account.id == SubscriptionState.account_id)
            .outerjoin(UsageCounter, UsageCounter.account_id == SubscriptionState.account_id)
            .filter(
                or_(
                    SubscriptionState.cycle_end <= horizon,
                    SubscriptionState.cycle_end.is_(None),
                )
            )
            .order_by(SubscriptionState.cycle_end.asc())
            .all()
        )
        due = []
        for state, account, counter in rows:
            if state.cycle_end is None and not is_due(state, now):
                continue
            due.append(
                {
                    "account_id": account.id,
                    "email": account.email,
                    "plan": state.plan_id,
                    "cycle_end": ensure_aware(state.cycle_end),
                    "records_used": counter.records_used if counter else 0,
                    "is_due": is_due(state, now),
                }
            )
        return {"accounts": due, "total_users": len(due)}

    @staticmethod
    def reset_all_accounts(db: Session, now: datetime | None = None) -> dict:
        """Reset every account regardless of due-ness.

        Discards cycle alignment: every account is re-anchored at ``now``.
        Only for disaster recovery and bootstrapping.
        """
        now = now or datetime.now(UTC)
        logger.warning(
            "Running legacy full usage reset; all billing cycles will be re-anchored"
        )
        new_end = add_months(now, 1)
        account_ids = [
            account_id
            for (account_id,) in db.query(SubscriptionState.account_id).all()
        ]
        db.execute(update(SubscriptionState).values(cycle_start=now, cycle_end=new_end))
        for account_id in account_ids:
            usage.reset_cycle(db, account_id, now, commit=False)
        db.commit()
        CYCLE_RESETS.labels("legacy").inc(len(account_ids))
        for account_id in account_ids:
            visibility.recompute_after_commit(db, account_id, "legacy_reset")
        logger.info("Legacy usage reset finished for %d accounts", len(account_ids))
        return {"reset_count": len(account_ids)}


def _advance_in_session(factory: sessionmaker, account_id, now: datetime) -> bool:
    db = factory()
    try:
        return billing_cycles.advance_cycle(db, account_id, now)
    finally:
        db.close()


billing_cycles = BillingCycles()
