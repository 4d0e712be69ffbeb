"""Quota-driven visibility ranking of feedback records."""
from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from usage_billing.metrics import VISIBILITY_RECOMPUTE_FAILURES
from usage_billing.models.account import Feedback, Project
from usage_billing.models.billing import SubscriptionState
from usage_billing.services import plans
from usage_billing.services.accounts import accounts
from usage_billing.services.common import coerce_uuid, ensure_aware

logger = logging.getLogger(__name__)


def _account_feedback(db: Session, account_uuid):
    return (
        db.query(Feedback)
        .join(Project, Project.id == Feedback.project_id)
        .filter(Project.account_id == account_uuid)
    )


class VisibilityRanking:
    @staticmethod
    def recompute_visibility(db: Session, account_id) -> dict:
        """Re-rank the current cycle's records against the plan limit.

        The newest ``max_records_per_cycle`` records of the cycle window are
        visible and ranked 1..N; the rest of the window is hidden. Records
        from earlier cycles keep their visibility flag and lose their rank.
        """
        account_uuid = coerce_uuid(account_id)
        state = accounts.get_state(db, account_uuid)
        limit = plans.limits_for(state.plan_id).max_records_per_cycle
        window_start = ensure_aware(state.cycle_start)

        query = _account_feedback(db, account_uuid)
        if window_start is not None:
            query = query.filter(Feedback.created_at >= window_start)
            prior_ids = (
                select(Feedback.id)
                .join(Project, Project.id == Feedback.project_id)
                .where(
                    Project.account_id == account_uuid,
                    Feedback.created_at < window_start,
                    Feedback.visibility_rank.is_not(None),
                )
            )
            db.execute(
                update(Feedback)
                .where(Feedback.id.in_(prior_ids))
                .values(visibility_rank=None)
                .execution_options(synchronize_session=False)
            )

        records = query.order_by(Feedback.created_at.desc(), Feedback.id.desc()).all()
        visible = 0
        for rank, record in enumerate(records, start=1):
            if rank <= limit:
                record.is_visible = True
                record.visibility_rank = rank
                visible += 1
            else:
                record.is_visible = False
                record.visibility_rank = None
        db.commit()
        hidden = len(records) - visible
        logger.info(
            "Recomputed visibility: %d visible, %d hidden of limit %d",
            visible,
            hidden,
            limit,
            extra={"account_id": str(account_uuid)},
        )
        return {"visible": visible, "hidden": hidden, "limit": limit}

    @staticmethod
    def recompute_after_commit(
        db: Session, account_id, trigger: str, extra: dict | None = None
    ) -> bool:
        """Recompute after the caller has committed its change.

        Failures are logged and counted, not raised. The committed change
        stands and ``POST /admin/feedback/visibility/recompute`` repairs
        the ranking.
        """
        try:
            VisibilityRanking.recompute_visibility(db, account_id)
        except Exception as exc:
            db.rollback()
            VISIBILITY_RECOMPUTE_FAILURES.labels(trigger).inc()
            logger.error(
                "Visibility recompute after %s failed: %s",
                trigger,
                exc,
                exc_info=True,
                extra={**(extra or {}), "account_id": str(account_id)},
            )
            return False
        return True

    @staticmethod
    def get_visible_feedback(
        db: Session,
        account_id,
        project_id,
        skip: int = 0,
        take: int = 50,
        include_hidden: bool = False,
    ) -> tuple[list[Feedback], int]:
        project = db.get(Project, coerce_uuid(project_id))
        if not project or project.account_id != coerce_uuid(account_id):
            raise HTTPException(status_code=404, detail="Project not found")
        query = db.query(Feedback).filter(Feedback.project_id == project.id)
        if not include_hidden:
            query = query.filter(Feedback.is_visible.is_(True))
        total = query.count()
        items = (
            query.order_by(
                Feedback.visibility_rank.is_(None),
                Feedback.visibility_rank.asc(),
                Feedback.created_at.desc(),
            )
            .offset(skip)
            .limit(take)
            .all()
        )
        return items, total

    @staticmethod
    def get_visibility_stats(db: Session, account_id) -> dict:
        account_uuid = coerce_uuid(account_id)
        state = accounts.get_state(db, account_uuid)
        limit = plans.limits_for(state.plan_id).max_records_per_cycle
        counts = dict(
            _account_feedback(db, account_uuid)
            .with_entities(Feedback.is_visible, func.count(Feedback.id))
            .group_by(Feedback.is_visible)
            .all()
        )
        visible = counts.get(True, 0)
        hidden = counts.get(False, 0)
        return {
            "total": visible + hidden,
            "visible": visible,
            "hidden": hidden,
            "limit": limit,
            "plan": state.plan_id,
            "is_over_limit": hidden > 0,
        }

    @staticmethod
    def recalculate_all(db: Session) -> int:
        account_ids = [
            account_id for (account_id,) in db.query(SubscriptionState.account_id).all()
        ]
        for account_id in account_ids:
            VisibilityRanking.recompute_visibility(db, account_id)
        logger.info("Recalculated visibility for %d accounts", len(account_ids))
        return len(account_ids)


visibility = VisibilityRanking()
