import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session

from usage_billing.metrics import RECORDS_OVER_QUOTA
from usage_billing.models.account import Feedback, Project
from usage_billing.schemas.feedback import FeedbackCreate
from usage_billing.services.common import coerce_uuid
from usage_billing.services.exceptions import LimitExceeded
from usage_billing.services.usage import usage

logger = logging.getLogger(__name__)


class FeedbackService:
    @staticmethod
    def submit(db: Session, payload: FeedbackCreate) -> Feedback:
        """Store a widget submission and count it against the account quota.

        Over quota the record is still written, hidden until a plan change
        or the next cycle brings it back under the limit.
        """
        project = db.get(Project, coerce_uuid(payload.project_id))
        if not project or not project.is_active:
            raise HTTPException(status_code=404, detail="Project not found")

        visible = True
        try:
            usage.record_created(db, project.account_id)
        except LimitExceeded as exc:
            visible = False
            RECORDS_OVER_QUOTA.inc()
            logger.info(
                "Record stored hidden, quota exceeded (%d/%d)",
                exc.used,
                exc.limit,
                extra={"account_id": str(project.account_id)},
            )

        item = Feedback(
            project_id=project.id,
            content=payload.content,
            email=payload.email,
            is_visible=visible,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.info("Created Feedback: %s", item.id)
        return item


feedback = FeedbackService()
