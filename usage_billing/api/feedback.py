from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db, require_account
from usage_billing.schemas.feedback import (
    FeedbackCreate,
    FeedbackSubmitted,
    VisibilityRecomputeRead,
    VisibilityStatsRead,
)
from usage_billing.services.feedback import feedback
from usage_billing.services.visibility import visibility

router = APIRouter(tags=["feedback"])


@router.post(
    "/widget/feedback",
    response_model=FeedbackSubmitted,
    status_code=status.HTTP_201_CREATED,
)
def submit_feedback(payload: FeedbackCreate, db: Session = Depends(get_db)):
    """Public widget endpoint. Over-quota submissions are accepted and stored hidden."""
    return feedback.submit(db, payload)


@router.get("/feedback/visibility", response_model=VisibilityStatsRead)
def get_visibility_stats(
    account_id: str = Depends(require_account), db: Session = Depends(get_db)
):
    return visibility.get_visibility_stats(db, account_id)


@router.post("/feedback/visibility/recompute", response_model=VisibilityRecomputeRead)
def recompute_visibility(
    account_id: str = Depends(require_account), db: Session = Depends(get_db)
):
    return visibility.recompute_visibility(db, account_id)
