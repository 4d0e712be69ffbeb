from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from usage_billing.api.deps import get_db, require_account
from usage_billing.schemas.billing import PaymentRead
from usage_billing.schemas.common import ListResponse
from usage_billing.services.payments import payments

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=ListResponse[PaymentRead])
def list_payments(
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    account_id: str = Depends(require_account),
    db: Session = Depends(get_db),
):
    return payments.list_response(
        db, account_id, status, order_by, order_dir, limit, offset
    )
